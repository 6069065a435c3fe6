"""Cross-context change propagation.

Broadcasts are best-effort and unordered; the snapshot persisted in the
shared store is the source of truth, so a context that misses a message (or
starts later) reads the snapshot instead.
"""
from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Protocol

import redis.asyncio as redis
from loguru import logger
from pydantic import ValidationError

from wordsync.config import settings
from wordsync.schemas.messages import BusMessage, ChangeEvent, DeliveryReport, SnapshotRecord
from wordsync.utils.exceptions import NoReceiverError
from wordsync.utils.store import LocalStore

Receiver = Callable[[BusMessage], Awaitable[None]]


class ContextTransport(Protocol):
    """Fire-and-forget delivery to every other open context."""

    async def connect(self, context_id: str, receiver: Receiver) -> None:  # pragma: no cover - interface definition
        ...

    async def disconnect(self, context_id: str) -> None:  # pragma: no cover - interface definition
        ...

    async def send(self, message: BusMessage) -> list[DeliveryReport]:  # pragma: no cover - interface definition
        ...


class InProcessTransport:
    """Hub for contexts living in one process (tests, single-process hosts).

    Each recipient gets its own copy of the message and its own delivery
    report; one failing recipient does not affect the others.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._receivers: Dict[str, Receiver] = {}

    async def connect(self, context_id: str, receiver: Receiver) -> None:
        async with self._lock:
            self._receivers[context_id] = receiver

    async def disconnect(self, context_id: str) -> None:
        async with self._lock:
            self._receivers.pop(context_id, None)

    async def send(self, message: BusMessage) -> list[DeliveryReport]:
        async with self._lock:
            targets = [(cid, receiver) for cid, receiver in self._receivers.items() if cid != message.sender]
        if not targets:
            return [DeliveryReport(recipient="*", error=NoReceiverError("No context is listening"))]

        async def _deliver(context_id: str, receiver: Receiver) -> DeliveryReport:
            try:
                await receiver(message.model_copy(deep=True))
            except Exception as exc:
                return DeliveryReport(recipient=context_id, error=exc)
            return DeliveryReport(recipient=context_id)

        return list(await asyncio.gather(*(_deliver(cid, receiver) for cid, receiver in targets)))


class RedisTransport:
    """Pub/sub transport for contexts running in separate processes."""

    def __init__(self, redis_url: str, channel: str | None = None) -> None:
        self.redis_url = redis_url
        self.channel = channel or settings.BUS_CHANNEL
        self._redis: redis.Redis | None = None
        self._listeners: Dict[str, tuple[Any, asyncio.Task[None]]] = {}

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=1.5,
            )
        return self._redis

    async def connect(self, context_id: str, receiver: Receiver) -> None:
        if context_id in self._listeners:
            return
        pubsub = self._client().pubsub()
        await pubsub.subscribe(self.channel)
        task = asyncio.create_task(self._listen(pubsub, context_id, receiver))
        self._listeners[context_id] = (pubsub, task)

    async def _listen(self, pubsub: Any, context_id: str, receiver: Receiver) -> None:
        async for raw in pubsub.listen():
            if raw.get("type") != "message":
                continue
            try:
                message = BusMessage.model_validate_json(raw["data"])
            except ValidationError as exc:
                logger.warning("Dropping malformed bus message", error=str(exc))
                continue
            if message.sender == context_id:
                continue
            try:
                await receiver(message)
            except Exception as exc:
                logger.warning("Bus receiver failed", context_id=context_id, error=str(exc))

    async def disconnect(self, context_id: str) -> None:
        listener = self._listeners.pop(context_id, None)
        if listener is None:
            return
        pubsub, task = listener
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await pubsub.unsubscribe(self.channel)
        await pubsub.aclose()

    async def send(self, message: BusMessage) -> list[DeliveryReport]:
        try:
            receivers = await self._client().publish(self.channel, message.model_dump_json())
        except Exception as exc:
            return [DeliveryReport(recipient=self.channel, error=exc)]
        # the sender's own subscription is counted by PUBLISH
        others = receivers - (1 if message.sender in self._listeners else 0)
        if others <= 0:
            return [DeliveryReport(recipient=self.channel, error=NoReceiverError("No context is listening"))]
        return [DeliveryReport(recipient=f"{self.channel}#{index}") for index in range(others)]

    async def aclose(self) -> None:
        for context_id in list(self._listeners):
            await self.disconnect(context_id)
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


Handler = Callable[[BusMessage], Awaitable[None]]


class ChangeBus:
    """Publish auth and vocabulary changes to the other open contexts."""

    def __init__(
        self,
        store: LocalStore,
        transport: ContextTransport,
        *,
        context_id: str,
        snapshot_key: str | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.context_id = context_id
        self.snapshot_key = snapshot_key or settings.SNAPSHOT_KEY
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._handlers: Dict[ChangeEvent, list[Handler]] = defaultdict(list)
        self._connected = False

    async def connect(self) -> None:
        if not self._connected:
            await self.transport.connect(self.context_id, self.dispatch)
            self._connected = True

    async def disconnect(self) -> None:
        if self._connected:
            await self.transport.disconnect(self.context_id)
            self._connected = False
        self._handlers.clear()

    def subscribe(self, event_type: ChangeEvent, handler: Handler) -> Callable[[], None]:
        """Register ``handler``; returns a callable that unregisters it."""

        self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers.get(event_type, []):
                self._handlers[event_type].remove(handler)

        return _unsubscribe

    async def dispatch(self, message: BusMessage) -> None:
        """Deliver an incoming message to local handlers."""

        if message.sender == self.context_id:
            return
        for handler in list(self._handlers.get(message.type, [])):
            try:
                await handler(message)
            except Exception as exc:
                logger.warning(
                    "Change handler failed",
                    event=message.type.value,
                    context_id=self.context_id,
                    error=str(exc),
                )

    async def broadcast(self, event_type: ChangeEvent, payload: dict[str, Any] | None = None) -> list[DeliveryReport]:
        """Send to every other context; never raises."""

        message = BusMessage(
            type=event_type,
            payload=payload or {},
            sender=self.context_id,
            timestamp=self._clock(),
        )
        try:
            reports = await self.transport.send(message)
        except Exception as exc:
            logger.warning("Broadcast failed", event=event_type.value, error=str(exc))
            return []
        for report in reports:
            if isinstance(report.error, NoReceiverError):
                logger.debug("No receiver for broadcast", event=event_type.value)
            elif report.error is not None:
                logger.warning(
                    "Broadcast delivery failed",
                    event=event_type.value,
                    recipient=report.recipient,
                    error=str(report.error),
                )
        return reports

    def snapshot_record_key(self, event_type: ChangeEvent) -> str:
        # one record per event type
        return f"{self.snapshot_key}:{event_type.value}"

    async def persist_snapshot(self, event_type: ChangeEvent, payload: dict[str, Any] | None = None) -> None:
        """Record ``payload`` as the latest state for ``event_type``.

        An older snapshot never replaces a newer one written by another
        context. Store failures propagate.
        """

        timestamp = self._clock()
        key = self.snapshot_record_key(event_type)
        existing = await self.store.get_value(key)
        if isinstance(existing, dict) and isinstance(existing.get("timestamp"), int):
            if existing["timestamp"] > timestamp:
                logger.debug("Keeping newer snapshot", event=event_type.value)
                return
        record = SnapshotRecord(payload=payload or {}, sender=self.context_id, timestamp=timestamp)
        await self.store.set({key: record.model_dump()})

    async def read_snapshot(self) -> dict[ChangeEvent, SnapshotRecord]:
        """Return the last known state of every event type."""

        keys = {self.snapshot_record_key(event_type): event_type for event_type in ChangeEvent}
        raw = await self.store.get(list(keys))
        snapshot: dict[ChangeEvent, SnapshotRecord] = {}
        for key, value in raw.items():
            try:
                snapshot[keys[key]] = SnapshotRecord.model_validate(value)
            except ValidationError as exc:
                logger.warning("Ignoring malformed snapshot entry", key=key, error=str(exc))
        return snapshot

    async def publish(self, event_type: ChangeEvent, payload: dict[str, Any] | None = None) -> list[DeliveryReport]:
        """Persist the snapshot, then broadcast."""

        await self.persist_snapshot(event_type, payload)
        return await self.broadcast(event_type, payload)


def build_transport(redis_url: str | None = None) -> ContextTransport:
    """Factory used by the runtime to create the configured transport."""

    url = redis_url if redis_url is not None else (str(settings.REDIS_URL) if settings.REDIS_URL else None)
    if url:
        return RedisTransport(url)
    return InProcessTransport()


__all__ = [
    "ChangeBus",
    "ContextTransport",
    "InProcessTransport",
    "RedisTransport",
    "build_transport",
]
