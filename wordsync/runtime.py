"""Per-context engine wiring."""
from __future__ import annotations

import uuid
from typing import Awaitable, Callable, Sequence

from loguru import logger

from wordsync.config import Settings, settings
from wordsync.schemas.messages import BusMessage, ChangeEvent, SnapshotRecord
from wordsync.services.auth import AuthSession, SessionState, TokenCredentialProvider
from wordsync.services.migration import FormatMigrationLayer, StorageLayout
from wordsync.services.offline_queue import PendingOperationQueue
from wordsync.services.realtime import ChangeBus, RedisTransport, build_transport
from wordsync.services.remote import HttpDocumentStore
from wordsync.services.retry import RetryExecutor
from wordsync.services.vocabulary import VocabularyService
from wordsync.utils.store import LocalStore, build_store

Closer = Callable[[], Awaitable[None]]


class SyncContext:
    """One execution context: background worker, popup or page script.

    Owns its auth session and bus subscription; shares only the store and
    the transport with other contexts.
    """

    def __init__(
        self,
        name: str,
        *,
        store: LocalStore,
        session: AuthSession,
        executor: RetryExecutor,
        bus: ChangeBus,
        vocabulary: VocabularyService,
        queue: PendingOperationQueue | None = None,
        closers: Sequence[Closer] = (),
    ) -> None:
        self.name = name
        self.store = store
        self.session = session
        self.executor = executor
        self.bus = bus
        self.vocabulary = vocabulary
        self.queue = queue
        self.snapshot: dict[ChangeEvent, SnapshotRecord] = {}
        self._closers = list(closers)
        self._unsubscribers: list[Callable[[], None]] = []
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        if self.vocabulary.migration.layout is StorageLayout.GROUPED:
            await self.vocabulary.migration.migrate_legacy()
        await self.bus.connect()
        self._unsubscribers = [
            self.bus.subscribe(ChangeEvent.WORDS_UPDATED, self._on_words_changed),
            self.bus.subscribe(ChangeEvent.WORD_DELETED, self._on_words_changed),
        ]
        self.session.add_listener(self._on_session_state)
        # broadcasts sent before this context existed are only visible here
        self.snapshot = await self.bus.read_snapshot()
        await self.vocabulary.load()
        self._started = True
        logger.info("Sync context started", context=self.name, words=len(self.vocabulary.words))

    async def _on_words_changed(self, message: BusMessage) -> None:
        logger.debug("Reloading vocabulary", context=self.name, event=message.type.value, sender=message.sender)
        await self.vocabulary.refresh()

    async def _on_session_state(self, state: SessionState) -> None:
        if state in (SessionState.VALID, SessionState.EXPIRED):
            await self.bus.publish(ChangeEvent.AUTH_STATE_CHANGED, {"state": state.value})

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self.session.remove_listener(self._on_session_state)
        await self.session.close()
        await self.bus.disconnect()
        for closer in self._closers:
            try:
                await closer()
            except Exception as exc:
                logger.warning("Failed to release context resource", context=self.name, error=str(exc))
        self._started = False
        logger.info("Sync context closed", context=self.name)

    async def __aenter__(self) -> "SyncContext":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


async def build_default_context(name: str | None = None, config: Settings | None = None) -> SyncContext:
    """Create a context wired to the configured store, transport and remote."""

    config = config or settings
    name = name or f"context-{uuid.uuid4().hex[:8]}"
    store = build_store(config)

    provider = await TokenCredentialProvider.load_from_store(
        store,
        api_key=config.AUTH_API_KEY,
        token_url=str(config.AUTH_TOKEN_URL),
        margin_seconds=config.TOKEN_REFRESH_MARGIN_SECONDS,
    )
    session = AuthSession(provider)
    executor = RetryExecutor(
        session,
        max_attempts=config.RETRY_MAX_ATTEMPTS,
        base_delay=config.RETRY_BASE_DELAY_SECONDS,
        max_delay=config.RETRY_MAX_DELAY_SECONDS,
        jitter=config.RETRY_JITTER_SECONDS,
        auth_max_retries=config.AUTH_MAX_RETRIES,
    )
    transport = build_transport(str(config.REDIS_URL) if config.REDIS_URL else "")
    bus = ChangeBus(store, transport, context_id=name, snapshot_key=config.SNAPSHOT_KEY)

    remote = None
    if config.REMOTE_BASE_URL:
        remote = HttpDocumentStore(
            str(config.REMOTE_BASE_URL),
            token_getter=lambda: provider.access_token,
            request_timeout=config.REMOTE_REQUEST_TIMEOUT_SECONDS,
        )
    queue = PendingOperationQueue(store, config.PENDING_OPERATIONS_KEY)
    vocabulary = VocabularyService(
        store,
        migration=FormatMigrationLayer(store, group_size=config.WORDS_GROUP_SIZE, layout=config.WORDS_LAYOUT),
        bus=bus,
        executor=executor,
        remote=remote,
        remote_collection=config.REMOTE_WORDS_COLLECTION.format(uid=provider.uid or "anonymous"),
        queue=queue,
    )

    closers: list[Closer] = []
    if remote is not None:
        closers.append(remote.aclose)
    closers.append(provider.aclose)
    if isinstance(transport, RedisTransport):
        closers.append(transport.aclose)
    closers.append(store.close)

    return SyncContext(
        name,
        store=store,
        session=session,
        executor=executor,
        bus=bus,
        vocabulary=vocabulary,
        queue=queue,
        closers=closers,
    )


__all__ = ["SyncContext", "build_default_context"]
