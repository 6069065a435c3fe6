"""Remote writes that must eventually land, kept in the local store."""
from __future__ import annotations

import asyncio
import time
import uuid
from functools import partial
from typing import Any, Awaitable, Callable, Mapping

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from wordsync.config import settings
from wordsync.services.retry import RetryExecutor
from wordsync.utils.exceptions import RemoteError, describe_remote_error
from wordsync.utils.store import LocalStore

OperationHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class PendingOperation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: int
    attempts: int = 0


class FlushResult(BaseModel):
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class PendingOperationQueue:
    """FIFO of remote operations flushed through the strict retry contract.

    The queue is cleared before processing; operations that fail, and
    operations nobody has a handler for, are written back so a later flush
    picks them up again.
    """

    def __init__(
        self,
        store: LocalStore,
        key: str | None = None,
        *,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.store = store
        self.key = key or settings.PENDING_OPERATIONS_KEY
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._write_lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()

    async def pending(self) -> list[PendingOperation]:
        raw = await self.store.get_value(self.key, [])
        if not isinstance(raw, list):
            logger.warning("Pending operation queue is malformed, ignoring", kind=type(raw).__name__)
            return []
        operations: list[PendingOperation] = []
        for item in raw:
            try:
                operations.append(PendingOperation.model_validate(item))
            except ValidationError as exc:
                logger.warning("Dropping invalid pending operation", error=str(exc))
        return operations

    async def _save(self, operations: list[PendingOperation]) -> None:
        if operations:
            await self.store.set({self.key: [operation.model_dump() for operation in operations]})
        else:
            await self.store.remove(self.key)

    async def enqueue(self, operation_type: str, data: dict[str, Any]) -> PendingOperation:
        operation = PendingOperation(type=operation_type, data=data, timestamp=self._clock())
        async with self._write_lock:
            operations = await self.pending()
            operations.append(operation)
            await self._save(operations)
        logger.debug("Queued remote operation", type=operation_type, queued=len(operations))
        return operation

    async def _requeue(self, operations: list[PendingOperation]) -> None:
        if not operations:
            return
        async with self._write_lock:
            # keep whatever was queued while the flush was running
            current = await self.pending()
            await self._save(sorted([*operations, *current], key=lambda operation: operation.timestamp))

    async def flush(
        self,
        handlers: Mapping[str, OperationHandler],
        executor: RetryExecutor,
    ) -> FlushResult:
        """Run queued operations oldest first."""

        async with self._flush_lock:
            async with self._write_lock:
                operations = await self.pending()
                if not operations:
                    return FlushResult()
                await self.store.remove(self.key)

            operations.sort(key=lambda operation: operation.timestamp)
            result = FlushResult()
            requeue: list[PendingOperation] = []
            remaining = list(operations)
            try:
                while remaining:
                    operation = remaining[0]
                    handler = handlers.get(operation.type)
                    if handler is None:
                        logger.warning("No handler for pending operation", type=operation.type)
                        requeue.append(remaining.pop(0))
                        result.skipped += 1
                        continue
                    try:
                        await executor.with_retry(partial(handler, operation.data))
                    except RemoteError as exc:
                        logger.warning(
                            "Pending operation failed, re-queueing",
                            type=operation.type,
                            attempts=operation.attempts + 1,
                            error=exc.message,
                        )
                        remaining.pop(0)
                        requeue.append(operation.model_copy(update={"attempts": operation.attempts + 1}))
                        result.failed += 1
                        result.errors.append(describe_remote_error(exc))
                        continue
                    remaining.pop(0)
                    result.processed += 1
            finally:
                # an unexpected error leaves the unprocessed tail in the queue
                await self._requeue(requeue + remaining)

        logger.info(
            "Flushed pending operations",
            processed=result.processed,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result


__all__ = ["FlushResult", "PendingOperation", "PendingOperationQueue"]
