"""Vocabulary orchestration for one execution context."""
from __future__ import annotations

import asyncio
from datetime import datetime, tzinfo
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from wordsync.config import settings
from wordsync.core.conflicts import find_entry, merge, remove_key
from wordsync.core.filters import apply_filters
from wordsync.core.stats import compute_stats
from wordsync.schemas.messages import ChangeEvent
from wordsync.schemas.vocabulary import Stats, VocabularyEntry, VocabularyFilter
from wordsync.services.migration import FormatMigrationLayer, entries_from_records
from wordsync.services.offline_queue import FlushResult, PendingOperationQueue
from wordsync.services.realtime import ChangeBus
from wordsync.services.remote import RemoteDocumentStore, document_id, document_id_for_key
from wordsync.services.retry import RetryExecutor
from wordsync.utils.exceptions import EntryValidationError, WordSyncError
from wordsync.utils.store import LocalStore

STATS_KEY = "stats"
UPSERT_OPERATION = "upsert_word"
DELETE_OPERATION = "delete_word"


class VocabularyNotFoundError(WordSyncError):
    """Raised when a vocabulary entry cannot be located."""


class RemoteSyncDisabledError(WordSyncError):
    """Raised when a remote operation is requested without a remote store."""


class VocabularyService:
    """Keep the local collection, its stats and the remote copy in step.

    Every write re-reads the shared store and merges before writing back, so
    concurrent writers in other contexts converge under last-write-wins;
    ``self.words`` is only this context's cache of the last read.
    """

    def __init__(
        self,
        store: LocalStore,
        *,
        migration: FormatMigrationLayer | None = None,
        bus: ChangeBus | None = None,
        executor: RetryExecutor | None = None,
        remote: RemoteDocumentStore | None = None,
        remote_collection: str | None = None,
        queue: PendingOperationQueue | None = None,
        clock: Callable[[], datetime] | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        self.store = store
        self.migration = migration or FormatMigrationLayer(store)
        self.bus = bus
        self.executor = executor
        self.remote = remote
        self.remote_collection = remote_collection or settings.REMOTE_WORDS_COLLECTION
        self.queue = queue
        self.tz = tz
        self._clock = clock or (lambda: datetime.now(tz))
        self._lock = asyncio.Lock()
        self._words: list[VocabularyEntry] = []
        self._stats = Stats()

    @property
    def words(self) -> list[VocabularyEntry]:
        return list(self._words)

    @property
    def stats(self) -> Stats:
        return self._stats

    def _now_millis(self) -> int:
        return int(self._clock().timestamp() * 1000)

    async def _read(self) -> list[VocabularyEntry]:
        return merge([], await self.migration.read_entries())

    async def _read_stats(self) -> Stats:
        return await self.store.get_model(STATS_KEY, Stats) or Stats()

    async def _write(self, entries: list[VocabularyEntry], stats: Stats) -> None:
        await self.migration.write_entries(entries, extra={STATS_KEY: stats.to_record()})
        self._words = entries
        self._stats = stats

    async def _publish(self, event_type: ChangeEvent, payload: dict[str, Any]) -> None:
        if self.bus is not None:
            await self.bus.publish(event_type, payload)

    async def load(self) -> list[VocabularyEntry]:
        """Rebuild the collection from disk and recompute its stats."""

        async with self._lock:
            entries = await self._read()
            stats = compute_stats(entries, await self._read_stats(), now=self._clock(), tz=self.tz)
            self._words = entries
            self._stats = stats
        logger.debug("Vocabulary loaded", words=len(entries))
        return list(entries)

    async def refresh(self) -> list[VocabularyEntry]:
        """Re-read after another context reported a change."""

        return await self.load()

    async def capture(
        self,
        word: str,
        translation: str,
        source_language: str,
        target_language: str,
        context: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> VocabularyEntry:
        """Record a word the user just captured.

        An entry with the same key is updated in place, keeping its review
        metadata, and its timestamp moves past the stored one so the update
        wins every later merge.
        """

        fields = {
            "word": word,
            "translation": translation,
            "source_language": source_language,
            "target_language": target_language,
        }
        missing = [name for name, value in fields.items() if not value or not str(value).strip()]
        if missing:
            raise EntryValidationError("Vocabulary entry is missing required fields", {"fields": missing})

        async with self._lock:
            current = await self._read()
            captured_at = timestamp if timestamp is not None else self._now_millis()
            candidate = VocabularyEntry(
                word=word.strip(),
                translation=translation.strip(),
                source_language=source_language.strip(),
                target_language=target_language.strip(),
                context=context,
                timestamp=captured_at,
            )
            existing = find_entry(current, candidate.key)
            if existing is None:
                entry = candidate
            else:
                update: dict[str, Any] = {
                    "word": candidate.word,
                    "translation": candidate.translation,
                    "timestamp": max(captured_at, existing.timestamp + 1),
                }
                if context is not None:
                    update["context"] = context
                entry = existing.model_copy(update=update)

            merged = merge(current, [entry])
            stats = compute_stats(
                merged, await self._read_stats(), now=self._clock(), activity=True, tz=self.tz
            )
            await self._write(merged, stats)

        logger.info("Captured word", key=entry.key, updated=existing is not None, total=stats.total_words)
        await self._publish(ChangeEvent.WORDS_UPDATED, {"key": entry.key, "totalWords": stats.total_words})
        await self._publish(ChangeEvent.STATS_UPDATED, stats.to_record())
        await self._queue_remote(UPSERT_OPERATION, {"entry": entry.to_record()})
        return entry

    async def save_entries(self, entries: Iterable[VocabularyEntry]) -> list[VocabularyEntry]:
        """Merge a batch (import, remote pull) into the stored collection."""

        incoming = list(entries)
        async with self._lock:
            current = await self._read()
            merged = merge(current, incoming)
            stats = compute_stats(merged, await self._read_stats(), now=self._clock(), tz=self.tz)
            await self._write(merged, stats)

        logger.info("Saved vocabulary batch", incoming=len(incoming), total=stats.total_words)
        await self._publish(ChangeEvent.WORDS_UPDATED, {"count": len(incoming), "totalWords": stats.total_words})
        await self._publish(ChangeEvent.STATS_UPDATED, stats.to_record())
        return list(merged)

    async def delete(self, key: str) -> None:
        """Remove the entry identified by ``key``."""

        async with self._lock:
            current = await self._read()
            if find_entry(current, key) is None:
                raise VocabularyNotFoundError("Vocabulary word not found", {"key": key})
            remaining = remove_key(current, key)
            stats = compute_stats(remaining, await self._read_stats(), now=self._clock(), tz=self.tz)
            await self._write(remaining, stats)

        logger.info("Deleted word", key=key, total=stats.total_words)
        await self._publish(ChangeEvent.WORD_DELETED, {"key": key, "totalWords": stats.total_words})
        await self._publish(ChangeEvent.STATS_UPDATED, stats.to_record())
        await self._queue_remote(DELETE_OPERATION, {"key": key})

    def view(
        self,
        filters: VocabularyFilter | None = None,
        *,
        reference_date: datetime | None = None,
    ) -> dict[str, list[VocabularyEntry]]:
        return apply_filters(
            self._words,
            filters or VocabularyFilter(),
            reference_date=reference_date or self._clock(),
            tz=self.tz,
        )

    # remote synchronisation

    def _require_remote(self) -> tuple[RemoteDocumentStore, RetryExecutor]:
        if self.remote is None or self.executor is None:
            raise RemoteSyncDisabledError("Remote sync is not configured")
        return self.remote, self.executor

    async def _queue_remote(self, operation_type: str, data: dict[str, Any]) -> None:
        if self.queue is None or self.remote is None:
            return
        await self.queue.enqueue(operation_type, data)

    async def upload(self, entry: VocabularyEntry) -> None:
        """Write one entry remotely; failures reach the caller."""

        remote, executor = self._require_remote()
        doc_id = document_id(entry)
        await executor.with_retry(lambda: remote.set_document(self.remote_collection, doc_id, entry.to_record()))

    async def push(self) -> int:
        """Upload every keyed entry in the stored collection."""

        self._require_remote()
        entries = [entry for entry in await self._read() if entry.key is not None]
        for entry in entries:
            await self.upload(entry)
        logger.info("Pushed vocabulary to remote", words=len(entries))
        return len(entries)

    async def pull(self) -> list[VocabularyEntry]:
        """Fetch the remote collection and merge it locally.

        Uses the lenient contract: on failure nothing is merged and an empty
        list is returned.
        """

        remote, executor = self._require_remote()
        documents = await executor.execute_with_auth(
            lambda: remote.list_documents(self.remote_collection),
            fallback=[],
        )
        entries = entries_from_records(documents, source="remote")
        if entries:
            await self.save_entries(entries)
        logger.info("Pulled vocabulary from remote", words=len(entries))
        return entries

    async def _remote_upsert(self, data: dict[str, Any]) -> None:
        remote, _ = self._require_remote()
        entry = VocabularyEntry.model_validate(data["entry"])
        await remote.set_document(self.remote_collection, document_id(entry), entry.to_record())

    async def _remote_delete(self, data: dict[str, Any]) -> None:
        remote, _ = self._require_remote()
        await remote.delete_document(self.remote_collection, document_id_for_key(data["key"]))

    async def flush_pending(self) -> FlushResult:
        """Replay remote writes queued by captures and deletes."""

        if self.queue is None or self.remote is None or self.executor is None:
            return FlushResult()
        return await self.queue.flush(
            {UPSERT_OPERATION: self._remote_upsert, DELETE_OPERATION: self._remote_delete},
            self.executor,
        )


__all__ = [
    "DELETE_OPERATION",
    "RemoteSyncDisabledError",
    "STATS_KEY",
    "UPSERT_OPERATION",
    "VocabularyNotFoundError",
    "VocabularyService",
]
