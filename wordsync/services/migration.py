"""Read and write the two on-disk vocabulary layouts.

Layout A ("legacy") keeps the whole list under ``words``. Layout B
("grouped") keeps ``words_metadata`` plus ``words_groups``, a list of keys
that each hold a slice of the list, so no single record outgrows the
per-item quota of extension storage.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from loguru import logger
from pydantic import ValidationError

from wordsync.config import settings
from wordsync.schemas.vocabulary import VocabularyEntry
from wordsync.utils.store import LocalStore

WORDS_KEY = "words"
WORDS_METADATA_KEY = "words_metadata"
WORDS_GROUPS_KEY = "words_groups"
GROUP_KEY_PREFIX = "words_group_"


class StorageLayout(str, Enum):
    GROUPED = "grouped"
    LEGACY = "legacy"
    EMPTY = "empty"


def _has_grouped_markers(record: Mapping[str, Any]) -> bool:
    return bool(record.get(WORDS_METADATA_KEY)) and isinstance(record.get(WORDS_GROUPS_KEY), list)


def _parse_entries(raw: Any, *, source: str) -> list[VocabularyEntry]:
    if not isinstance(raw, list):
        logger.warning("Skipping malformed word list", source=source, kind=type(raw).__name__)
        return []
    entries: list[VocabularyEntry] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            logger.warning("Skipping malformed word entry", source=source, index=index)
            continue
        try:
            entries.append(VocabularyEntry.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping invalid word entry", source=source, index=index, error=str(exc))
    return entries


class FormatMigrationLayer:
    """Normalise whatever layout is on disk into one list of entries."""

    def __init__(
        self,
        store: LocalStore,
        *,
        group_size: int | None = None,
        layout: StorageLayout | str | None = None,
    ) -> None:
        self.store = store
        self.group_size = group_size or settings.WORDS_GROUP_SIZE
        if self.group_size < 1:
            raise ValueError("group_size must be positive")
        self.layout = StorageLayout(layout or settings.WORDS_LAYOUT)

    async def _read_markers(self) -> dict[str, Any]:
        return await self.store.get([WORDS_KEY, WORDS_METADATA_KEY, WORDS_GROUPS_KEY])

    async def detect_layout(self) -> StorageLayout:
        record = await self._read_markers()
        if _has_grouped_markers(record):
            return StorageLayout.GROUPED
        if WORDS_KEY in record:
            return StorageLayout.LEGACY
        return StorageLayout.EMPTY

    async def read_entries(self) -> list[VocabularyEntry]:
        """Return every stored entry, duplicates included.

        The grouped layout wins when its markers are present; the legacy list
        is read only otherwise, so the same words are never counted twice.
        """

        record = await self._read_markers()
        if _has_grouped_markers(record):
            group_keys = [key for key in record[WORDS_GROUPS_KEY] if isinstance(key, str)]
            groups = await self.store.get(group_keys) if group_keys else {}
            entries: list[VocabularyEntry] = []
            for group_key in group_keys:
                if group_key not in groups:
                    logger.warning("Word group missing from store", group=group_key)
                    continue
                entries.extend(_parse_entries(groups[group_key], source=group_key))
            logger.debug("Loaded grouped words", groups=len(group_keys), words=len(entries))
            return entries
        if WORDS_KEY in record:
            entries = _parse_entries(record[WORDS_KEY], source=WORDS_KEY)
            logger.debug("Loaded legacy words", words=len(entries))
            return entries
        return []

    def _group(self, entries: Sequence[VocabularyEntry]) -> dict[str, list[dict[str, Any]]]:
        groups: dict[str, list[dict[str, Any]]] = {}
        for index, entry in enumerate(entries):
            group_key = f"{GROUP_KEY_PREFIX}{index // self.group_size}"
            groups.setdefault(group_key, []).append(entry.to_record())
        return groups

    async def write_entries(
        self,
        entries: Sequence[VocabularyEntry],
        *,
        layout: StorageLayout | str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        """Persist ``entries`` (and ``extra`` records) in a single ``set`` call.

        In the grouped layout, group records no longer referenced are removed
        only after the new groups are written.
        """

        target = StorageLayout(layout) if layout else self.layout
        record: dict[str, Any] = dict(extra or {})

        if target is StorageLayout.LEGACY:
            record[WORDS_KEY] = [entry.to_record() for entry in entries]
            await self.store.set(record)
            return

        previous = await self.store.get_value(WORDS_GROUPS_KEY, [])
        groups = self._group(entries)
        record[WORDS_METADATA_KEY] = {
            "totalGroups": len(groups),
            "totalWords": len(entries),
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
        }
        record[WORDS_GROUPS_KEY] = list(groups)
        record.update(groups)
        await self.store.set(record)

        if not isinstance(previous, list):
            previous = []
        stale = [key for key in previous if isinstance(key, str) and key not in groups]
        if stale:
            await self.store.remove(stale)
            logger.debug("Removed stale word groups", groups=stale)

    async def migrate_legacy(self) -> int:
        """Rewrite a legacy store in the grouped layout; returns entries moved."""

        if await self.detect_layout() is not StorageLayout.LEGACY:
            return 0
        entries = await self.read_entries()
        await self.write_entries(entries, layout=StorageLayout.GROUPED)
        await self.store.remove(WORDS_KEY)
        logger.info("Migrated legacy word list to grouped layout", words=len(entries))
        return len(entries)


def entries_from_records(records: Iterable[Any], *, source: str) -> list[VocabularyEntry]:
    """Parse raw records from any source with the same leniency as disk reads."""

    return _parse_entries(list(records), source=source)


__all__ = [
    "FormatMigrationLayer",
    "GROUP_KEY_PREFIX",
    "StorageLayout",
    "WORDS_GROUPS_KEY",
    "WORDS_KEY",
    "WORDS_METADATA_KEY",
    "entries_from_records",
]
