"""Last-write-wins merge over vocabulary collections."""
from __future__ import annotations

from typing import Iterable, Sequence

from loguru import logger

from wordsync.schemas.vocabulary import VocabularyEntry


def display_order(entry: VocabularyEntry) -> tuple[str, str, str]:
    # target language only breaks ties so equal collections sort identically
    return (entry.source_language, entry.word, entry.target_language)


def merge(
    existing: Iterable[VocabularyEntry],
    incoming: Iterable[VocabularyEntry],
) -> list[VocabularyEntry]:
    """Merge ``incoming`` into ``existing`` keeping one entry per key.

    An incoming entry replaces the stored one only when its timestamp is
    strictly greater; ties keep the existing entry. Entries without a key
    (missing word or source language) pass through unvalidated, with exact
    duplicates collapsed so repeated merges stay idempotent. The result is
    sorted by ``(source_language, word)``.
    """

    by_key: dict[str, VocabularyEntry] = {}
    keyless: list[VocabularyEntry] = []

    def _absorb(entry: VocabularyEntry, *, from_incoming: bool) -> None:
        key = entry.key
        if key is None:
            if entry not in keyless:
                keyless.append(entry)
            return
        current = by_key.get(key)
        if current is None:
            by_key[key] = entry
            return
        if entry.timestamp > current.timestamp:
            if from_incoming:
                logger.debug(
                    "Replacing entry with newer version",
                    key=key,
                    previous=current.timestamp,
                    incoming=entry.timestamp,
                )
            by_key[key] = entry

    for entry in existing:
        _absorb(entry, from_incoming=False)
    for entry in incoming:
        _absorb(entry, from_incoming=True)

    return sorted([*by_key.values(), *keyless], key=display_order)


def find_entry(collection: Sequence[VocabularyEntry], key: str) -> VocabularyEntry | None:
    for entry in collection:
        if entry.key == key:
            return entry
    return None


def remove_key(collection: Sequence[VocabularyEntry], key: str) -> list[VocabularyEntry]:
    """Return a copy of ``collection`` without the entry identified by ``key``."""

    return [entry for entry in collection if entry.key != key]


__all__ = ["display_order", "find_entry", "merge", "remove_key"]
