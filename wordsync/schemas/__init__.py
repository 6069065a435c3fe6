"""Pydantic schemas package."""

from wordsync.schemas.messages import BusMessage, ChangeEvent, DeliveryReport, SnapshotRecord
from wordsync.schemas.vocabulary import (
    DateFilterMode,
    Stats,
    VocabularyEntry,
    VocabularyFilter,
    normalize_word,
)

__all__ = [
    "BusMessage",
    "ChangeEvent",
    "DateFilterMode",
    "DeliveryReport",
    "SnapshotRecord",
    "Stats",
    "VocabularyEntry",
    "VocabularyFilter",
    "normalize_word",
]
