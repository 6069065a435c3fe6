"""Pydantic schemas for vocabulary records and stats."""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def normalize_word(word: str) -> str:
    """Return the identity form of a word (trimmed, lower-cased)."""

    return word.strip().lower()


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO-8601 string, accepting the ``Z`` suffix browsers emit."""

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def to_epoch_millis(value: Any) -> int:
    """Coerce the timestamp shapes found on disk to epoch milliseconds.

    Unknown or unparsable values map to 0, which every date filter treats as
    "no timestamp".
    """

    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        if not value.strip():
            return 0
        try:
            return int(float(value))
        except ValueError:
            pass
        try:
            return int(parse_iso_datetime(value).timestamp() * 1000)
        except ValueError:
            return 0
    return 0


class VocabularyEntry(BaseModel):
    """A single captured word.

    Unknown fields (review metadata, legacy ids, notes) are kept as extras so
    a read-modify-write cycle never loses data.
    """

    word: str = Field("", validation_alias=AliasChoices("word", "originalWord"))
    translation: str = Field("", validation_alias=AliasChoices("translation", "targetWord"))
    source_language: str = Field(
        "",
        validation_alias=AliasChoices("sourceLanguage", "source_language", "language"),
        serialization_alias="sourceLanguage",
    )
    target_language: str = Field(
        "",
        validation_alias=AliasChoices("targetLanguage", "target_language"),
        serialization_alias="targetLanguage",
    )
    context: Optional[str] = None
    timestamp: int = 0

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    @field_validator("word", "translation", "source_language", "target_language", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> int:
        return to_epoch_millis(value)

    @property
    def key(self) -> str | None:
        """Identity of the entry, or ``None`` when identity fields are missing."""

        if not self.word or not self.source_language:
            return None
        return f"{normalize_word(self.word)}|{self.source_language}|{self.target_language}"

    def to_record(self) -> dict[str, Any]:
        """Serialise to the on-disk JSON shape."""

        return self.model_dump(by_alias=True, exclude_none=True)


class Stats(BaseModel):
    """Aggregate vocabulary counters."""

    total_words: int = Field(0, alias="totalWords")
    today_words: int = Field(0, alias="todayWords")
    streak: int = 0
    last_active: Optional[str] = Field(None, alias="lastActive")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def last_active_at(self) -> datetime | None:
        if not self.last_active:
            return None
        try:
            return parse_iso_datetime(self.last_active)
        except ValueError:
            return None


class DateFilterMode(str, Enum):
    """Date windows supported by the filter engine."""

    ALL = "all"
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    CUSTOM = "custom"


class VocabularyFilter(BaseModel):
    """Filter state selected in the vocabulary view."""

    language: str = "all"
    date_filter: DateFilterMode = Field(DateFilterMode.ALL, alias="dateFilter")
    custom_date: Optional[date] = Field(None, alias="customDate")
    group_by_language: bool = Field(True, alias="groupByLanguage")
    search: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "DateFilterMode",
    "Stats",
    "VocabularyEntry",
    "VocabularyFilter",
    "normalize_word",
    "parse_iso_datetime",
    "to_epoch_millis",
]
