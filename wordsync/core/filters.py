"""Pure projections over the canonical vocabulary collection.

Nothing here performs I/O or mutates its input; every call returns new
containers so views can be recomputed freely.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, tzinfo
from typing import Iterable, Sequence

from wordsync.schemas.vocabulary import DateFilterMode, VocabularyEntry, VocabularyFilter

LANGUAGE_ALIASES = {
    "iw": "he",
    "he-IL": "he",
    "in": "id",
    "jw": "jv",
}
SUNDAY = 6


def normalize_language_code(code: str | None) -> str:
    """Collapse legacy language code variants (``iw`` -> ``he``)."""

    if not code:
        return "auto"
    return LANGUAGE_ALIASES.get(code, code)


def _local(moment: datetime, tz: tzinfo | None) -> datetime:
    # naive datetimes are taken to be in the target zone already
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(tz)


def entry_local_date(entry: VocabularyEntry, tz: tzinfo | None = None) -> date | None:
    """Calendar day of the entry's timestamp in ``tz`` (system local by default)."""

    if not entry.timestamp:
        return None
    return datetime.fromtimestamp(entry.timestamp / 1000, tz).date()


def _coerce_date(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip()[:10])


def filter_by_language(collection: Iterable[VocabularyEntry], language: str | None) -> list[VocabularyEntry]:
    if not language or language == "all":
        return list(collection)
    wanted = normalize_language_code(language)
    return [entry for entry in collection if normalize_language_code(entry.source_language) == wanted]


def filter_by_date(
    collection: Iterable[VocabularyEntry],
    mode: DateFilterMode | str,
    reference_date: datetime | None = None,
    custom_date: date | datetime | str | None = None,
    *,
    tz: tzinfo | None = None,
    week_start: int = SUNDAY,
) -> list[VocabularyEntry]:
    """Keep entries whose timestamp falls in the selected calendar window.

    ``today``, ``week`` and ``month`` are closed windows on local calendar
    days ending at the reference day. ``custom`` keeps everything on or after
    ``custom_date`` with no upper bound. Entries without a timestamp only
    survive ``all``.
    """

    mode = DateFilterMode(mode)
    entries = list(collection)
    if mode is DateFilterMode.ALL:
        return entries
    if mode is DateFilterMode.CUSTOM and custom_date is None:
        return entries

    reference = _local(reference_date or datetime.now(tz), tz)
    today = reference.date()

    if mode is DateFilterMode.TODAY:
        def keep(day: date) -> bool:
            return day == today
    elif mode is DateFilterMode.WEEK:
        start_of_week = today - timedelta(days=(today.weekday() - week_start) % 7)

        def keep(day: date) -> bool:
            return start_of_week <= day <= today
    elif mode is DateFilterMode.MONTH:
        def keep(day: date) -> bool:
            return day.year == today.year and day.month == today.month
    else:
        lower_bound = _coerce_date(custom_date)

        def keep(day: date) -> bool:
            return day >= lower_bound

    result = []
    for entry in entries:
        day = entry_local_date(entry, tz)
        if day is not None and keep(day):
            result.append(entry)
    return result


def group_by_language(
    collection: Iterable[VocabularyEntry],
    enabled: bool = True,
) -> dict[str, list[VocabularyEntry]]:
    """Map normalised source language to entries sorted by word."""

    entries = list(collection)
    if not enabled:
        return {"all": entries}
    groups: dict[str, list[VocabularyEntry]] = {}
    for entry in entries:
        groups.setdefault(normalize_language_code(entry.source_language), []).append(entry)
    return {language: sorted(words, key=lambda entry: entry.word) for language, words in groups.items()}


def search(collection: Iterable[VocabularyEntry], term: str | None) -> list[VocabularyEntry]:
    """Case-insensitive substring match on word, translation and context."""

    if not term or not term.strip():
        return list(collection)
    needle = term.strip().lower()
    return [
        entry
        for entry in collection
        if needle in entry.word.lower()
        or needle in entry.translation.lower()
        or (entry.context is not None and needle in entry.context.lower())
    ]


def available_languages(collection: Iterable[VocabularyEntry]) -> list[str]:
    return sorted({entry.source_language for entry in collection if entry.source_language})


def apply_filters(
    collection: Sequence[VocabularyEntry],
    filters: VocabularyFilter,
    *,
    reference_date: datetime | None = None,
    tz: tzinfo | None = None,
) -> dict[str, list[VocabularyEntry]]:
    """Language, date and search filters followed by grouping."""

    filtered = filter_by_language(collection, filters.language)
    filtered = filter_by_date(
        filtered,
        filters.date_filter,
        reference_date,
        filters.custom_date,
        tz=tz,
    )
    filtered = search(filtered, filters.search)
    return group_by_language(filtered, filters.group_by_language)


__all__ = [
    "apply_filters",
    "available_languages",
    "entry_local_date",
    "filter_by_date",
    "filter_by_language",
    "group_by_language",
    "normalize_language_code",
    "search",
]
