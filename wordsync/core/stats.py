"""Derive vocabulary stats from the canonical collection."""
from __future__ import annotations

from datetime import date, datetime, tzinfo
from typing import Sequence

from wordsync.core.filters import entry_local_date
from wordsync.schemas.vocabulary import Stats, VocabularyEntry


def _day_gap(previous: date | None, today: date) -> int | None:
    if previous is None:
        return None
    return abs((today - previous).days)


def compute_stats(
    collection: Sequence[VocabularyEntry],
    previous: Stats | None = None,
    *,
    now: datetime | None = None,
    activity: bool = False,
    tz: tzinfo | None = None,
) -> Stats:
    """Recompute counters from ``collection``.

    ``totalWords`` and ``todayWords`` always come from the collection itself.
    When ``activity`` is set (a capture happened) the streak advances: same
    day keeps it, the following day increments it, a longer gap restarts it
    at 1. Without activity the streak and last-active time carry over.
    """

    previous = previous or Stats()
    now = now or datetime.now(tz)
    local_now = now if now.tzinfo is None else now.astimezone(tz)
    today = local_now.date()

    total = len(collection)
    today_words = sum(1 for entry in collection if entry_local_date(entry, tz) == today)

    if not activity:
        return Stats(
            total_words=total,
            today_words=today_words,
            streak=previous.streak,
            last_active=previous.last_active,
        )

    last_active = previous.last_active_at()
    if last_active is not None and last_active.tzinfo is not None:
        last_active = last_active.astimezone(tz)
    gap = _day_gap(last_active.date() if last_active else None, today)
    if gap == 0:
        streak = max(previous.streak, 1)
    elif gap == 1:
        streak = previous.streak + 1
    else:
        streak = 1

    return Stats(
        total_words=total,
        today_words=today_words,
        streak=streak,
        last_active=local_now.isoformat(),
    )


__all__ = ["compute_stats"]
