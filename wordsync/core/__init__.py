"""Pure collection logic: conflict resolution, filtering and stats."""

from wordsync.core.conflicts import merge, remove_key
from wordsync.core.filters import filter_by_date, filter_by_language, group_by_language
from wordsync.core.stats import compute_stats

__all__ = [
    "compute_stats",
    "filter_by_date",
    "filter_by_language",
    "group_by_language",
    "merge",
    "remove_key",
]
