"""Utility helpers package."""

from wordsync.utils.store import LocalStore, MemoryStore, RedisStore, build_store

__all__ = ["LocalStore", "MemoryStore", "RedisStore", "build_store"]
