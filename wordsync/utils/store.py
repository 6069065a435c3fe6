"""Asynchronous key/value store shared by every execution context."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping, TypeVar

import redis.asyncio as redis
from loguru import logger
from pydantic import BaseModel, ValidationError

from wordsync.config import Settings, settings
from wordsync.utils.exceptions import StoreError

ModelT = TypeVar("ModelT", bound=BaseModel)


def _json_default(value: Any) -> Any:
    """Serialize values not supported by ``json`` out of the box."""

    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, exclude_none=True)
    if hasattr(value, "isoformat"):
        return value.isoformat()  # datetime and date objects
    if isinstance(value, set):
        return sorted(value)
    raise TypeError(f"Object of type {type(value)!r} is not JSON serializable")


def encode_value(key: str, value: Any) -> str:
    try:
        return json.dumps(value, default=_json_default, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise StoreError(f"Value for {key!r} is not JSON serializable", {"key": key}) from exc


def _as_key_list(keys: str | Iterable[str]) -> list[str]:
    if isinstance(keys, str):
        return [keys]
    return list(dict.fromkeys(keys))


class LocalStore(ABC):
    """Typed async access to the per-installation key/value store.

    Backend failures are raised as :class:`StoreError`; tolerance is left to
    callers.
    """

    async def get(self, keys: str | Iterable[str]) -> dict[str, Any]:
        """Return the stored values for ``keys``; missing keys are omitted."""

        key_list = _as_key_list(keys)
        if not key_list:
            return {}
        try:
            raw = await self._read(key_list)
        except StoreError:
            raise
        except Exception as exc:
            raise StoreError(f"Failed to read {key_list}: {exc}", {"keys": key_list}) from exc
        result: dict[str, Any] = {}
        for key, payload in raw.items():
            try:
                result[key] = json.loads(payload)
            except ValueError as exc:
                raise StoreError(f"Stored value for {key!r} is corrupt", {"key": key}) from exc
        return result

    async def set(self, record: Mapping[str, Any]) -> None:
        """Write every key of ``record``."""

        if not record:
            return
        payloads = {key: encode_value(key, value) for key, value in record.items()}
        try:
            await self._write(payloads)
        except StoreError:
            raise
        except Exception as exc:
            raise StoreError(f"Failed to write {sorted(payloads)}: {exc}", {"keys": sorted(payloads)}) from exc

    async def remove(self, keys: str | Iterable[str]) -> None:
        key_list = _as_key_list(keys)
        if not key_list:
            return
        try:
            await self._delete(key_list)
        except StoreError:
            raise
        except Exception as exc:
            raise StoreError(f"Failed to remove {key_list}: {exc}", {"keys": key_list}) from exc

    async def get_value(self, key: str, default: Any = None) -> Any:
        result = await self.get(key)
        return result.get(key, default)

    async def get_model(self, key: str, model: type[ModelT]) -> ModelT | None:
        """Return the value under ``key`` validated as ``model``; invalid data reads as absent."""

        value = await self.get_value(key)
        if value is None:
            return None
        try:
            return model.model_validate(value)
        except ValidationError as exc:
            logger.warning("Ignoring malformed stored record", key=key, error=str(exc))
            return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def _read(self, keys: list[str]) -> dict[str, str]:
        """Return raw JSON payloads for the keys that exist."""

    @abstractmethod
    async def _write(self, payloads: dict[str, str]) -> None:
        """Persist raw JSON payloads in one operation."""

    @abstractmethod
    async def _delete(self, keys: list[str]) -> None:
        """Delete the keys; absent keys are ignored."""


class MemoryStore(LocalStore):
    """In-process store emulating browser extension storage limits.

    Several contexts in one process can share an instance to simulate the
    per-installation store.
    """

    def __init__(
        self,
        *,
        quota_bytes: int | None = None,
        quota_bytes_per_item: int | None = None,
    ) -> None:
        self.quota_bytes = quota_bytes
        self.quota_bytes_per_item = quota_bytes_per_item
        self._lock = asyncio.Lock()
        self._data: dict[str, str] = {}

    @staticmethod
    def _item_size(key: str, payload: str) -> int:
        return len(key.encode("utf-8")) + len(payload.encode("utf-8"))

    def bytes_in_use(self) -> int:
        return sum(self._item_size(key, payload) for key, payload in self._data.items())

    async def _read(self, keys: list[str]) -> dict[str, str]:
        async with self._lock:
            return {key: self._data[key] for key in keys if key in self._data}

    async def _write(self, payloads: dict[str, str]) -> None:
        async with self._lock:
            if self.quota_bytes_per_item is not None:
                for key, payload in payloads.items():
                    if self._item_size(key, payload) > self.quota_bytes_per_item:
                        raise StoreError(
                            "QUOTA_BYTES_PER_ITEM quota exceeded",
                            {"key": key, "limit": self.quota_bytes_per_item},
                        )
            if self.quota_bytes is not None:
                replaced = sum(self._item_size(key, self._data[key]) for key in payloads if key in self._data)
                added = sum(self._item_size(key, payload) for key, payload in payloads.items())
                used = self.bytes_in_use() - replaced + added
                if used > self.quota_bytes:
                    raise StoreError(
                        "QUOTA_BYTES quota exceeded",
                        {"used": used, "limit": self.quota_bytes},
                    )
            self._data.update(payloads)

    async def _delete(self, keys: list[str]) -> None:
        async with self._lock:
            for key in keys:
                self._data.pop(key, None)


class RedisStore(LocalStore):
    """Store backed by Redis so separate processes share one keyspace."""

    def __init__(self, redis_url: str, namespace: str = "wordstream") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._redis: redis.Redis | None = None

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=1.5,
            )
        return self._redis

    def _compose(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def _read(self, keys: list[str]) -> dict[str, str]:
        values = await self._client().mget([self._compose(key) for key in keys])
        return {key: value for key, value in zip(keys, values) if value is not None}

    async def _write(self, payloads: dict[str, str]) -> None:
        await self._client().mset({self._compose(key): value for key, value in payloads.items()})

    async def _delete(self, keys: list[str]) -> None:
        await self._client().delete(*[self._compose(key) for key in keys])

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_store(config: Settings | None = None) -> LocalStore:
    """Return the store configured for this installation."""

    config = config or settings
    if config.REDIS_URL:
        return RedisStore(str(config.REDIS_URL), namespace=config.STORE_NAMESPACE)
    return MemoryStore(
        quota_bytes=config.STORE_QUOTA_BYTES,
        quota_bytes_per_item=config.STORE_QUOTA_BYTES_PER_ITEM,
    )


__all__ = ["LocalStore", "MemoryStore", "RedisStore", "build_store", "encode_value"]
