"""Credential session management for remote operations."""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from wordsync.config import settings
from wordsync.core.security import is_token_expired
from wordsync.utils.store import LocalStore

AUTH_STORAGE_KEY = "wordstream_auth"

StateListener = Callable[["SessionState"], Awaitable[None]]


class CredentialProvider(Protocol):
    """Source of the credential used by remote operations."""

    def is_valid(self) -> bool:  # pragma: no cover - interface definition
        """Return whether the current credential can be used as is."""

    async def refresh(self, force: bool = False) -> bool:  # pragma: no cover - interface definition
        """Obtain a fresh credential; return ``True`` on success."""


class SessionState(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    UNKNOWN = "unknown"
    REFRESHING = "refreshing"


class AuthSession:
    """Per-context view of the credential with single-flight refresh.

    Created on context startup and closed on shutdown; never shared between
    contexts. While a refresh is in flight every other caller awaits that
    same attempt instead of starting a new one, so a burst of permission
    errors costs one network round trip.
    """

    def __init__(self, provider: CredentialProvider) -> None:
        self.provider = provider
        self._state = SessionState.UNKNOWN
        self._inflight: asyncio.Task[bool] | None = None
        self._listeners: list[StateListener] = []
        self.refresh_count = 0

    @property
    def state(self) -> SessionState:
        return self._state

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                await listener(state)
            except Exception as exc:
                logger.warning("Session state listener failed", state=state.value, error=str(exc))

    async def ensure_valid(self) -> bool:
        """Refresh only when the provider reports the credential unusable."""

        if self._inflight is None and self.provider.is_valid():
            await self._set_state(SessionState.VALID)
            return True
        return await self.refresh()

    async def refresh(self, force: bool = False) -> bool:
        """Refresh the credential, joining an attempt already in flight."""

        if self._inflight is None:
            self._inflight = asyncio.create_task(self._run_refresh(force))
        return await asyncio.shield(self._inflight)

    async def _run_refresh(self, force: bool) -> bool:
        await self._set_state(SessionState.REFRESHING)
        try:
            self.refresh_count += 1
            refreshed = bool(await self.provider.refresh(force))
        except Exception as exc:
            logger.warning("Credential refresh raised", error=str(exc))
            refreshed = False
        finally:
            self._inflight = None
        if refreshed:
            logger.debug("Credential refreshed", forced=force)
        else:
            logger.warning("Credential refresh failed", forced=force)
        await self._set_state(SessionState.VALID if refreshed else SessionState.EXPIRED)
        return refreshed

    async def close(self) -> None:
        task = self._inflight
        self._inflight = None
        if task is not None and not task.done():
            task.cancel()
        self._listeners.clear()


class StoredCredentials(BaseModel):
    """Credential record persisted for other contexts."""

    uid: Optional[str] = None
    id_token: Optional[str] = Field(None, alias="idToken")
    refresh_token: Optional[str] = Field(None, alias="refreshToken")
    last_authenticated: Optional[int] = Field(None, alias="lastAuthenticated")

    model_config = ConfigDict(populate_by_name=True)


class TokenCredentialProvider:
    """ID-token credential refreshed through a secure-token endpoint."""

    def __init__(
        self,
        *,
        refresh_token: str | None,
        id_token: str | None = None,
        uid: str | None = None,
        api_key: str | None = None,
        token_url: str | None = None,
        store: LocalStore | None = None,
        client: httpx.AsyncClient | None = None,
        margin_seconds: int | None = None,
    ) -> None:
        self.refresh_token = refresh_token
        self.id_token = id_token
        self.uid = uid
        self.api_key = api_key if api_key is not None else settings.AUTH_API_KEY
        self.token_url = token_url or str(settings.AUTH_TOKEN_URL)
        self.store = store
        self.margin_seconds = (
            margin_seconds if margin_seconds is not None else settings.TOKEN_REFRESH_MARGIN_SECONDS
        )
        self._client = client
        self._owns_client = client is None

    @classmethod
    async def load_from_store(cls, store: LocalStore, **kwargs) -> "TokenCredentialProvider":
        """Build a provider from the credentials another context persisted."""

        stored = await store.get_model(AUTH_STORAGE_KEY, StoredCredentials) or StoredCredentials()
        return cls(
            refresh_token=stored.refresh_token,
            id_token=stored.id_token,
            uid=stored.uid,
            store=store,
            **kwargs,
        )

    @property
    def access_token(self) -> str | None:
        return self.id_token

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.REMOTE_REQUEST_TIMEOUT_SECONDS)
        return self._client

    def is_valid(self) -> bool:
        return not is_token_expired(self.id_token, margin_seconds=self.margin_seconds)

    async def refresh(self, force: bool = False) -> bool:
        if not force and self.is_valid():
            return True
        if not self.refresh_token:
            logger.warning("No refresh token available")
            return False

        params = {"key": self.api_key} if self.api_key else None
        response = await self.client.post(
            self.token_url,
            params=params,
            data={"grant_type": "refresh_token", "refresh_token": self.refresh_token},
        )
        if response.status_code >= 400:
            logger.error("Token endpoint returned error", status=response.status_code, body=response.text[:200])
            return False

        data = response.json()
        id_token = data.get("id_token") or data.get("access_token")
        if not id_token:
            logger.error("Token endpoint response did not include a token")
            return False
        self.id_token = id_token
        self.refresh_token = data.get("refresh_token") or self.refresh_token
        self.uid = data.get("user_id") or self.uid
        await self._persist()
        return True

    async def _persist(self) -> None:
        if self.store is None:
            return
        record = StoredCredentials(
            uid=self.uid,
            id_token=self.id_token,
            refresh_token=self.refresh_token,
            last_authenticated=int(time.time() * 1000),
        )
        await self.store.set({AUTH_STORAGE_KEY: record.model_dump(by_alias=True, exclude_none=True)})

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


__all__ = [
    "AUTH_STORAGE_KEY",
    "AuthSession",
    "CredentialProvider",
    "SessionState",
    "StoredCredentials",
    "TokenCredentialProvider",
]
