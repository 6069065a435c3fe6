"""Pytest fixtures for engine tests."""

import asyncio
from collections.abc import Callable

import pytest

from wordsync.schemas.vocabulary import VocabularyEntry
from wordsync.services.auth import AuthSession
from wordsync.services.realtime import InProcessTransport
from wordsync.services.retry import RetryExecutor
from wordsync.utils.store import MemoryStore


class StubCredentialProvider:
    """Credential provider whose validity and refresh outcome tests control."""

    def __init__(self, valid: bool = True, refresh_result: bool = True, delay: float = 0.0):
        self.valid = valid
        self.refresh_result = refresh_result
        self.delay = delay
        self.refresh_calls: list[bool] = []

    def is_valid(self) -> bool:
        return self.valid

    async def refresh(self, force: bool = False) -> bool:
        self.refresh_calls.append(force)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.refresh_result:
            self.valid = True
        return self.refresh_result


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def provider() -> StubCredentialProvider:
    return StubCredentialProvider()


@pytest.fixture()
def session(provider: StubCredentialProvider) -> AuthSession:
    return AuthSession(provider)


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def executor(session: AuthSession, sleeps: list[float]) -> RetryExecutor:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return RetryExecutor(
        session,
        max_attempts=4,
        base_delay=1.0,
        max_delay=30.0,
        jitter=1.0,
        auth_max_retries=2,
        sleep=fake_sleep,
        uniform=lambda low, high: 0.0,
    )


@pytest.fixture()
def hub() -> InProcessTransport:
    return InProcessTransport()


@pytest.fixture()
def make_entry() -> Callable[..., VocabularyEntry]:
    def _make(
        word: str,
        timestamp: int = 1_700_000_000_000,
        source_language: str = "en",
        target_language: str = "he",
        translation: str | None = None,
        **extra,
    ) -> VocabularyEntry:
        return VocabularyEntry(
            word=word,
            translation=translation if translation is not None else f"{word}-t",
            source_language=source_language,
            target_language=target_language,
            timestamp=timestamp,
            **extra,
        )

    return _make
