"""Retry contracts for authenticated remote operations.

Call sites pick a contract instead of writing their own try/except loops:

* :meth:`RetryExecutor.with_retry` is strict. Transient failures are retried
  with exponential backoff and jitter, and the last error reaches the caller.
  Use it when the caller must learn about failure (a user-initiated save).
* :meth:`RetryExecutor.execute_with_auth` is lenient. Only authentication
  failures are retried, after a forced credential refresh, and every failure
  degrades to a fallback value. Use it for background reconciliation.
"""
from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from wordsync.config import settings
from wordsync.services.auth import AuthSession
from wordsync.utils.exceptions import (
    AuthError,
    RemoteError,
    TransientRemoteError,
    WordSyncError,
    classify_remote_error,
)

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]


class ExponentialJitterWait:
    """``min(base * 2**attempt + uniform(0, jitter), max_delay)`` seconds."""

    def __init__(
        self,
        base_delay: float,
        max_delay: float,
        jitter: float,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.uniform = uniform

    def __call__(self, retry_state: RetryCallState) -> float:
        attempt = retry_state.attempt_number - 1
        delay = self.base_delay * (2**attempt) + self.uniform(0, self.jitter)
        return min(delay, self.max_delay)


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
    logger.warning(
        "Transient remote failure, retrying",
        attempt=retry_state.attempt_number,
        delay=round(delay, 3),
        error=str(error),
    )


class RetryExecutor:
    """Run remote operations under the strict or lenient contract."""

    def __init__(
        self,
        session: AuthSession,
        *,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        jitter: float | None = None,
        auth_max_retries: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.session = session
        self.max_attempts = max_attempts or settings.RETRY_MAX_ATTEMPTS
        self.base_delay = base_delay if base_delay is not None else settings.RETRY_BASE_DELAY_SECONDS
        self.max_delay = max_delay if max_delay is not None else settings.RETRY_MAX_DELAY_SECONDS
        self.jitter = jitter if jitter is not None else settings.RETRY_JITTER_SECONDS
        self.auth_max_retries = (
            auth_max_retries if auth_max_retries is not None else settings.AUTH_MAX_RETRIES
        )
        self._sleep = sleep
        self._uniform = uniform

    async def with_retry(
        self,
        operation: Operation[T],
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ) -> T:
        """Strict contract: retry transient failures, then re-raise the last error.

        Non-transient errors are raised immediately. An authentication error
        gets one forced refresh and one more invocation; if the refresh fails
        or the error repeats it is raised like any other.
        """

        attempts = max_attempts or self.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        auth_retry_used = False

        async def _attempt() -> T:
            nonlocal auth_retry_used
            try:
                return await self._invoke(operation)
            except AuthError:
                if auth_retry_used:
                    raise
                auth_retry_used = True
                if not await self.session.refresh(force=True):
                    raise
                return await self._invoke(operation)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=ExponentialJitterWait(
                base_delay if base_delay is not None else self.base_delay,
                max_delay if max_delay is not None else self.max_delay,
                self.jitter,
                self._uniform,
            ),
            retry=retry_if_exception_type(TransientRemoteError),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return await retrying(_attempt)
        except Exception as exc:
            if retrying.statistics.get("attempt_number", 1) > 1:
                logger.error(
                    "Remote operation failed after retries",
                    attempts=retrying.statistics.get("attempt_number"),
                    error=str(exc),
                )
            raise

    async def execute_with_auth(self, operation: Operation[T], fallback: T) -> T:
        """Lenient contract: returns ``fallback`` on remote failure.

        Store and validation errors still propagate.
        """

        try:
            await self.session.ensure_valid()
        except Exception as exc:
            # the operation may still succeed with the current credential
            logger.warning("Proactive credential refresh failed", error=str(exc))

        auth_retries = 0
        while True:
            try:
                return await self._invoke(operation)
            except RemoteError as error:
                logger.warning("Remote operation failed", kind=error.kind, code=error.code, error=error.message)
                if not isinstance(error, AuthError) or auth_retries >= self.auth_max_retries:
                    logger.info("Returning fallback value", auth_retries=auth_retries)
                    return fallback
                auth_retries += 1
                logger.info("Refreshing credential before retry", attempt=auth_retries, limit=self.auth_max_retries)
                if not await self.session.refresh(force=True):
                    return fallback

    @staticmethod
    async def _invoke(operation: Operation[T]) -> T:
        try:
            return await operation()
        except RemoteError:
            raise
        except WordSyncError:
            # store and validation failures are not remote errors
            raise
        except Exception as exc:
            raise classify_remote_error(exc) from exc


__all__ = ["ExponentialJitterWait", "RetryExecutor"]
