"""Retry/Backoff Controller for a single evaluation call.

Transient failures are retried with exponential backoff plus jitter via
tenacity; any other pipeline error is re-raised at once. Retries never cross
a batch boundary: the controller wraps exactly one call and passes the same
arguments on every attempt.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from forumeval.config import RetryConfig
from forumeval.errors import RetryExhaustedError, TransientError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryController:
    def __init__(
        self,
        max_attempts: int = 3,
        backoff_base_ms: int = 1000,
        max_jitter_ms: int = 250,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.backoff_base_ms = backoff_base_ms
        self.max_jitter_ms = max_jitter_ms
        self._sleep = sleep

        base_s = backoff_base_ms / 1000
        # Jitter never exceeds the base delay, so delays are non-decreasing
        jitter_s = min(max_jitter_ms, backoff_base_ms) / 1000
        self.wait = wait_exponential(multiplier=base_s, exp_base=2) + wait_random(0, jitter_s)

    @classmethod
    def from_config(cls, config: RetryConfig, **kwargs: Any) -> RetryController:
        return cls(
            max_attempts=config.max_attempts,
            backoff_base_ms=config.backoff_base_ms,
            max_jitter_ms=config.max_jitter_ms,
            **kwargs,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            retry=retry_if_exception_type(TransientError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        logger.warning(
            "retry_scheduled",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            delay_s=round(retry_state.next_action.sleep, 3),
            error=exc.code,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``fn(*args, **kwargs)``, retrying transient failures.

        Raises:
            RetryExhaustedError: every attempt failed with a transient error.
            PermanentError: re-raised unchanged on first occurrence.
        """
        try:
            return await self._retrying()(fn, *args, **kwargs)
        except RetryError as e:
            last = e.last_attempt.exception()
            logger.error("retry_exhausted", attempts=self.max_attempts, error=last.code)
            raise RetryExhaustedError(self.max_attempts, last) from last
