"""Backoff policy for idempotent external commands, built on tenacity."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

T = TypeVar("T")

RetryHook = Callable[[RetryCallState], None]


def is_retryable(exc: BaseException) -> bool:
    """Errors may opt out with ``retryable = False``; otherwise only I/O hiccups retry."""
    flag = getattr(exc, "retryable", None)
    if flag is not None:
        return bool(flag)
    return isinstance(exc, (ConnectionError, TimeoutError))


@dataclass(frozen=True, slots=True)
class Backoff:
    attempts: int = 3
    first_wait_s: float = 0.5  # doubles per attempt
    max_wait_s: float = 10.0

    def controller(self, on_retry: RetryHook | None = None) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.first_wait_s, max=self.max_wait_s),
            retry=retry_if_exception(is_retryable),
            before_sleep=on_retry,
            reraise=True,
        )


DEFAULT_BACKOFF = Backoff()


async def retry_async(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    backoff: Backoff = DEFAULT_BACKOFF,
    on_retry: RetryHook | None = None,
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)`` under ``backoff``; the last error is re-raised."""
    async for attempt in backoff.controller(on_retry):
        with attempt:
            result = await fn(*args, **kwargs)
    return result
