"""
Bounded retry for network steps.

Every step has a hard attempt cap and a fixed (or capped exponential)
backoff. Only errors the caller classifies as transient are retried; any
other exception propagates on the spot.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from shieldpool.api.logging_config import get_logger
from shieldpool.errors import TransientServiceError

logger = get_logger("deposits.retry")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_sec: float = 2.0
    exponential: bool = False
    max_backoff_sec: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_sec < 0:
            raise ValueError("backoff_sec must be >= 0")

    def delay(self, attempt: int) -> float:
        """Wait after failed attempt number `attempt` (1-based)."""
        if not self.exponential:
            return self.backoff_sec
        return min(self.backoff_sec * (2 ** (attempt - 1)), self.max_backoff_sec)


class RetryExhausted(Exception):
    """Raised when a step keeps failing transiently after all attempts."""

    def __init__(self, description: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"{description} failed after {attempts} attempts. Last error: {last_error}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error


async def run_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "Operation",
    transient: Tuple[Type[BaseException], ...] = (TransientServiceError,),
    sleep: Sleep = asyncio.sleep,
    on_attempt: Optional[Callable[[int, str], None]] = None,
) -> T:
    """
    Await `fn()` until it succeeds, at most `policy.max_attempts` times.

    Args:
        fn: Zero-argument coroutine factory (called once per attempt)
        policy: Attempt cap and backoff
        description: Human-readable step name for logs and errors
        transient: Exception types worth retrying
        sleep: Injectable sleep (tests pass a no-op)
        on_attempt: Optional callback (attempt_num, status_msg)

    Returns:
        Whatever `fn()` returned on the first successful attempt

    Raises:
        RetryExhausted: every attempt failed with a transient error
        Exception: any non-transient error, immediately
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.max_attempts + 1):
        status_msg = f"{description} (attempt {attempt}/{policy.max_attempts})"
        logger.debug("%s...", status_msg)
        if on_attempt:
            on_attempt(attempt, status_msg)
        try:
            return await fn()
        except transient as e:
            last_error = e
            if attempt == policy.max_attempts:
                break
            wait = policy.delay(attempt)
            logger.warning("%s failed: %s; retrying in %.1fs", status_msg, e, wait)
            await sleep(wait)

    logger.error("%s gave up after %d attempts: %s", description, policy.max_attempts, last_error)
    raise RetryExhausted(description, policy.max_attempts, last_error)
