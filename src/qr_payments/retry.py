"""Retry policy and an async retry-with-backoff combinator."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .exceptions import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        max_attempts: Total number of attempts, including the first one.
        base_delay_ms: Delay after the first failed attempt.
        cap_delay_ms: Upper bound for any single delay.
    """
    max_attempts: int = 3
    base_delay_ms: int = 1000
    cap_delay_ms: int = 5000

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.cap_delay_ms < 0:
            raise ValueError("delays must not be negative")

    def delay_ms(self, failed_attempt: int) -> int:
        """Delay to wait after the given zero-based failed attempt."""
        return min(self.base_delay_ms * (2 ** failed_attempt), self.cap_delay_ms)


class RetryExhaustedError(Exception):
    """All attempts failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


async def retry_with_backoff(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (NetworkError,),
    before_attempt: Optional[Callable[[int], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Tuple[T, int]:
    """Run ``operation`` until it returns or the policy is exhausted.

    Args:
        operation: Coroutine function receiving the zero-based attempt number.
        policy: Attempt bound and backoff curve.
        retry_on: Exception types that trigger another attempt. Anything else
            propagates immediately.
        before_attempt: Optional hook awaited before every attempt with the
            number of attempts that already failed.
        sleep: Injected for tests.

    Returns:
        Tuple of (operation result, number of failed attempts before it).

    Raises:
        RetryExhaustedError: If every attempt raised a ``retry_on`` error.
    """
    for attempt in range(policy.max_attempts):
        if before_attempt is not None:
            await before_attempt(attempt)
        try:
            return await operation(attempt), attempt
        except retry_on as e:
            if attempt + 1 >= policy.max_attempts:
                raise RetryExhaustedError(policy.max_attempts, e) from e
            delay = policy.delay_ms(attempt)
            logger.warning(
                f"Attempt {attempt + 1}/{policy.max_attempts} failed ({e}); "
                f"retrying in {delay}ms"
            )
            await sleep(delay / 1000.0)

    raise ValueError(f"Retry policy allows no attempts: {policy}")
