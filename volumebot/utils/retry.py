"""
Retry policy shared by the submission pipeline, the lookup table manager and
the bundle relay client.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Tuple, Type

from loguru import logger

from volumebot.errors import RateLimitedError


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff."""
    max_attempts: int = 3
    base_delay: float = 2.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """
        Backoff before the attempt following ``attempt``.

        Args:
            attempt: 1-based number of the attempt that just failed

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.backoff_factor ** (max(attempt, 1) - 1))
        return min(delay, self.max_delay)


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
) -> Any:
    """
    Run ``fn`` until it succeeds or the policy is exhausted.

    A RateLimitedError waits for the delay the remote side asked for instead of
    the computed backoff.

    Args:
        fn: Coroutine factory to call on every attempt
        policy: Retry policy
        retry_on: Exception types that trigger another attempt
        label: Name used in log lines

    Returns:
        Whatever ``fn`` returns

    Raises:
        The last exception once attempts are exhausted
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as e:
            if attempt >= policy.max_attempts:
                logger.error(f"{label} failed after {attempt} attempts: {e}")
                raise

            if isinstance(e, RateLimitedError):
                delay = e.retry_after
            else:
                delay = policy.delay_for(attempt)

            logger.warning(
                f"{label} failed, retrying ({attempt}/{policy.max_attempts}) after {delay:.2f}s: {e}",
                extra={"retry_count": attempt, "backoff": delay, "error": str(e)}
            )
            await asyncio.sleep(delay)
