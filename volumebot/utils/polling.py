import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from volumebot.errors import PollTimeoutError


async def poll_until(
    fetch: Callable[[], Awaitable[Any]],
    predicate: Callable[[Any], bool],
    interval: float,
    timeout: Optional[float],
    initial_delay: float = 0.0,
    label: str = "state",
    max_checks: Optional[int] = None,
) -> Any:
    """
    Poll externally observable state until it satisfies a predicate.

    Args:
        fetch: Coroutine factory returning the current value
        predicate: Returns True once the value is the one we wait for
        interval: Seconds between checks
        timeout: Seconds after the first check before giving up, None to rely on max_checks
        initial_delay: Seconds to wait before the first check
        label: Name used in log lines
        max_checks: Optional cap on the number of checks

    Returns:
        The first fetched value for which ``predicate`` is True

    Raises:
        PollTimeoutError: If the deadline or check count is reached first
    """
    if initial_delay > 0:
        logger.debug(f"Waiting {initial_delay}s before polling {label}")
        await asyncio.sleep(initial_delay)

    deadline = time.monotonic() + timeout if timeout is not None else None
    checks = 0
    value = None

    while True:
        checks += 1
        try:
            value = await fetch()
            if predicate(value):
                return value
        except Exception as e:
            logger.warning(f"Error polling {label}: {str(e)}")

        if max_checks is not None and checks >= max_checks:
            break
        if deadline is not None and time.monotonic() + interval > deadline:
            break

        await asyncio.sleep(interval)

    logger.warning(f"Timed out polling {label} after {checks} checks")
    raise PollTimeoutError(f"Timed out waiting for {label}", last_value=value)
