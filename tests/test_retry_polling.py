import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from volumebot.errors import PollTimeoutError, RateLimitedError, RelayError
from volumebot.utils.polling import poll_until
from volumebot.utils.retry import RetryPolicy, retry_async


def test_backoff_grows_and_is_capped():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, backoff_factor=2.0, max_delay=5.0)

    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.parametrize("kwargs", [
    {"max_attempts": 0},
    {"base_delay": -1},
    {"backoff_factor": 0.5},
])
def test_invalid_policy_is_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_retry_succeeds_after_transient_failures():
    fn = AsyncMock(side_effect=[RelayError("boom"), RelayError("boom"), "ok"])
    policy = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)

    assert asyncio.run(retry_async(fn, policy, retry_on=(RelayError,))) == "ok"
    assert fn.await_count == 3


def test_retry_gives_up_with_last_error():
    fn = AsyncMock(side_effect=RelayError("down"))
    policy = RetryPolicy(max_attempts=2, base_delay=0, max_delay=0)

    with pytest.raises(RelayError):
        asyncio.run(retry_async(fn, policy, retry_on=(RelayError,)))
    assert fn.await_count == 2


def test_unlisted_errors_are_not_retried():
    fn = AsyncMock(side_effect=KeyError("x"))

    with pytest.raises(KeyError):
        asyncio.run(retry_async(fn, RetryPolicy(base_delay=0), retry_on=(RelayError,)))
    assert fn.await_count == 1


def test_rate_limit_waits_for_requested_delay():
    fn = AsyncMock(side_effect=[RateLimitedError("slow down", retry_after=7.5), "ok"])
    sleep = AsyncMock()

    with patch("volumebot.utils.retry.asyncio.sleep", sleep):
        asyncio.run(retry_async(fn, RetryPolicy(base_delay=1.0), retry_on=(RateLimitedError,)))

    sleep.assert_awaited_once_with(7.5)


def test_poll_returns_first_matching_value():
    fetch = AsyncMock(side_effect=[None, None, "ready"])

    value = asyncio.run(poll_until(fetch, lambda v: v == "ready", interval=0, timeout=5))

    assert value == "ready"
    assert fetch.await_count == 3


def test_poll_survives_fetch_errors():
    fetch = AsyncMock(side_effect=[ConnectionError("reset"), "ready"])

    assert asyncio.run(poll_until(fetch, lambda v: v == "ready", interval=0, timeout=5)) == "ready"


def test_poll_times_out_with_last_value():
    fetch = AsyncMock(return_value="pending")

    with pytest.raises(PollTimeoutError) as exc_info:
        asyncio.run(poll_until(fetch, lambda v: v == "done", interval=0, timeout=None, max_checks=4))

    assert exc_info.value.last_value == "pending"
    assert fetch.await_count == 4


def test_poll_waits_initial_delay_first():
    sleep = AsyncMock()
    fetch = AsyncMock(return_value=True)

    with patch("volumebot.utils.polling.asyncio.sleep", sleep):
        asyncio.run(poll_until(fetch, bool, interval=1, timeout=10, initial_delay=25))

    sleep.assert_awaited_once_with(25)
