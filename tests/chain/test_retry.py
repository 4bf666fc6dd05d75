"""Tests for the RPC retry policy."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from launchpad_indexer.chain.retry import (
    RateLimitError,
    RetryPolicy,
    RPCError,
    is_rate_limit_error,
)


def _rate_limited() -> ValueError:
    return ValueError({"code": -32005, "message": "limit exceeded"})


class TestIsRateLimitError:
    def test_json_rpc_code(self) -> None:
        assert is_rate_limit_error(_rate_limited())

    def test_http_429_message(self) -> None:
        assert is_rate_limit_error(OSError("429 Too Many Requests"))

    def test_status_attribute(self) -> None:
        error = OSError("bad gateway")
        error.status = 429  # type: ignore[attr-defined]
        assert is_rate_limit_error(error)

    def test_revert_is_not_rate_limit(self) -> None:
        assert not is_rate_limit_error(ValueError("execution reverted"))


class TestRetryPolicy:
    def test_delay_is_linear_and_capped(self) -> None:
        policy = RetryPolicy(base_delay=2.0, max_delay=10.0)
        assert policy.delay_for(1) == 2.0
        assert policy.delay_for(3) == 6.0
        assert policy.delay_for(9) == 10.0

    def test_exponential_delay_is_capped(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, exponential=True)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        sleep = AsyncMock()
        policy = RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=10.0, sleep=sleep)
        func = AsyncMock(side_effect=[_rate_limited(), _rate_limited(), 42])

        assert await policy.run("eth_getLogs", func) == 42
        assert func.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self) -> None:
        sleep = AsyncMock()
        policy = RetryPolicy(max_attempts=5, sleep=sleep)
        func = AsyncMock(side_effect=ValueError("execution reverted"))

        with pytest.raises(RPCError, match="execution reverted"):
            await policy.run("eth_call", func)
        assert func.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        sleep = AsyncMock()
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0, sleep=sleep)
        func = AsyncMock(side_effect=_rate_limited())

        with pytest.raises(RateLimitError):
            await policy.run("eth_getLogs", func)
        assert func.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_unrelated_errors_propagate(self) -> None:
        policy = RetryPolicy(sleep=AsyncMock())
        func = AsyncMock(side_effect=KeyError("timestamp"))

        with pytest.raises(KeyError):
            await policy.run("eth_getBlock", func)
