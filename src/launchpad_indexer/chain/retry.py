"""Retry policy for rate-limited RPC providers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from aiohttp import ClientError
from web3.exceptions import Web3Exception

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_ERROR_CODES = frozenset({-32016, -32005, 429})
RATE_LIMIT_MESSAGES = ("rate limit", "too many requests", "request limit")


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails with a non-retryable error."""


class RateLimitError(ChainClientError):
    """Raised when the provider keeps rate limiting after all retries."""


def _error_code(error: BaseException) -> int | None:
    code = getattr(error, "code", None)
    if isinstance(code, int):
        return code
    rpc_response = getattr(error, "rpc_response", None)
    if isinstance(rpc_response, dict):
        rpc_error = rpc_response.get("error")
        if isinstance(rpc_error, dict) and isinstance(rpc_error.get("code"), int):
            return int(rpc_error["code"])
    for arg in getattr(error, "args", ()):
        if isinstance(arg, dict) and isinstance(arg.get("code"), int):
            return int(arg["code"])
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    status = getattr(response, "status", None) or getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    return None


def is_rate_limit_error(error: BaseException) -> bool:
    """Return True if the provider signalled rate limiting."""
    if isinstance(error, RateLimitError):
        return True
    code = _error_code(error)
    if code is not None and code in RATE_LIMIT_ERROR_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MESSAGES)


@dataclass
class RetryPolicy:
    """Capped backoff keyed off rate-limit signals.

    By default the n-th retry sleeps ``min(base_delay * n, max_delay)``
    seconds; with ``exponential`` set it sleeps
    ``min(base_delay * 2 ** (n - 1), max_delay)`` instead. Only
    errors accepted by ``is_retryable`` are retried; everything else is
    raised as :class:`RPCError` on the first failure.
    """

    max_attempts: int = 10
    base_delay: float = 2.0
    max_delay: float = 10.0
    exponential: bool = False
    is_retryable: Callable[[BaseException], bool] = field(default=is_rate_limit_error)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        if self.exponential:
            return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        return min(self.base_delay * attempt, self.max_delay)

    async def run(self, description: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func`` until it succeeds or the policy gives up.

        Raises:
            RateLimitError: If every attempt was rate limited.
            RPCError: On the first non-retryable failure.
        """
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func()
            except (Web3Exception, ClientError, OSError, asyncio.TimeoutError, ValueError) as e:
                if not self.is_retryable(e):
                    raise RPCError(f"{description} failed: {e}") from e
                last_error = e
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s rate limited (attempt %d/%d), retrying in %.1fs",
                    description,
                    attempt,
                    self.max_attempts,
                    delay,
                )
                await self.sleep(delay)
        raise RateLimitError(
            f"{description} still rate limited after {self.max_attempts} attempts: {last_error}"
        )
