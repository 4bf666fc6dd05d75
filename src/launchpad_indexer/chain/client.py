"""Chain RPC client with retry, rate limiting and timestamp caching.

This module wraps one network's JSON-RPC endpoint with:
- A token bucket rate limiter to respect provider limits
- An injected :class:`RetryPolicy` for rate-limited calls
- A bounded in-process LRU (plus optional Redis) for block timestamps
- A small pause between header lookups to avoid tripping rate limits
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from launchpad_indexer.chain.events import LogEvent, to_bytes, to_hex
from launchpad_indexer.chain.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_TIMESTAMP_CACHE_SIZE = 2000
DEFAULT_HEADER_DELAY_SECONDS = 0.05

# Block timestamps are immutable once past the reorg window.
TIMESTAMP_CACHE_TTL_SECONDS = 7 * 24 * 3600


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


@dataclass(frozen=True)
class TransactionInfo:
    """The parts of a transaction the classifier needs."""

    tx_hash: str
    sender: str
    to: str | None
    value: int
    data: bytes
    block_number: int | None

    @property
    def selector(self) -> str | None:
        if len(self.data) < 4:
            return None
        return "0x" + self.data[:4].hex()


@dataclass(frozen=True)
class ReceiptInfo:
    tx_hash: str
    status: int
    block_number: int
    logs: list[LogEvent] = field(default_factory=list)


class BoundedLRU:
    """Small ordered-dict LRU keyed by block number."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._items: OrderedDict[int, int] = OrderedDict()

    def get(self, key: int) -> int | None:
        value = self._items.get(key)
        if value is not None:
            self._items.move_to_end(key)
        return value

    def put(self, key: int, value: int) -> None:
        self._items[key] = value
        self._items.move_to_end(key)
        while len(self._items) > self._capacity:
            self._items.popitem(last=False)

    def __len__(self) -> int:
        return len(self._items)


class ChainClient:
    """Read-only RPC access for one chain.

    Example:
        ```python
        client = ChainClient(6342, "https://rpc.example", retry_policy=RetryPolicy())
        head = await client.current_block_number()
        logs = await client.get_logs([token], [TRANSFER_TOPIC], head - 100, head)
        await client.aclose()
        ```
    """

    def __init__(
        self,
        chain_id: int,
        rpc_url: str,
        *,
        retry_policy: RetryPolicy | None = None,
        redis: Redis | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        timestamp_cache_size: int = DEFAULT_TIMESTAMP_CACHE_SIZE,
        header_delay_seconds: float = DEFAULT_HEADER_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            chain_id: Numeric chain id this client serves.
            rpc_url: JSON-RPC HTTP endpoint.
            retry_policy: Backoff policy for rate-limited calls.
            redis: Optional Redis client for sharing block timestamps.
            max_requests_per_second: Client-side rate limit.
            request_timeout: HTTP timeout per request in seconds.
            timestamp_cache_size: Capacity of the in-process timestamp LRU.
            header_delay_seconds: Pause after each uncached header lookup.
        """
        self.chain_id = chain_id
        self._rpc_url = rpc_url
        self._retry_policy = retry_policy or RetryPolicy()
        self._redis = redis
        self._header_delay = header_delay_seconds
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._timestamps = BoundedLRU(timestamp_cache_size)
        self._cache_prefix = f"chain:{chain_id}:"
        self._w3 = self._new_web3_client(rpc_url, request_timeout)

    def _new_web3_client(self, rpc_url: str, request_timeout: float) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (chain=%d): %s", self.chain_id, e)
        return client

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def _execute(self, func_name: str, *args: Any, **kwargs: Any) -> Any:
        """Execute a ``web3.eth`` method under the rate limiter and retry policy."""

        async def attempt() -> Any:
            await self._rate_limiter.acquire()
            method = getattr(self._w3.eth, func_name)
            return await method(*args, **kwargs)

        return await self._retry_policy.run(f"chain {self.chain_id} {func_name}", attempt)

    async def current_block_number(self) -> int:
        return int(await self._execute("get_block_number"))

    async def get_logs(
        self,
        addresses: Sequence[str],
        topics: Sequence[str | None | Sequence[str]],
        from_block: int,
        to_block: int,
    ) -> list[LogEvent]:
        """Fetch logs via ``eth_getLogs`` for a block range and address set."""
        if from_block > to_block:
            return []
        params: dict[str, Any] = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": [AsyncWeb3.to_checksum_address(a) for a in addresses],
            "topics": list(topics),
        }
        raw_logs = await self._execute("get_logs", params)
        return [LogEvent.from_raw(dict(log)) for log in raw_logs]

    async def get_block_timestamp(self, block_number: int) -> int:
        """Unix timestamp of a block, served from cache when possible."""
        cached = self._timestamps.get(block_number)
        if cached is not None:
            return cached

        cache_key = f"{self._cache_prefix}ts:{block_number}"
        shared = await self._get_cached(cache_key)
        if shared is not None:
            ts = int(shared)
            self._timestamps.put(block_number, ts)
            return ts

        block = await self._execute("get_block", block_number)
        ts = int(block["timestamp"])
        self._timestamps.put(block_number, ts)
        await self._set_cached(cache_key, str(ts), TIMESTAMP_CACHE_TTL_SECONDS)
        if self._header_delay > 0:
            await asyncio.sleep(self._header_delay)
        return ts

    async def get_transaction(self, tx_hash: str) -> TransactionInfo:
        tx = await self._execute("get_transaction", tx_hash)
        to_address = tx.get("to")
        block_number = tx.get("blockNumber")
        return TransactionInfo(
            tx_hash=to_hex(tx.get("hash") or tx_hash),
            sender=to_hex(tx["from"]),
            to=to_hex(to_address) if to_address else None,
            value=int(tx.get("value") or 0),
            data=to_bytes(tx.get("input") or tx.get("data") or b""),
            block_number=int(block_number) if block_number is not None else None,
        )

    async def get_transaction_receipt(self, tx_hash: str) -> ReceiptInfo:
        receipt = await self._execute("get_transaction_receipt", tx_hash)
        return ReceiptInfo(
            tx_hash=to_hex(receipt.get("transactionHash") or tx_hash),
            status=int(receipt.get("status") or 0),
            block_number=int(receipt["blockNumber"]),
            logs=[LogEvent.from_raw(dict(log)) for log in receipt.get("logs", [])],
        )

    async def call(self, address: str, data: bytes, block: int | str = "latest") -> bytes:
        """Read-only ``eth_call`` at a given block."""
        result = await self._execute(
            "call",
            {"to": AsyncWeb3.to_checksum_address(address), "data": "0x" + data.hex()},
            block,
        )
        return to_bytes(result)

    async def find_block_by_timestamp(self, ts: datetime) -> int:
        """Earliest block whose timestamp is at or after ``ts``.

        Used to resolve a contract's deployment block from its creation time.
        """
        if ts.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        target = int(ts.timestamp())

        hi = await self.current_block_number()
        if await self.get_block_timestamp(hi) < target:
            return hi
        lo = 0
        if await self.get_block_timestamp(lo) >= target:
            return lo

        # Invariant: ts(lo) < target <= ts(hi)
        while lo + 1 < hi:
            mid = (lo + hi) // 2
            if await self.get_block_timestamp(mid) < target:
                lo = mid
            else:
                hi = mid
        return hi

    async def health_check(self, timeout: float) -> bool:
        """Probe the head block within ``timeout`` seconds.

        Returns:
            True if healthy, False otherwise.
        """

        async def probe() -> None:
            head = await self._w3.eth.get_block_number()
            await self._w3.eth.get_block(head)

        try:
            await asyncio.wait_for(probe(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Chain %d health check timed out after %.1fs", self.chain_id, timeout)
            return False
        except Exception as e:
            logger.warning("Chain %d health check failed: %s", self.chain_id, e)
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close provider for chain %d: %s", self.chain_id, e)
