"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from launchpad_indexer.chain.client import ReceiptInfo, TransactionInfo
from launchpad_indexer.chain.events import (
    SWAP_TOPIC,
    SYNC_TOPIC,
    TRANSFER_TOPIC,
    LogEvent,
    address_to_topic,
    to_bytes,
)
from launchpad_indexer.chain.retry import RateLimitError, RPCError
from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.models import Base

CHAIN_ID = 6342
GENESIS_TS = int(datetime(2026, 1, 1, tzinfo=UTC).timestamp())
BLOCK_SECONDS = 12


def block_time(block_number: int) -> datetime:
    """Wall time of a block on the fake chain."""
    return datetime.fromtimestamp(GENESIS_TS + block_number * BLOCK_SECONDS, UTC)


def _word(value: int) -> bytes:
    return value.to_bytes(32, "big")


class FakeChain:
    """In-memory stand-in for ``ChainClient``.

    Logs, transactions, receipts and contract call results are registered up
    front; everything else raises ``RPCError`` like a failing endpoint would.
    """

    def __init__(self, chain_id: int = CHAIN_ID, head: int = 1_000) -> None:
        self.chain_id = chain_id
        self.head = head
        self.healthy = True
        self.logs: list[LogEvent] = []
        self.transactions: dict[str, TransactionInfo] = {}
        self.receipts: dict[str, ReceiptInfo] = {}
        self.call_results: dict[tuple[str, str], bytes] = {}
        self.max_log_span: int | None = None
        self.timestamps_rate_limited = False
        self.get_logs_calls: list[tuple[tuple[str, ...], int, int]] = []
        self.calls: list[tuple[str, bytes, int | str]] = []

    @staticmethod
    def block_time(block_number: int) -> datetime:
        return block_time(block_number)

    # -- registration helpers -------------------------------------------

    def add_transfer(
        self,
        contract: str,
        from_address: str,
        to_address: str,
        amount: int,
        *,
        block: int,
        tx_hash: str,
        log_index: int = 0,
    ) -> None:
        self.logs.append(
            LogEvent(
                address=contract.lower(),
                topics=(TRANSFER_TOPIC, address_to_topic(from_address), address_to_topic(to_address)),
                data=_word(amount),
                block_number=block,
                tx_hash=tx_hash,
                log_index=log_index,
            )
        )

    def add_swap(
        self,
        pool: str,
        *,
        amounts: tuple[int, int, int, int],
        block: int,
        tx_hash: str,
        log_index: int = 0,
        sender: str = "0x" + "5" * 40,
        recipient: str = "0x" + "6" * 40,
    ) -> None:
        self.logs.append(
            LogEvent(
                address=pool.lower(),
                topics=(SWAP_TOPIC, address_to_topic(sender), address_to_topic(recipient)),
                data=b"".join(_word(a) for a in amounts),
                block_number=block,
                tx_hash=tx_hash,
                log_index=log_index,
            )
        )

    def add_sync(
        self, pool: str, reserve0: int, reserve1: int, *, block: int, tx_hash: str, log_index: int = 0
    ) -> None:
        self.logs.append(
            LogEvent(
                address=pool.lower(),
                topics=(SYNC_TOPIC,),
                data=_word(reserve0) + _word(reserve1),
                block_number=block,
                tx_hash=tx_hash,
                log_index=log_index,
            )
        )

    def add_tx(self, tx_hash: str, sender: str, *, value: int = 0, data: bytes = b"", block: int | None = None) -> None:
        self.transactions[tx_hash] = TransactionInfo(
            tx_hash=tx_hash, sender=sender.lower(), to=None, value=value, data=data, block_number=block
        )

    def add_receipt(self, tx_hash: str, *, status: int, block: int) -> None:
        self.receipts[tx_hash] = ReceiptInfo(tx_hash=tx_hash, status=status, block_number=block)

    def set_call(self, address: str, selector_hex: str, result: bytes) -> None:
        self.call_results[(address.lower(), selector_hex.lower())] = result

    # -- ChainClient surface --------------------------------------------

    async def current_block_number(self) -> int:
        return self.head

    async def get_logs(
        self,
        addresses: Sequence[str],
        topics: Sequence[str | None | Sequence[str]],
        from_block: int,
        to_block: int,
    ) -> list[LogEvent]:
        if self.max_log_span is not None and to_block - from_block + 1 > self.max_log_span:
            raise RateLimitError(f"range {from_block}-{to_block} too large")
        self.get_logs_calls.append((tuple(addresses), from_block, to_block))
        wanted = {a.lower() for a in addresses}
        first = topics[0] if topics else None
        topic0s = {first} if isinstance(first, str) else set(first or ())
        return [
            log
            for log in self.logs
            if log.address in wanted
            and from_block <= log.block_number <= to_block
            and (not topic0s or log.topic0 in topic0s)
        ]

    async def get_block_timestamp(self, block_number: int) -> int:
        if self.timestamps_rate_limited:
            raise RateLimitError("timestamps rate limited")
        return GENESIS_TS + block_number * BLOCK_SECONDS

    async def get_transaction(self, tx_hash: str) -> TransactionInfo:
        try:
            return self.transactions[tx_hash]
        except KeyError:
            raise RPCError(f"transaction {tx_hash} not found") from None

    async def get_transaction_receipt(self, tx_hash: str) -> ReceiptInfo:
        try:
            return self.receipts[tx_hash]
        except KeyError:
            raise RPCError(f"receipt {tx_hash} not found") from None

    async def call(self, address: str, data: bytes, block: int | str = "latest") -> bytes:
        self.calls.append((address.lower(), data, block))
        key = (address.lower(), "0x" + to_bytes(data)[:4].hex())
        try:
            return self.call_results[key]
        except KeyError:
            raise RPCError(f"execution reverted: {key}") from None

    async def find_block_by_timestamp(self, ts: datetime) -> int:
        return max((int(ts.timestamp()) - GENESIS_TS) // BLOCK_SECONDS, 0)

    async def health_check(self, timeout: float) -> bool:
        return self.healthy

    async def aclose(self) -> None:
        return None


# ============================================================================
# Database fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """In-memory SQLite engine with working SAVEPOINT support."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False, poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        # Let SQLAlchemy, not the driver, emit BEGIN.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(async_engine) -> DatabaseManager:
    return DatabaseManager(engine=async_engine)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def make_chain():
    """Factory for extra fake chains (multi-chain runs)."""
    return FakeChain
