"""Tests for storage repositories."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.repos import (
    BalanceJournalRepository,
    BalanceRepository,
    CursorRepository,
    PoolDTO,
    PoolRepository,
    PoolSnapshotDTO,
    PoolSnapshotRepository,
    RunLeaseRepository,
    TokenDTO,
    TokenRepository,
    TradeDTO,
    TradeRepository,
    TransferDTO,
    TransferRepository,
)

CHAIN = 6342
CONTRACT = "0x" + "1" * 40
USER = "0x" + "a" * 40
OTHER = "0x" + "b" * 40
POOL = "0x" + "9" * 40
WETH = "0x" + "e" * 40
TS = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
ETH = 10**18

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def token(db: DatabaseManager) -> TokenDTO:
    async with db.get_async_session() as session:
        return await TokenRepository(session).insert(
            TokenDTO(
                id=0,
                chain_id=CHAIN,
                contract_address=CONTRACT.upper().replace("0X", "0x"),
                creator_address=None,
                created_at=TS,
                total_supply=1000 * ETH,
            )
        )


def _transfer(token: TokenDTO, tx: str, log_index: int, **overrides) -> TransferDTO:
    values = {
        "chain_id": CHAIN,
        "tx_hash": tx,
        "log_index": log_index,
        "token_id": token.id,
        "contract_address": CONTRACT,
        "block_number": 100,
        "block_time": TS,
        "from_address": USER,
        "to_address": OTHER,
        "amount": ETH,
        "kind": "TRANSFER",
    }
    values.update(overrides)
    return TransferDTO(**values)


def _trade(token: TokenDTO, tx: str, log_index: int, **overrides) -> TradeDTO:
    values = {
        "chain_id": CHAIN,
        "tx_hash": tx,
        "log_index": log_index,
        "token_id": token.id,
        "block_number": 100,
        "block_time": TS,
        "trader": USER,
        "side": "BUY",
        "token_amount": ETH,
        "eth_amount": ETH,
        "price": Decimal("1"),
        "pool_address": POOL,
    }
    values.update(overrides)
    return TradeDTO(**values)


TX1 = "0x" + "1" * 64
TX2 = "0x" + "2" * 64


# ============================================================================
# Tokens and cursor
# ============================================================================


class TestTokenRepository:
    @pytest.mark.asyncio
    async def test_insert_lowercases_and_lists(self, db: DatabaseManager, token: TokenDTO) -> None:
        assert token.contract_address == CONTRACT
        async with db.get_async_session() as session:
            repo = TokenRepository(session)
            assert await repo.list_chain_ids() == [CHAIN]
            assert [t.id for t in await repo.list_for_chain(CHAIN)] == [token.id]
            assert await repo.list_for_chain(CHAIN, token_id=token.id + 1) == []
            loaded = await repo.get(token.id)
        assert loaded is not None
        assert loaded.total_supply == 1000 * ETH
        assert loaded.created_at == TS

    @pytest.mark.asyncio
    async def test_deployment_block_is_resolved_once(self, db: DatabaseManager, token: TokenDTO) -> None:
        async with db.get_async_session() as session:
            repo = TokenRepository(session)
            await repo.set_deployment_block(token.id, 50)
            await repo.set_deployment_block(token.id, 70)
        async with db.get_async_session() as session:
            loaded = await TokenRepository(session).get(token.id)
        assert loaded is not None and loaded.deployment_block == 50

    @pytest.mark.asyncio
    async def test_on_dex_never_reverts(self, db: DatabaseManager, token: TokenDTO) -> None:
        async with db.get_async_session() as session:
            repo = TokenRepository(session)
            await repo.update_summary(
                token.id, current_price=Decimal("2"), liquidity_eth=None, liquidity_usd=None,
                fdv=None, market_cap=None, has_pool=True,
            )
            await repo.update_summary(
                token.id, current_price=Decimal("3"), liquidity_eth=None, liquidity_usd=None,
                fdv=None, market_cap=None, has_pool=False,
            )
        async with db.get_async_session() as session:
            loaded = await TokenRepository(session).get(token.id)
        assert loaded is not None
        assert loaded.on_dex is True
        assert loaded.current_price == Decimal("3")


class TestCursorRepository:
    @pytest.mark.asyncio
    async def test_cursor_only_moves_forward(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = CursorRepository(session)
            assert await repo.get(CHAIN) is None
            await repo.advance(CHAIN, 500)
            await repo.advance(CHAIN, 400)
        async with db.get_async_session() as session:
            assert await CursorRepository(session).get(CHAIN) == 500


# ============================================================================
# Ledgers
# ============================================================================


class TestTransferRepository:
    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, db: DatabaseManager, token: TokenDTO) -> None:
        row = _transfer(token, TX1, 0)
        async with db.get_async_session() as session:
            repo = TransferRepository(session)
            await repo.upsert_many([row])
            await repo.upsert_many([row, row])
        async with db.get_async_session() as session:
            rows = await TransferRepository(session).list_for_chain(CHAIN)
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_upsert_keeps_captured_price(self, db: DatabaseManager, token: TokenDTO) -> None:
        priced = _transfer(token, TX1, 0, kind="BUY", eth_amount=ETH, price=Decimal("1"))
        async with db.get_async_session() as session:
            await TransferRepository(session).upsert_many([priced])
        async with db.get_async_session() as session:
            await TransferRepository(session).upsert_many([_transfer(token, TX1, 0, kind="OTHER")])
        async with db.get_async_session() as session:
            stored = await TransferRepository(session).get(CHAIN, TX1, 0)
        assert stored is not None
        assert stored.kind == "OTHER"
        assert stored.eth_amount == ETH
        assert stored.price == Decimal("1")

    @pytest.mark.asyncio
    async def test_graduation_rows_are_protected(self, db: DatabaseManager, token: TokenDTO) -> None:
        async with db.get_async_session() as session:
            await TransferRepository(session).upsert_many([_transfer(token, TX1, 0, kind="GRADUATION")])
        async with db.get_async_session() as session:
            await TransferRepository(session).upsert_many([_transfer(token, TX1, 0, kind="TRANSFER", amount=5)])
        async with db.get_async_session() as session:
            stored = await TransferRepository(session).get(CHAIN, TX1, 0)
        assert stored is not None
        assert stored.kind == "GRADUATION"
        assert stored.amount == ETH

    @pytest.mark.asyncio
    async def test_graduation_groups_and_overlaps(self, db: DatabaseManager, token: TokenDTO) -> None:
        async with db.get_async_session() as session:
            await TransferRepository(session).upsert_many(
                [
                    _transfer(token, TX1, 0, kind="GRADUATION"),
                    _transfer(token, TX1, 1, kind="TRANSFER"),
                    _transfer(token, TX2, 0, kind="TRANSFER", block_number=200),
                ]
            )
            await TradeRepository(session).upsert_many([_trade(token, TX2, 3, block_number=200)])
        async with db.get_async_session() as session:
            repo = TransferRepository(session)
            assert await repo.list_graduation_groups(CHAIN) == [TX1]
            assert await repo.list_overlaps(CHAIN) == [(200, TX2)]
            assert await repo.graduation_blocks(CHAIN) == {token.id: 100}

    @pytest.mark.asyncio
    async def test_backfill_candidates(self, db: DatabaseManager, token: TokenDTO) -> None:
        async with db.get_async_session() as session:
            await TransferRepository(session).upsert_many(
                [
                    _transfer(token, TX1, 0, kind="OTHER"),
                    _transfer(token, TX1, 1, kind="GRADUATION"),
                    _transfer(token, TX2, 0, kind="BUY", backfill_attempted_at=TS),
                ]
            )
        async with db.get_async_session() as session:
            repo = TransferRepository(session)
            candidates = await repo.list_backfill_candidates(CHAIN, limit=10)
            assert [(c.tx_hash, c.log_index) for c in candidates] == [(TX1, 0)]
            await repo.mark_backfill_attempted(CHAIN, TX1, 0)
        async with db.get_async_session() as session:
            assert await TransferRepository(session).list_backfill_candidates(CHAIN, limit=10) == []


class TestTradeRepository:
    @pytest.mark.asyncio
    async def test_duplicates_keep_lowest_log_index(self, db: DatabaseManager, token: TokenDTO) -> None:
        async with db.get_async_session() as session:
            await TradeRepository(session).upsert_many(
                [
                    _trade(token, TX1, 4),
                    _trade(token, TX1, 2),
                    _trade(token, TX1, 7, token_amount=2 * ETH),
                ]
            )
        async with db.get_async_session() as session:
            repo = TradeRepository(session)
            groups = await repo.list_duplicate_groups(CHAIN)
            assert groups == [(TX1, 2, 2)]
            assert await repo.delete_duplicates_of(CHAIN, TX1, 2) == 1
        async with db.get_async_session() as session:
            remaining = await TradeRepository(session).list_by_tx(CHAIN, TX1)
        assert [t.log_index for t in remaining] == [2, 7]

    @pytest.mark.asyncio
    async def test_range_and_placeholder_times(self, db: DatabaseManager, token: TokenDTO) -> None:
        epoch = datetime(1970, 1, 1, tzinfo=UTC)
        async with db.get_async_session() as session:
            await TradeRepository(session).upsert_many(
                [
                    _trade(token, TX1, 0, block_time=TS + timedelta(seconds=30), price=Decimal("2")),
                    _trade(token, TX1, 1, block_time=TS, price=Decimal("1")),
                    _trade(token, TX2, 0, block_number=300, block_time=epoch),
                ]
            )
        async with db.get_async_session() as session:
            repo = TradeRepository(session)
            in_range = await repo.list_in_range(token.id, TS, TS + timedelta(minutes=1))
            assert [t.price for t in in_range] == [Decimal("1"), Decimal("2")]
            assert await repo.first_time(token.id) == TS
            assert await repo.latest_price(token.id) == Decimal("2")
            assert await repo.list_blocks_missing_time(CHAIN, limit=10) == [300]

    @pytest.mark.asyncio
    async def test_day_stats_totals_past_64_bit_range(self, db: DatabaseManager, token: TokenDTO) -> None:
        async with db.get_async_session() as session:
            await TradeRepository(session).upsert_many(
                [
                    _trade(token, TX1, 0, token_amount=8 * ETH, eth_amount=8 * ETH),
                    _trade(token, TX1, 1, token_amount=4 * ETH, eth_amount=4 * ETH, trader=OTHER),
                    _trade(token, TX2, 0, token_amount=2 * ETH, eth_amount=2 * ETH),
                ]
            )
            await TransferRepository(session).upsert_many(
                [
                    _transfer(token, TX1, 5, amount=8 * ETH, eth_amount=8 * ETH),
                    _transfer(token, TX2, 5, amount=4 * ETH, eth_amount=None, to_address=USER, from_address=OTHER),
                ]
            )
        async with db.get_async_session() as session:
            trades = await TradeRepository(session).day_stats(token.id, TS, TS + timedelta(days=1))
            transfers = await TransferRepository(session).day_stats(token.id, TS, TS + timedelta(days=1))
        assert (trades.count, trades.unique_a, trades.volume_token, trades.volume_eth) == (3, 2, 14 * ETH, 14 * ETH)
        assert (transfers.count, transfers.unique_a, transfers.unique_b) == (2, 2, 2)
        assert (transfers.volume_token, transfers.volume_eth) == (12 * ETH, 8 * ETH)


# ============================================================================
# Balances and journal
# ============================================================================


class TestBalanceRepository:
    @pytest.mark.asyncio
    async def test_apply_delta_clamps_at_zero(self, db: DatabaseManager, token: TokenDTO) -> None:
        async with db.get_async_session() as session:
            repo = BalanceRepository(session)
            assert await repo.apply_delta(token.id, USER, 5 * ETH) == 5 * ETH
            assert await repo.apply_delta(token.id, USER, -8 * ETH) == 0
            await repo.apply_delta(token.id, OTHER, 2 * ETH)
            await repo.apply_delta(token.id, POOL, 3 * ETH)
            assert await repo.prune_zero({token.id}) == 1
            assert await repo.count_holders(token.id) == 2
            assert await repo.circulating_supply(token.id, exclude={POOL}) == 2 * ETH
            assert await repo.delete_holders([token.id], {POOL}) == 1
            assert await repo.list_for_token(token.id) == {OTHER: 2 * ETH}

    @pytest.mark.asyncio
    async def test_circulating_supply_past_64_bit_range(self, db: DatabaseManager, token: TokenDTO) -> None:
        async with db.get_async_session() as session:
            repo = BalanceRepository(session)
            await repo.apply_delta(token.id, USER, 6 * ETH)
            await repo.apply_delta(token.id, OTHER, 5 * ETH)
            await repo.apply_delta(token.id, POOL, 8 * ETH)
            assert await repo.circulating_supply(token.id) == 19 * ETH
            assert await repo.circulating_supply(token.id, exclude={POOL}) == 11 * ETH

    @pytest.mark.asyncio
    async def test_journal_records_once(self, db: DatabaseManager, token: TokenDTO) -> None:
        async with db.get_async_session() as session:
            journal = BalanceJournalRepository(session)
            assert await journal.record(CHAIN, TX1, 0, token.id) is True
            assert await journal.record(CHAIN, TX1.upper().replace("0X", "0x"), 0, token.id) is False


# ============================================================================
# Pools and leases
# ============================================================================


class TestPoolRepositories:
    @pytest.mark.asyncio
    async def test_register_once_and_snapshots(self, db: DatabaseManager, token: TokenDTO) -> None:
        pool = PoolDTO(CHAIN, POOL, token.id, WETH, CONTRACT, WETH)
        async with db.get_async_session() as session:
            repo = PoolRepository(session)
            assert await repo.register(pool) is True
            assert await repo.register(pool) is False
            await repo.mark_scanned_through(CHAIN, [POOL], 120)
            await PoolSnapshotRepository(session).upsert_many(
                [
                    PoolSnapshotDTO(CHAIN, POOL, 110, 1, 10, 20, Decimal("0.5"), TS),
                    PoolSnapshotDTO(CHAIN, POOL, 110, 4, 30, 40, Decimal("0.75"), TS),
                    PoolSnapshotDTO(CHAIN, POOL, 105, 0, 1, 1, Decimal("1"), TS),
                ]
            )
        async with db.get_async_session() as session:
            pools = await PoolRepository(session).list_for_token(token.id)
            latest = await PoolSnapshotRepository(session).latest_for_pool(CHAIN, POOL)
        assert pools[0].scanned_through_block == 120
        assert pools[0].base_is_token0 is True
        assert latest is not None
        assert (latest.block_number, latest.reserve0, latest.price) == (110, 30, Decimal("0.75"))


class TestRunLeaseRepository:
    @pytest.mark.asyncio
    async def test_lease_contention_and_expiry(self, db: DatabaseManager) -> None:
        ttl = timedelta(minutes=15)
        async with db.get_async_session() as session:
            repo = RunLeaseRepository(session)
            assert await repo.try_acquire("indexer", "a", TS, TS + ttl) is True
            assert await repo.try_acquire("indexer", "b", TS + timedelta(minutes=1), TS + ttl) is False
            assert await repo.try_acquire("indexer", "a", TS + timedelta(minutes=1), TS + 2 * ttl) is True
            later = TS + 3 * ttl
            assert await repo.try_acquire("indexer", "b", later, later + ttl) is True
            assert await repo.get_owner("indexer") == "b"
            assert await repo.renew("indexer", "a", later + ttl) is False
            assert await repo.release("indexer", "b") is True
            assert await repo.get_owner("indexer") is None
