"""Tests for candles, daily aggregates and token summaries."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from launchpad_indexer.aggregator import Aggregator, build_minute_candles, floor_minute, roll_up_hours
from launchpad_indexer.config import AggregatorSettings
from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.repos import (
    BalanceRepository,
    CandleRepository,
    DailyAggRepository,
    ExchangeRateRepository,
    PoolDTO,
    PoolRepository,
    PoolSnapshotDTO,
    PoolSnapshotRepository,
    TokenDTO,
    TokenRepository,
    TradeDTO,
    TradeRepository,
)

CONTRACT = "0x" + "1" * 40
BASE = "0x" + "e" * 40
POOL = "0x" + "9" * 40
USER = "0x" + "a" * 40
TRADER = "0x" + "b" * 40
ETH = 10**18
DAY_ONE = datetime(2026, 1, 1, tzinfo=UTC)
NEXT_NOON = datetime(2026, 1, 2, 12, tzinfo=UTC)


def _tx(n: int) -> str:
    return "0x" + f"{n:064x}"


@pytest.fixture
async def token(db: DatabaseManager, chain) -> TokenDTO:
    async with db.get_async_session() as session:
        return await TokenRepository(session).insert(
            TokenDTO(
                id=0,
                chain_id=chain.chain_id,
                contract_address=CONTRACT,
                creator_address=None,
                created_at=DAY_ONE,
                deployment_block=100,
                total_supply=10 * ETH,
            )
        )


def _trade(token: TokenDTO, chain, n: int, block: int, token_amount: int, price: str) -> TradeDTO:
    return TradeDTO(
        chain_id=chain.chain_id,
        tx_hash=_tx(n),
        log_index=0,
        token_id=token.id,
        block_number=block,
        block_time=chain.block_time(block),
        trader=TRADER,
        side="BUY",
        token_amount=token_amount,
        eth_amount=ETH,
        price=Decimal(price),
        pool_address=POOL,
    )


@pytest.fixture
async def trades(db: DatabaseManager, chain, token: TokenDTO) -> list[TradeDTO]:
    # Blocks 200 and 202 fall in the 00:40 minute, block 205 in 00:41.
    rows = [
        _trade(token, chain, 1, 200, 8 * ETH, "0.125"),
        _trade(token, chain, 2, 202, 4 * ETH, "0.25"),
        _trade(token, chain, 3, 205, 2 * ETH, "0.5"),
    ]
    async with db.get_async_session() as session:
        await TradeRepository(session).upsert_many(rows)
    return rows


def _aggregator(db: DatabaseManager, now: datetime, **settings) -> Aggregator:
    return Aggregator(db, AggregatorSettings(**settings), clock=lambda: now)


async def _candles(db: DatabaseManager, token: TokenDTO, interval: str):
    async with db.get_async_session() as session:
        return await CandleRepository(session).list_range(
            token.id, interval, DAY_ONE, datetime(2027, 1, 1, tzinfo=UTC)
        )


async def _token(db: DatabaseManager, token: TokenDTO) -> TokenDTO:
    async with db.get_async_session() as session:
        loaded = await TokenRepository(session).get(token.id)
    assert loaded is not None
    return loaded


# ============================================================================
# Pure candle builders
# ============================================================================


class TestCandleBuilders:
    def test_minute_buckets_keep_trade_order(self, chain, token: TokenDTO) -> None:
        rows = [
            _trade(token, chain, 1, 200, 8 * ETH, "0.125"),
            _trade(token, chain, 2, 202, 4 * ETH, "0.25"),
            _trade(token, chain, 3, 205, 2 * ETH, "0.5"),
        ]

        first, second = build_minute_candles(token, rows)

        assert first.ts == datetime(2026, 1, 1, 0, 40, tzinfo=UTC)
        assert (first.open, first.high, first.low, first.close) == (
            Decimal("0.125"),
            Decimal("0.25"),
            Decimal("0.125"),
            Decimal("0.25"),
        )
        assert (first.volume_token, first.volume_eth, first.trade_count) == (12 * ETH, 2 * ETH, 2)
        assert second.ts == datetime(2026, 1, 1, 0, 41, tzinfo=UTC)
        assert second.open == second.close == Decimal("0.5")

    def test_hour_roll_up(self, chain, token: TokenDTO) -> None:
        minutes = build_minute_candles(
            token,
            [
                _trade(token, chain, 1, 200, 8 * ETH, "0.125"),
                _trade(token, chain, 3, 205, 2 * ETH, "0.5"),
                _trade(token, chain, 4, 400, 2 * ETH, "0.25"),
            ],
        )

        [hour, next_hour] = roll_up_hours(minutes)

        assert hour.ts == datetime(2026, 1, 1, 0, tzinfo=UTC)
        assert (hour.open, hour.high, hour.low, hour.close) == (
            Decimal("0.125"),
            Decimal("0.5"),
            Decimal("0.125"),
            Decimal("0.5"),
        )
        assert hour.trade_count == 2
        assert next_hour.ts == datetime(2026, 1, 1, 1, tzinfo=UTC)

    def test_floor_minute_normalizes_to_utc(self) -> None:
        from datetime import timedelta, timezone

        ts = datetime(2026, 1, 1, 3, 30, 45, 123, tzinfo=timezone(timedelta(hours=3)))
        assert floor_minute(ts) == datetime(2026, 1, 1, 0, 30, tzinfo=UTC)


# ============================================================================
# Aggregation passes
# ============================================================================


class TestAggregateChain:
    @pytest.mark.asyncio
    async def test_first_pass(self, db: DatabaseManager, chain, token: TokenDTO, trades) -> None:
        result = await _aggregator(db, NEXT_NOON).aggregate_chain(chain.chain_id)

        assert (result.tokens, result.minute_candles, result.hour_candles, result.daily_rows) == (1, 2, 1, 2)
        minutes = await _candles(db, token, "1m")
        assert [c.ts.minute for c in minutes] == [40, 41]
        assert minutes[0].close == Decimal("0.25")
        [hour] = await _candles(db, token, "1h")
        assert hour.trade_count == 3
        assert hour.close == Decimal("0.5")

        async with db.get_async_session() as session:
            day = await DailyAggRepository(session).get(token.id, date(2026, 1, 1))
            quiet = await DailyAggRepository(session).get(token.id, date(2026, 1, 2))
        assert day is not None and quiet is not None
        assert (day.trades, day.unique_traders, day.volume_eth) == (3, 1, 3 * ETH)
        assert quiet.trades == 0

    @pytest.mark.asyncio
    async def test_open_buckets_are_left_alone(self, db: DatabaseManager, chain, token: TokenDTO, trades) -> None:
        now = datetime(2026, 1, 1, 0, 41, 30, tzinfo=UTC)

        result = await _aggregator(db, now).aggregate_chain(chain.chain_id)

        assert result.minute_candles == 1
        assert result.hour_candles == 0
        assert [c.ts.minute for c in await _candles(db, token, "1m")] == [40]

    @pytest.mark.asyncio
    async def test_later_pass_picks_up_new_trades(self, db: DatabaseManager, chain, token: TokenDTO, trades) -> None:
        await _aggregator(db, NEXT_NOON).aggregate_chain(chain.chain_id)
        async with db.get_async_session() as session:
            await TradeRepository(session).upsert_many([_trade(token, chain, 9, 215, 4 * ETH, "0.25")])

        result = await _aggregator(db, NEXT_NOON).aggregate_chain(chain.chain_id)

        # Block 215 is 00:43; the hour and the latest day are rebuilt.
        assert (result.minute_candles, result.hour_candles, result.daily_rows) == (1, 1, 1)
        [hour] = await _candles(db, token, "1h")
        assert hour.trade_count == 4
        assert hour.close == Decimal("0.25")

    @pytest.mark.asyncio
    async def test_placeholder_times_do_not_start_at_epoch(self, db: DatabaseManager, chain, token: TokenDTO) -> None:
        placeholder = _trade(token, chain, 1, 200, 8 * ETH, "0.125")
        placeholder.block_time = datetime(1970, 1, 1, tzinfo=UTC)
        async with db.get_async_session() as session:
            await TradeRepository(session).upsert_many([placeholder])

        result = await _aggregator(db, NEXT_NOON).aggregate_chain(chain.chain_id)

        assert result.minute_candles == 0
        assert result.daily_rows == 0

    @pytest.mark.asyncio
    async def test_token_filter(self, db: DatabaseManager, chain, token: TokenDTO, trades) -> None:
        result = await _aggregator(db, NEXT_NOON).aggregate_chain(chain.chain_id, token_id=token.id + 1)
        assert result.tokens == 0


# ============================================================================
# Summaries
# ============================================================================


class TestSummary:
    @pytest.mark.asyncio
    async def test_price_from_latest_trade(self, db: DatabaseManager, chain, token: TokenDTO, trades) -> None:
        async with db.get_async_session() as session:
            await BalanceRepository(session).apply_delta(token.id, USER, 2 * ETH)

        await _aggregator(db, NEXT_NOON).aggregate_chain(chain.chain_id)

        loaded = await _token(db, token)
        assert loaded.current_price == Decimal("0.5")
        assert loaded.market_cap == Decimal("1")
        assert loaded.fdv == Decimal("5")
        assert loaded.liquidity_eth is None
        assert loaded.on_dex is False

    @pytest.mark.asyncio
    async def test_pool_snapshot_wins(self, db: DatabaseManager, chain, token: TokenDTO, trades) -> None:
        async with db.get_async_session() as session:
            await PoolRepository(session).register(PoolDTO(chain.chain_id, POOL, token.id, BASE, CONTRACT, BASE))
            await PoolSnapshotRepository(session).upsert_many(
                [
                    PoolSnapshotDTO(
                        chain_id=chain.chain_id,
                        pool_address=POOL,
                        block_number=300,
                        log_index=1,
                        reserve0=10 * ETH,
                        reserve1=40 * ETH,
                        price=Decimal("0.25"),
                        block_time=chain.block_time(300),
                    )
                ]
            )
            await ExchangeRateRepository(session).set("eth", Decimal("2000"))
            await BalanceRepository(session).apply_delta(token.id, USER, 2 * ETH)
            await BalanceRepository(session).apply_delta(token.id, POOL, 6 * ETH)

        loaded = await _token(db, token)
        async with db.get_async_session() as session:
            summary = await _aggregator(db, NEXT_NOON).compute_summary(session, loaded)

        assert summary.current_price == Decimal("0.25")
        assert summary.liquidity_eth == Decimal("20")
        assert summary.liquidity_usd == Decimal("40000")
        assert summary.market_cap == Decimal("0.5")
        assert summary.has_pool is True

        await _aggregator(db, NEXT_NOON).aggregate_chain(chain.chain_id)
        assert (await _token(db, token)).on_dex is True

    @pytest.mark.asyncio
    async def test_fallback_price_only_when_positive(self, db: DatabaseManager, chain, token: TokenDTO) -> None:
        async with db.get_async_session() as session:
            await BalanceRepository(session).apply_delta(token.id, USER, ETH)

        await _aggregator(db, NEXT_NOON).aggregate_chain(chain.chain_id)
        assert (await _token(db, token)).current_price is None

        await _aggregator(db, NEXT_NOON, AGG_FALLBACK_BASE_PRICE=Decimal("0.5")).aggregate_chain(chain.chain_id)
        loaded = await _token(db, token)
        assert loaded.current_price == Decimal("0.5")
        assert loaded.market_cap == Decimal("0.5")
