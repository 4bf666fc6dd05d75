"""Candle, daily aggregate and token summary builder.

Every pass works forward from the last completed bucket to "now" truncated to
the bucket boundary; the still-open bucket is left for a later pass. Hour
candles are rolled up from committed minute candles only, so the hour series
can always be rebuilt from the minute series.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal, localcontext

from sqlalchemy.ext.asyncio import AsyncSession

from launchpad_indexer.config import AggregatorSettings
from launchpad_indexer.pricing import PRICE_QUANTUM, to_units
from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.repos import (
    BalanceRepository,
    CandleDTO,
    CandleRepository,
    DailyAggDTO,
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
    TransferRepository,
)

logger = logging.getLogger(__name__)

MINUTE = timedelta(minutes=1)
DAY = timedelta(days=1)


@dataclass
class AggregateResult:
    chain_id: int
    tokens: int = 0
    minute_candles: int = 0
    hour_candles: int = 0
    daily_rows: int = 0
    summaries: int = 0


@dataclass(frozen=True)
class TokenSummary:
    current_price: Decimal | None
    liquidity_eth: Decimal | None
    liquidity_usd: Decimal | None
    fdv: Decimal | None
    market_cap: Decimal | None
    has_pool: bool


def floor_minute(ts: datetime) -> datetime:
    return ts.astimezone(UTC).replace(second=0, microsecond=0)


def floor_hour(ts: datetime) -> datetime:
    return ts.astimezone(UTC).replace(minute=0, second=0, microsecond=0)


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=UTC)


def _quantize(value: Decimal | None) -> Decimal | None:
    if value is None:
        return None
    with localcontext() as ctx:
        ctx.prec = 60
        return value.quantize(PRICE_QUANTUM)


def build_minute_candles(token: TokenDTO, trades: list[TradeDTO]) -> list[CandleDTO]:
    """Bucket trades (already in time, then log order) into minute candles."""
    buckets: dict[datetime, list[TradeDTO]] = {}
    for trade in trades:
        buckets.setdefault(floor_minute(trade.block_time), []).append(trade)

    candles = []
    for ts, rows in sorted(buckets.items()):
        prices = [r.price for r in rows]
        candles.append(
            CandleDTO(
                token_id=token.id,
                chain_id=token.chain_id,
                interval="1m",
                ts=ts,
                open=rows[0].price,
                high=max(prices),
                low=min(prices),
                close=rows[-1].price,
                volume_token=sum(r.token_amount for r in rows),
                volume_eth=sum(r.eth_amount for r in rows),
                trade_count=len(rows),
            )
        )
    return candles


def roll_up_hours(minutes: list[CandleDTO]) -> list[CandleDTO]:
    """Combine minute candles (in time order) into hour candles."""
    buckets: dict[datetime, list[CandleDTO]] = {}
    for candle in minutes:
        buckets.setdefault(floor_hour(candle.ts), []).append(candle)

    hours = []
    for ts, rows in sorted(buckets.items()):
        hours.append(
            CandleDTO(
                token_id=rows[0].token_id,
                chain_id=rows[0].chain_id,
                interval="1h",
                ts=ts,
                open=rows[0].open,
                high=max(r.high for r in rows),
                low=min(r.low for r in rows),
                close=rows[-1].close,
                volume_token=sum(r.volume_token for r in rows),
                volume_eth=sum(r.volume_eth for r in rows),
                trade_count=sum(r.trade_count for r in rows),
            )
        )
    return hours


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Aggregator:
    """Builds the derived tables for every token of a chain."""

    def __init__(
        self,
        db: DatabaseManager,
        settings: AggregatorSettings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._settings = settings
        self._clock = clock

    async def aggregate_chain(self, chain_id: int, *, token_id: int | None = None) -> AggregateResult:
        result = AggregateResult(chain_id=chain_id)
        now = self._clock()
        async with self._db.get_async_session() as session:
            tokens = await TokenRepository(session).list_for_chain(chain_id, token_id=token_id)

        for token in tokens:
            async with self._db.get_async_session() as session:
                candles = CandleRepository(session)
                result.minute_candles += await self._minute_candles(session, candles, token, now)
                result.hour_candles += await self._hour_candles(candles, token, now)
                result.daily_rows += await self._daily(session, token, now)
                await self._summary(session, token)
                result.summaries += 1
            result.tokens += 1

        logger.info(
            "Chain %d aggregated %d tokens: %d minute, %d hour candles, %d daily rows",
            chain_id,
            result.tokens,
            result.minute_candles,
            result.hour_candles,
            result.daily_rows,
        )
        return result

    async def _minute_candles(
        self, session: AsyncSession, candles: CandleRepository, token: TokenDTO, now: datetime
    ) -> int:
        trades_repo = TradeRepository(session)
        latest = await candles.latest_ts(token.id, "1m")
        if latest is not None:
            start = latest + MINUTE
        else:
            first = await trades_repo.first_time(token.id)
            if first is None:
                return 0
            start = floor_minute(first)
        end = floor_minute(now)
        if start >= end:
            return 0

        rows = build_minute_candles(token, await trades_repo.list_in_range(token.id, start, end))
        await candles.upsert_many(rows)
        return len(rows)

    async def _hour_candles(self, candles: CandleRepository, token: TokenDTO, now: datetime) -> int:
        latest = await candles.latest_ts(token.id, "1h")
        if latest is not None:
            # The last hour is rebuilt in case minutes were added after it.
            start = latest
        else:
            earliest = await candles.earliest_ts(token.id, "1m")
            if earliest is None:
                return 0
            start = floor_hour(earliest)
        end = floor_hour(now)
        if start >= end:
            return 0

        rows = roll_up_hours(await candles.list_range(token.id, "1m", start, end))
        await candles.upsert_many(rows)
        return len(rows)

    async def _daily(self, session: AsyncSession, token: TokenDTO, now: datetime) -> int:
        daily = DailyAggRepository(session)
        transfers_repo = TransferRepository(session)
        trades_repo = TradeRepository(session)

        # The latest stored day may have been partial; rebuild it.
        first_day = await daily.latest_day(token.id)
        if first_day is None:
            firsts = [
                t
                for t in (await transfers_repo.first_time(token.id), await trades_repo.first_time(token.id))
                if t is not None
            ]
            if not firsts:
                return 0
            first_day = min(firsts).date()

        today = now.astimezone(UTC).date()
        written = 0
        day = first_day
        while day <= today:
            start = day_start(day)
            end = start + DAY
            transfer_stats = await transfers_repo.day_stats(token.id, start, end)
            trade_stats = await trades_repo.day_stats(token.id, start, end)
            await daily.upsert(
                DailyAggDTO(
                    token_id=token.id,
                    chain_id=token.chain_id,
                    day=day,
                    transfers=transfer_stats.count,
                    trades=trade_stats.count,
                    unique_senders=transfer_stats.unique_a,
                    unique_receivers=transfer_stats.unique_b,
                    unique_traders=trade_stats.unique_a,
                    volume_token=transfer_stats.volume_token + trade_stats.volume_token,
                    volume_eth=transfer_stats.volume_eth + trade_stats.volume_eth,
                    holders_count=token.holder_count,
                )
            )
            written += 1
            day += DAY
        return written

    async def _latest_snapshot(
        self, session: AsyncSession, pools: list[PoolDTO]
    ) -> tuple[PoolDTO, PoolSnapshotDTO] | None:
        snapshots = PoolSnapshotRepository(session)
        best: tuple[PoolDTO, PoolSnapshotDTO] | None = None
        for pool in pools:
            snapshot = await snapshots.latest_for_pool(pool.chain_id, pool.pool_address)
            if snapshot is None:
                continue
            if best is None or snapshot.block_number > best[1].block_number:
                best = (pool, snapshot)
        return best

    async def compute_summary(self, session: AsyncSession, token: TokenDTO) -> TokenSummary:
        pools = await PoolRepository(session).list_for_token(token.id)
        latest = await self._latest_snapshot(session, pools)

        price: Decimal | None = None
        liquidity_eth: Decimal | None = None
        if latest is not None:
            pool, snapshot = latest
            price = snapshot.price
            base_reserve = snapshot.reserve0 if pool.base_is_token0 else snapshot.reserve1
            liquidity_eth = 2 * to_units(base_reserve, pool.base_decimals)
        if price is None:
            price = await TradeRepository(session).latest_price(token.id)
        if price is None:
            price = token.base_price
        if price is None and self._settings.fallback_base_price > 0:
            price = self._settings.fallback_base_price

        liquidity_usd: Decimal | None = None
        if liquidity_eth is not None:
            rate = await ExchangeRateRepository(session).get(self._settings.exchange_rate_symbol)
            if rate is not None:
                liquidity_usd = liquidity_eth * rate

        fdv: Decimal | None = None
        market_cap: Decimal | None = None
        if price is not None:
            if token.total_supply:
                fdv = to_units(token.total_supply, token.decimals) * price
            circulating = await BalanceRepository(session).circulating_supply(
                token.id, exclude={p.pool_address for p in pools}
            )
            market_cap = to_units(circulating, token.decimals) * price

        return TokenSummary(
            current_price=_quantize(price),
            liquidity_eth=_quantize(liquidity_eth),
            liquidity_usd=_quantize(liquidity_usd),
            fdv=_quantize(fdv),
            market_cap=_quantize(market_cap),
            has_pool=bool(pools),
        )

    async def _summary(self, session: AsyncSession, token: TokenDTO) -> None:
        summary = await self.compute_summary(session, token)
        await TokenRepository(session).update_summary(
            token.id,
            current_price=summary.current_price,
            liquidity_eth=summary.liquidity_eth,
            liquidity_usd=summary.liquidity_usd,
            fdv=summary.fdv,
            market_cap=summary.market_cap,
            has_pool=summary.has_pool,
        )
