"""Repository pattern implementations for data access.

This module provides data access abstractions for tracked tokens, the chain
cursor, both ledgers, balances, candles, daily aggregates and pool state.
Repositories never commit; callers own the transaction boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from launchpad_indexer.storage.models import (
    BalanceJournalModel,
    BalanceModel,
    Base,
    CandleModel,
    ChainCursorModel,
    DailyAggModel,
    ExchangeRateModel,
    PoolModel,
    PoolSnapshotModel,
    RunLeaseModel,
    TokenModel,
    TradeModel,
    TransferModel,
    ensure_utc,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

GRADUATION_KIND = "GRADUATION"

# Block times at or before this are placeholders, not real chain times.
EPOCH_CUTOFF = datetime(1971, 1, 1, tzinfo=UTC)


def _insert(session: AsyncSession, model: type[Base]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _amount(value: int | Decimal | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _int(value: Decimal | int | None) -> int | None:
    return int(value) if value is not None else None


def _enum_value(value: Any) -> str:
    return str(getattr(value, "value", value))


def _dedupe(dtos: list[Any]) -> list[Any]:
    """Last row wins per ledger key; one statement may not touch a row twice."""
    by_key: dict[tuple[int, str, int], Any] = {}
    for dto in dtos:
        by_key[(dto.chain_id, dto.tx_hash.lower(), dto.log_index)] = dto
    return list(by_key.values())


@dataclass
class TokenDTO:
    """Data transfer object for tracked tokens."""

    id: int
    chain_id: int
    contract_address: str
    creator_address: str | None
    created_at: datetime
    deployment_block: int | None = None
    decimals: int = 18
    total_supply: int | None = None
    base_price: Decimal | None = None
    holder_count: int = 0
    is_graduated: bool = False
    current_price: Decimal | None = None
    liquidity_eth: Decimal | None = None
    liquidity_usd: Decimal | None = None
    fdv: Decimal | None = None
    market_cap: Decimal | None = None
    on_dex: bool = False

    @classmethod
    def from_model(cls, model: TokenModel) -> TokenDTO:
        return cls(
            id=model.id,
            chain_id=model.chain_id,
            contract_address=model.contract_address,
            creator_address=model.creator_address,
            created_at=ensure_utc(model.created_at),
            deployment_block=model.deployment_block,
            decimals=model.decimals,
            total_supply=_int(model.total_supply),
            base_price=model.base_price,
            holder_count=model.holder_count,
            is_graduated=model.is_graduated,
            current_price=model.current_price,
            liquidity_eth=model.liquidity_eth,
            liquidity_usd=model.liquidity_usd,
            fdv=model.fdv,
            market_cap=model.market_cap,
            on_dex=model.on_dex,
        )


@dataclass
class TransferDTO:
    """Data transfer object for ledger transfer records."""

    chain_id: int
    tx_hash: str
    log_index: int
    token_id: int
    contract_address: str
    block_number: int
    block_time: datetime
    from_address: str
    to_address: str
    amount: int
    kind: str
    eth_amount: int | None = None
    price: Decimal | None = None
    consolidated: bool = False
    backfill_attempted_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransferModel) -> TransferDTO:
        return cls(
            chain_id=model.chain_id,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            token_id=model.token_id,
            contract_address=model.contract_address,
            block_number=model.block_number,
            block_time=ensure_utc(model.block_time),
            from_address=model.from_address,
            to_address=model.to_address,
            amount=int(model.amount),
            kind=model.kind,
            eth_amount=_int(model.eth_amount),
            price=model.price,
            consolidated=model.consolidated,
            backfill_attempted_at=(
                ensure_utc(model.backfill_attempted_at) if model.backfill_attempted_at else None
            ),
        )

    def values(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "tx_hash": self.tx_hash.lower(),
            "log_index": self.log_index,
            "token_id": self.token_id,
            "contract_address": self.contract_address.lower(),
            "block_number": self.block_number,
            "block_time": self.block_time,
            "from_address": self.from_address.lower(),
            "to_address": self.to_address.lower(),
            "amount": _amount(self.amount),
            "kind": _enum_value(self.kind),
            "eth_amount": _amount(self.eth_amount),
            "price": self.price,
            "consolidated": self.consolidated,
            "backfill_attempted_at": self.backfill_attempted_at,
        }


@dataclass
class TradeDTO:
    """Data transfer object for external-market trades."""

    chain_id: int
    tx_hash: str
    log_index: int
    token_id: int
    block_number: int
    block_time: datetime
    trader: str
    side: str
    token_amount: int
    eth_amount: int
    price: Decimal
    pool_address: str | None = None

    @classmethod
    def from_model(cls, model: TradeModel) -> TradeDTO:
        return cls(
            chain_id=model.chain_id,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            token_id=model.token_id,
            block_number=model.block_number,
            block_time=ensure_utc(model.block_time),
            trader=model.trader,
            side=model.side,
            token_amount=int(model.token_amount),
            eth_amount=int(model.eth_amount),
            price=model.price,
            pool_address=model.pool_address,
        )

    def values(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "tx_hash": self.tx_hash.lower(),
            "log_index": self.log_index,
            "token_id": self.token_id,
            "pool_address": self.pool_address.lower() if self.pool_address else None,
            "block_number": self.block_number,
            "block_time": self.block_time,
            "trader": self.trader.lower(),
            "side": _enum_value(self.side),
            "token_amount": Decimal(self.token_amount),
            "eth_amount": Decimal(self.eth_amount),
            "price": self.price,
        }


@dataclass
class CandleDTO:
    token_id: int
    chain_id: int
    interval: str
    ts: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume_token: int
    volume_eth: int
    trade_count: int

    @classmethod
    def from_model(cls, model: CandleModel) -> CandleDTO:
        return cls(
            token_id=model.token_id,
            chain_id=model.chain_id,
            interval=model.interval,
            ts=ensure_utc(model.ts),
            open=model.open,
            high=model.high,
            low=model.low,
            close=model.close,
            volume_token=int(model.volume_token),
            volume_eth=int(model.volume_eth),
            trade_count=model.trade_count,
        )


@dataclass
class DailyAggDTO:
    token_id: int
    chain_id: int
    day: date
    transfers: int
    trades: int
    unique_senders: int
    unique_receivers: int
    unique_traders: int
    volume_token: int
    volume_eth: int
    holders_count: int

    @classmethod
    def from_model(cls, model: DailyAggModel) -> DailyAggDTO:
        return cls(
            token_id=model.token_id,
            chain_id=model.chain_id,
            day=model.day,
            transfers=model.transfers,
            trades=model.trades,
            unique_senders=model.unique_senders,
            unique_receivers=model.unique_receivers,
            unique_traders=model.unique_traders,
            volume_token=int(model.volume_token),
            volume_eth=int(model.volume_eth),
            holders_count=model.holders_count,
        )


@dataclass
class PoolDTO:
    """A registered token/base-asset pool."""

    chain_id: int
    pool_address: str
    token_id: int
    token0: str
    token1: str
    base_asset_address: str
    base_decimals: int = 18
    token_decimals: int = 18
    scanned_through_block: int | None = None

    @property
    def base_is_token0(self) -> bool:
        return self.token0.lower() == self.base_asset_address.lower()

    @classmethod
    def from_model(cls, model: PoolModel) -> PoolDTO:
        return cls(
            chain_id=model.chain_id,
            pool_address=model.pool_address,
            token_id=model.token_id,
            token0=model.token0,
            token1=model.token1,
            base_asset_address=model.base_asset_address,
            base_decimals=model.base_decimals,
            token_decimals=model.token_decimals,
            scanned_through_block=model.scanned_through_block,
        )


@dataclass
class PoolSnapshotDTO:
    chain_id: int
    pool_address: str
    block_number: int
    log_index: int
    reserve0: int
    reserve1: int
    price: Decimal | None
    block_time: datetime

    @classmethod
    def from_model(cls, model: PoolSnapshotModel) -> PoolSnapshotDTO:
        return cls(
            chain_id=model.chain_id,
            pool_address=model.pool_address,
            block_number=model.block_number,
            log_index=model.log_index,
            reserve0=int(model.reserve0),
            reserve1=int(model.reserve1),
            price=model.price,
            block_time=ensure_utc(model.block_time),
        )


@dataclass(frozen=True)
class DayStats:
    count: int
    unique_a: int
    unique_b: int
    volume_token: int
    volume_eth: int


class TokenRepository:
    """Repository for the tracked-contract registry and summary cache."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: TokenDTO) -> TokenDTO:
        """Register a token (used by the registration flow and tests)."""
        model = TokenModel(
            chain_id=dto.chain_id,
            contract_address=dto.contract_address.lower(),
            creator_address=dto.creator_address.lower() if dto.creator_address else None,
            created_at=dto.created_at,
            deployment_block=dto.deployment_block,
            decimals=dto.decimals,
            total_supply=_amount(dto.total_supply),
            base_price=dto.base_price,
            is_graduated=dto.is_graduated,
            on_dex=dto.on_dex,
        )
        self.session.add(model)
        await self.session.flush()
        return TokenDTO.from_model(model)

    async def get(self, token_id: int) -> TokenDTO | None:
        model = await self.session.get(TokenModel, token_id, populate_existing=True)
        return TokenDTO.from_model(model) if model else None

    async def list_chain_ids(self) -> list[int]:
        result = await self.session.execute(
            select(TokenModel.chain_id).distinct().order_by(TokenModel.chain_id.asc())
        )
        return [int(row[0]) for row in result.all()]

    async def list_for_chain(self, chain_id: int, *, token_id: int | None = None) -> list[TokenDTO]:
        query = select(TokenModel).where(TokenModel.chain_id == chain_id)
        if token_id is not None:
            query = query.where(TokenModel.id == token_id)
        result = await self.session.execute(query.order_by(TokenModel.id.asc()))
        return [TokenDTO.from_model(m) for m in result.scalars().all()]

    async def set_deployment_block(self, token_id: int, block_number: int) -> None:
        """Cache a resolved deployment block; an already resolved value is kept."""
        await self.session.execute(
            update(TokenModel)
            .where((TokenModel.id == token_id) & (TokenModel.deployment_block.is_(None)))
            .values(deployment_block=block_number)
        )

    async def mark_graduated(self, token_ids: set[int]) -> None:
        if not token_ids:
            return
        await self.session.execute(
            update(TokenModel).where(TokenModel.id.in_(sorted(token_ids))).values(is_graduated=True)
        )

    async def set_on_dex(self, token_id: int) -> None:
        await self.session.execute(update(TokenModel).where(TokenModel.id == token_id).values(on_dex=True))

    async def set_holder_count(self, token_id: int, holder_count: int) -> None:
        await self.session.execute(
            update(TokenModel).where(TokenModel.id == token_id).values(holder_count=holder_count)
        )

    async def update_summary(
        self,
        token_id: int,
        *,
        current_price: Decimal | None,
        liquidity_eth: Decimal | None,
        liquidity_usd: Decimal | None,
        fdv: Decimal | None,
        market_cap: Decimal | None,
        has_pool: bool,
    ) -> None:
        """Write summary cache fields. ``on_dex`` only ever moves to true."""
        values: dict[str, Any] = {
            "current_price": current_price,
            "liquidity_eth": liquidity_eth,
            "liquidity_usd": liquidity_usd,
            "fdv": fdv,
            "market_cap": market_cap,
            "summary_updated_at": datetime.now(UTC),
        }
        if has_pool:
            values["on_dex"] = True
        await self.session.execute(update(TokenModel).where(TokenModel.id == token_id).values(**values))


class CursorRepository:
    """Per-chain scan watermark."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, chain_id: int) -> int | None:
        result = await self.session.execute(
            select(ChainCursorModel.last_processed_block).where(ChainCursorModel.chain_id == chain_id)
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def advance(self, chain_id: int, block_number: int) -> None:
        """Move the cursor forward; a lower value than the stored one is ignored."""
        now = datetime.now(UTC)
        table = ChainCursorModel.__table__
        stmt = _insert(self.session, ChainCursorModel).values(
            chain_id=chain_id, last_processed_block=block_number, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["chain_id"],
            set_={
                "last_processed_block": sa.case(
                    (
                        table.c.last_processed_block < stmt.excluded.last_processed_block,
                        stmt.excluded.last_processed_block,
                    ),
                    else_=table.c.last_processed_block,
                ),
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)


class TransferRepository:
    """Repository for the transfer ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert_many(self, dtos: list[TransferDTO]) -> None:
        """Upsert by ``(chain_id, tx_hash, log_index)``.

        Stored GRADUATION rows are left untouched. Price data already captured
        is kept when the incoming row has none.
        """
        if not dtos:
            return
        table = TransferModel.__table__
        now = datetime.now(UTC)
        rows = [{**dto.values(), "created_at": now} for dto in _dedupe(dtos)]
        stmt = _insert(self.session, TransferModel).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["chain_id", "tx_hash", "log_index"],
            set_={
                "token_id": stmt.excluded.token_id,
                "from_address": stmt.excluded.from_address,
                "to_address": stmt.excluded.to_address,
                "amount": stmt.excluded.amount,
                "kind": stmt.excluded.kind,
                "eth_amount": func.coalesce(stmt.excluded.eth_amount, table.c.eth_amount),
                "price": func.coalesce(stmt.excluded.price, table.c.price),
                "backfill_attempted_at": func.coalesce(
                    table.c.backfill_attempted_at, stmt.excluded.backfill_attempted_at
                ),
            },
            where=table.c.kind != GRADUATION_KIND,
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def insert(self, dto: TransferDTO) -> None:
        now = datetime.now(UTC)
        stmt = _insert(self.session, TransferModel).values(**dto.values(), created_at=now)
        stmt = stmt.on_conflict_do_nothing(index_elements=["chain_id", "tx_hash", "log_index"])
        await self.session.execute(stmt)

    async def get(self, chain_id: int, tx_hash: str, log_index: int) -> TransferDTO | None:
        model = await self.session.get(
            TransferModel, (chain_id, tx_hash.lower(), log_index), populate_existing=True
        )
        return TransferDTO.from_model(model) if model else None

    async def list_by_tx(self, chain_id: int, tx_hash: str) -> list[TransferDTO]:
        result = await self.session.execute(
            select(TransferModel)
            .where((TransferModel.chain_id == chain_id) & (TransferModel.tx_hash == tx_hash.lower()))
            .order_by(TransferModel.log_index.asc())
        )
        return [TransferDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_chain(self, chain_id: int) -> list[TransferDTO]:
        result = await self.session.execute(
            select(TransferModel)
            .where(TransferModel.chain_id == chain_id)
            .order_by(TransferModel.block_number.asc(), TransferModel.log_index.asc())
        )
        return [TransferDTO.from_model(m) for m in result.scalars().all()]

    async def delete_keys(self, chain_id: int, keys: list[tuple[str, int]]) -> int:
        deleted = 0
        for tx_hash, log_index in keys:
            result = await self.session.execute(
                delete(TransferModel).where(
                    (TransferModel.chain_id == chain_id)
                    & (TransferModel.tx_hash == tx_hash.lower())
                    & (TransferModel.log_index == log_index)
                )
            )
            deleted += result.rowcount or 0
        return deleted

    async def delete_by_block_tx(self, chain_id: int, block_number: int, tx_hash: str) -> int:
        result = await self.session.execute(
            delete(TransferModel).where(
                (TransferModel.chain_id == chain_id)
                & (TransferModel.block_number == block_number)
                & (TransferModel.tx_hash == tx_hash.lower())
            )
        )
        return result.rowcount or 0

    async def consolidated_txs(self, chain_id: int, tx_hashes: set[str]) -> set[tuple[int, str]]:
        """``(block_number, tx_hash)`` pairs already merged into one graduation row."""
        if not tx_hashes:
            return set()
        result = await self.session.execute(
            select(TransferModel.block_number, TransferModel.tx_hash).where(
                (TransferModel.chain_id == chain_id)
                & TransferModel.consolidated.is_(True)
                & TransferModel.tx_hash.in_(sorted(h.lower() for h in tx_hashes))
            )
        )
        return {(int(row[0]), row[1]) for row in result.all()}

    async def list_graduation_groups(self, chain_id: int) -> list[str]:
        """Tx hashes holding a GRADUATION row plus other ledger rows to merge."""
        multi = (
            select(TransferModel.tx_hash)
            .where(TransferModel.chain_id == chain_id)
            .group_by(TransferModel.tx_hash)
            .having(func.count() > 1)
        )
        traded = select(TradeModel.tx_hash).where(TradeModel.chain_id == chain_id)
        result = await self.session.execute(
            select(TransferModel.tx_hash)
            .where(
                (TransferModel.chain_id == chain_id)
                & (TransferModel.kind == GRADUATION_KIND)
                & (TransferModel.tx_hash.in_(multi) | TransferModel.tx_hash.in_(traded))
            )
            .distinct()
            .order_by(TransferModel.tx_hash.asc())
        )
        return [row[0] for row in result.all()]

    async def list_overlaps(self, chain_id: int) -> list[tuple[int, str]]:
        """``(block_number, tx_hash)`` pairs present in both ledgers."""
        result = await self.session.execute(
            select(TransferModel.block_number, TransferModel.tx_hash)
            .join(
                TradeModel,
                (TradeModel.chain_id == TransferModel.chain_id)
                & (TradeModel.block_number == TransferModel.block_number)
                & (TradeModel.tx_hash == TransferModel.tx_hash),
            )
            .where(TransferModel.chain_id == chain_id)
            .distinct()
            .order_by(TransferModel.block_number.asc(), TransferModel.tx_hash.asc())
        )
        return [(int(row[0]), row[1]) for row in result.all()]

    async def list_migration_candidates(self, chain_id: int) -> list[TransferDTO]:
        """Priced BUY rows of graduated tokens that already have a pool."""
        pooled = select(PoolModel.token_id).where(PoolModel.chain_id == chain_id)
        graduated = select(TokenModel.id).where(
            (TokenModel.chain_id == chain_id) & TokenModel.is_graduated.is_(True)
        )
        result = await self.session.execute(
            select(TransferModel)
            .where(
                (TransferModel.chain_id == chain_id)
                & (TransferModel.kind == "BUY")
                & TransferModel.eth_amount.is_not(None)
                & (TransferModel.eth_amount > 0)
                & TransferModel.price.is_not(None)
                & TransferModel.token_id.in_(pooled)
                & TransferModel.token_id.in_(graduated)
            )
            .order_by(TransferModel.block_number.asc(), TransferModel.log_index.asc())
        )
        return [TransferDTO.from_model(m) for m in result.scalars().all()]

    async def graduation_blocks(self, chain_id: int) -> dict[int, int]:
        """Earliest GRADUATION block per token."""
        result = await self.session.execute(
            select(TransferModel.token_id, func.min(TransferModel.block_number))
            .where((TransferModel.chain_id == chain_id) & (TransferModel.kind == GRADUATION_KIND))
            .group_by(TransferModel.token_id)
        )
        return {int(row[0]): int(row[1]) for row in result.all()}

    async def list_backfill_candidates(self, chain_id: int, *, limit: int) -> list[TransferDTO]:
        if limit <= 0:
            return []
        result = await self.session.execute(
            select(TransferModel)
            .where(
                (TransferModel.chain_id == chain_id)
                & TransferModel.backfill_attempted_at.is_(None)
                & (TransferModel.kind != GRADUATION_KIND)
            )
            .order_by(TransferModel.block_number.asc(), TransferModel.log_index.asc())
            .limit(limit)
        )
        return [TransferDTO.from_model(m) for m in result.scalars().all()]

    async def update_derived(
        self,
        chain_id: int,
        tx_hash: str,
        log_index: int,
        *,
        kind: str,
        eth_amount: int | None,
        price: Decimal | None,
    ) -> None:
        await self.session.execute(
            update(TransferModel)
            .where(
                (TransferModel.chain_id == chain_id)
                & (TransferModel.tx_hash == tx_hash.lower())
                & (TransferModel.log_index == log_index)
                & (TransferModel.kind != GRADUATION_KIND)
            )
            .values(
                kind=_enum_value(kind),
                eth_amount=_amount(eth_amount),
                price=price,
                backfill_attempted_at=datetime.now(UTC),
            )
        )

    async def mark_backfill_attempted(self, chain_id: int, tx_hash: str, log_index: int) -> None:
        await self.session.execute(
            update(TransferModel)
            .where(
                (TransferModel.chain_id == chain_id)
                & (TransferModel.tx_hash == tx_hash.lower())
                & (TransferModel.log_index == log_index)
            )
            .values(backfill_attempted_at=datetime.now(UTC))
        )

    async def repair_block_time(self, chain_id: int, block_number: int, block_time: datetime) -> int:
        result = await self.session.execute(
            update(TransferModel)
            .where(
                (TransferModel.chain_id == chain_id)
                & (TransferModel.block_number == block_number)
                & (TransferModel.block_time < EPOCH_CUTOFF)
            )
            .values(block_time=block_time)
        )
        return result.rowcount or 0

    async def day_stats(self, token_id: int, start: datetime, end: datetime) -> DayStats:
        # Base-unit sums exceed SQLite's 64-bit integers, so totals are kept in Python.
        result = await self.session.execute(
            select(
                TransferModel.from_address,
                TransferModel.to_address,
                TransferModel.amount,
                TransferModel.eth_amount,
            ).where(
                (TransferModel.token_id == token_id)
                & (TransferModel.block_time >= start)
                & (TransferModel.block_time < end)
            )
        )
        rows = result.all()
        return DayStats(
            count=len(rows),
            unique_a=len({row[0] for row in rows}),
            unique_b=len({row[1] for row in rows}),
            volume_token=sum(int(row[2]) for row in rows),
            volume_eth=sum(int(row[3] or 0) for row in rows),
        )

    async def first_time(self, token_id: int) -> datetime | None:
        result = await self.session.execute(
            select(func.min(TransferModel.block_time)).where(
                (TransferModel.token_id == token_id) & (TransferModel.block_time >= EPOCH_CUTOFF)
            )
        )
        value = result.scalar_one_or_none()
        return ensure_utc(value) if value is not None else None


class TradeRepository:
    """Repository for the external-market trade ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert_many(self, dtos: list[TradeDTO]) -> None:
        if not dtos:
            return
        now = datetime.now(UTC)
        rows = [{**dto.values(), "created_at": now} for dto in _dedupe(dtos)]
        stmt = _insert(self.session, TradeModel).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["chain_id", "tx_hash", "log_index"],
            set_={
                "token_id": stmt.excluded.token_id,
                "pool_address": stmt.excluded.pool_address,
                "trader": stmt.excluded.trader,
                "side": stmt.excluded.side,
                "token_amount": stmt.excluded.token_amount,
                "eth_amount": stmt.excluded.eth_amount,
                "price": stmt.excluded.price,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def insert(self, dto: TradeDTO) -> None:
        now = datetime.now(UTC)
        stmt = _insert(self.session, TradeModel).values(**dto.values(), created_at=now)
        stmt = stmt.on_conflict_do_nothing(index_elements=["chain_id", "tx_hash", "log_index"])
        await self.session.execute(stmt)

    async def list_by_tx(self, chain_id: int, tx_hash: str) -> list[TradeDTO]:
        result = await self.session.execute(
            select(TradeModel)
            .where((TradeModel.chain_id == chain_id) & (TradeModel.tx_hash == tx_hash.lower()))
            .order_by(TradeModel.log_index.asc())
        )
        return [TradeDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_chain(self, chain_id: int) -> list[TradeDTO]:
        result = await self.session.execute(
            select(TradeModel)
            .where(TradeModel.chain_id == chain_id)
            .order_by(TradeModel.block_number.asc(), TradeModel.log_index.asc())
        )
        return [TradeDTO.from_model(m) for m in result.scalars().all()]

    async def delete_by_tx(self, chain_id: int, tx_hash: str) -> int:
        result = await self.session.execute(
            delete(TradeModel).where(
                (TradeModel.chain_id == chain_id) & (TradeModel.tx_hash == tx_hash.lower())
            )
        )
        return result.rowcount or 0

    async def traded_txs(self, chain_id: int, tx_hashes: set[str]) -> set[tuple[int, str]]:
        """``(block_number, tx_hash)`` pairs that have trade rows."""
        if not tx_hashes:
            return set()
        result = await self.session.execute(
            select(TradeModel.block_number, TradeModel.tx_hash)
            .where((TradeModel.chain_id == chain_id) & TradeModel.tx_hash.in_(sorted(h.lower() for h in tx_hashes)))
            .distinct()
        )
        return {(int(row[0]), row[1]) for row in result.all()}

    async def list_duplicate_groups(self, chain_id: int) -> list[tuple[str, int, int]]:
        """Exact duplicate trades as ``(tx_hash, keep_log_index, copies)``.

        Two rows are duplicates when tx, token, trader, side and amounts all
        match; the lowest log index is the one to keep.
        """
        result = await self.session.execute(
            select(TradeModel.tx_hash, func.min(TradeModel.log_index), func.count())
            .where(TradeModel.chain_id == chain_id)
            .group_by(
                TradeModel.tx_hash,
                TradeModel.token_id,
                TradeModel.trader,
                TradeModel.side,
                TradeModel.token_amount,
                TradeModel.eth_amount,
            )
            .having(func.count() > 1)
        )
        return [(row[0], int(row[1]), int(row[2])) for row in result.all()]

    async def delete_duplicates_of(self, chain_id: int, tx_hash: str, keep_log_index: int) -> int:
        keeper = await self.session.get(TradeModel, (chain_id, tx_hash.lower(), keep_log_index))
        if keeper is None:
            return 0
        result = await self.session.execute(
            delete(TradeModel).where(
                (TradeModel.chain_id == chain_id)
                & (TradeModel.tx_hash == keeper.tx_hash)
                & (TradeModel.log_index != keep_log_index)
                & (TradeModel.token_id == keeper.token_id)
                & (TradeModel.trader == keeper.trader)
                & (TradeModel.side == keeper.side)
                & (TradeModel.token_amount == keeper.token_amount)
                & (TradeModel.eth_amount == keeper.eth_amount)
            )
        )
        return result.rowcount or 0

    async def list_blocks_missing_time(self, chain_id: int, *, limit: int) -> list[int]:
        result = await self.session.execute(
            select(TradeModel.block_number)
            .where((TradeModel.chain_id == chain_id) & (TradeModel.block_time < EPOCH_CUTOFF))
            .distinct()
            .order_by(TradeModel.block_number.asc())
            .limit(limit)
        )
        return [int(row[0]) for row in result.all()]

    async def repair_block_time(self, chain_id: int, block_number: int, block_time: datetime) -> int:
        result = await self.session.execute(
            update(TradeModel)
            .where(
                (TradeModel.chain_id == chain_id)
                & (TradeModel.block_number == block_number)
                & (TradeModel.block_time < EPOCH_CUTOFF)
            )
            .values(block_time=block_time)
        )
        return result.rowcount or 0

    async def list_in_range(self, token_id: int, start: datetime, end: datetime) -> list[TradeDTO]:
        """Trades in ``[start, end)`` ordered by time, then log order."""
        result = await self.session.execute(
            select(TradeModel)
            .where(
                (TradeModel.token_id == token_id)
                & (TradeModel.block_time >= start)
                & (TradeModel.block_time < end)
            )
            .order_by(
                TradeModel.block_time.asc(),
                TradeModel.block_number.asc(),
                TradeModel.log_index.asc(),
            )
        )
        return [TradeDTO.from_model(m) for m in result.scalars().all()]

    async def first_time(self, token_id: int) -> datetime | None:
        result = await self.session.execute(
            select(func.min(TradeModel.block_time)).where(
                (TradeModel.token_id == token_id) & (TradeModel.block_time >= EPOCH_CUTOFF)
            )
        )
        value = result.scalar_one_or_none()
        return ensure_utc(value) if value is not None else None

    async def latest_price(self, token_id: int) -> Decimal | None:
        result = await self.session.execute(
            select(TradeModel.price)
            .where(TradeModel.token_id == token_id)
            .order_by(
                TradeModel.block_time.desc(),
                TradeModel.block_number.desc(),
                TradeModel.log_index.desc(),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def day_stats(self, token_id: int, start: datetime, end: datetime) -> DayStats:
        result = await self.session.execute(
            select(TradeModel.trader, TradeModel.token_amount, TradeModel.eth_amount).where(
                (TradeModel.token_id == token_id)
                & (TradeModel.block_time >= start)
                & (TradeModel.block_time < end)
            )
        )
        rows = result.all()
        return DayStats(
            count=len(rows),
            unique_a=len({row[0] for row in rows}),
            unique_b=0,
            volume_token=sum(int(row[1]) for row in rows),
            volume_eth=sum(int(row[2]) for row in rows),
        )


class BalanceRepository:
    """Running holder balances."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, token_id: int, holder: str) -> int:
        model = await self.session.get(BalanceModel, (token_id, holder.lower()))
        return int(model.balance) if model else 0

    async def apply_delta(self, token_id: int, holder: str, delta: int) -> int:
        """Add ``delta`` to a balance, clamping at zero.

        Returns the stored balance.
        """
        holder = holder.lower()
        model = await self.session.get(BalanceModel, (token_id, holder))
        current = int(model.balance) if model else 0
        new_balance = current + delta
        if new_balance < 0:
            logger.warning(
                "Balance underflow clamped to zero: token=%d holder=%s balance=%d delta=%d",
                token_id,
                holder,
                current,
                delta,
            )
            new_balance = 0
        if model is None:
            self.session.add(BalanceModel(token_id=token_id, holder=holder, balance=Decimal(new_balance)))
        else:
            model.balance = Decimal(new_balance)
        await self.session.flush()
        return new_balance

    async def delete_holders(self, token_ids: list[int], holders: set[str]) -> int:
        if not token_ids or not holders:
            return 0
        result = await self.session.execute(
            delete(BalanceModel).where(
                BalanceModel.token_id.in_(token_ids)
                & BalanceModel.holder.in_([h.lower() for h in holders])
            )
        )
        return result.rowcount or 0

    async def prune_zero(self, token_ids: set[int]) -> int:
        if not token_ids:
            return 0
        result = await self.session.execute(
            delete(BalanceModel).where(
                BalanceModel.token_id.in_(sorted(token_ids)) & (BalanceModel.balance <= 0)
            )
        )
        return result.rowcount or 0

    async def count_holders(self, token_id: int) -> int:
        result = await self.session.execute(
            select(func.count()).where((BalanceModel.token_id == token_id) & (BalanceModel.balance > 0))
        )
        return int(result.scalar_one())

    async def circulating_supply(self, token_id: int, *, exclude: set[str] | None = None) -> int:
        query = select(BalanceModel.balance).where(
            (BalanceModel.token_id == token_id) & (BalanceModel.balance > 0)
        )
        if exclude:
            query = query.where(BalanceModel.holder.not_in([h.lower() for h in exclude]))
        result = await self.session.execute(query)
        return sum(int(balance) for balance in result.scalars().all())

    async def list_for_token(self, token_id: int) -> dict[str, int]:
        result = await self.session.execute(
            select(BalanceModel.holder, BalanceModel.balance).where(BalanceModel.token_id == token_id)
        )
        return {row[0]: int(row[1]) for row in result.all()}


class BalanceJournalRepository:
    """Marks transfer logs whose balance deltas were applied."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(self, chain_id: int, tx_hash: str, log_index: int, token_id: int) -> bool:
        """Insert a journal entry; returns False when it already existed."""
        stmt = _insert(self.session, BalanceJournalModel).values(
            chain_id=chain_id,
            tx_hash=tx_hash.lower(),
            log_index=log_index,
            token_id=token_id,
            applied_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["chain_id", "tx_hash", "log_index"])
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0


class CandleRepository:
    """Repository for minute and hour candles."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert_many(self, dtos: list[CandleDTO]) -> None:
        if not dtos:
            return
        now = datetime.now(UTC)
        rows = [
            {
                "token_id": dto.token_id,
                "interval": dto.interval,
                "ts": dto.ts,
                "chain_id": dto.chain_id,
                "open": dto.open,
                "high": dto.high,
                "low": dto.low,
                "close": dto.close,
                "volume_token": Decimal(dto.volume_token),
                "volume_eth": Decimal(dto.volume_eth),
                "trade_count": dto.trade_count,
                "updated_at": now,
            }
            for dto in dtos
        ]
        stmt = _insert(self.session, CandleModel).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["token_id", "interval", "ts"],
            set_={
                "open": stmt.excluded.open,
                "high": stmt.excluded.high,
                "low": stmt.excluded.low,
                "close": stmt.excluded.close,
                "volume_token": stmt.excluded.volume_token,
                "volume_eth": stmt.excluded.volume_eth,
                "trade_count": stmt.excluded.trade_count,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def latest_ts(self, token_id: int, interval: str) -> datetime | None:
        result = await self.session.execute(
            select(func.max(CandleModel.ts)).where(
                (CandleModel.token_id == token_id) & (CandleModel.interval == interval)
            )
        )
        value = result.scalar_one_or_none()
        return ensure_utc(value) if value is not None else None

    async def earliest_ts(self, token_id: int, interval: str) -> datetime | None:
        result = await self.session.execute(
            select(func.min(CandleModel.ts)).where(
                (CandleModel.token_id == token_id) & (CandleModel.interval == interval)
            )
        )
        value = result.scalar_one_or_none()
        return ensure_utc(value) if value is not None else None

    async def list_range(
        self, token_id: int, interval: str, start: datetime, end: datetime
    ) -> list[CandleDTO]:
        """Candles with ``start <= ts < end`` in time order."""
        result = await self.session.execute(
            select(CandleModel)
            .where(
                (CandleModel.token_id == token_id)
                & (CandleModel.interval == interval)
                & (CandleModel.ts >= start)
                & (CandleModel.ts < end)
            )
            .order_by(CandleModel.ts.asc())
        )
        return [CandleDTO.from_model(m) for m in result.scalars().all()]


class DailyAggRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: DailyAggDTO) -> None:
        now = datetime.now(UTC)
        values = {
            "token_id": dto.token_id,
            "day": dto.day,
            "chain_id": dto.chain_id,
            "transfers": dto.transfers,
            "trades": dto.trades,
            "unique_senders": dto.unique_senders,
            "unique_receivers": dto.unique_receivers,
            "unique_traders": dto.unique_traders,
            "volume_token": Decimal(dto.volume_token),
            "volume_eth": Decimal(dto.volume_eth),
            "holders_count": dto.holders_count,
            "updated_at": now,
        }
        stmt = _insert(self.session, DailyAggModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["token_id", "day"],
            set_={k: getattr(stmt.excluded, k) for k in values if k not in ("token_id", "day")},
        )
        await self.session.execute(stmt)

    async def latest_day(self, token_id: int) -> date | None:
        result = await self.session.execute(
            select(func.max(DailyAggModel.day)).where(DailyAggModel.token_id == token_id)
        )
        return result.scalar_one_or_none()

    async def get(self, token_id: int, day: date) -> DailyAggDTO | None:
        model = await self.session.get(DailyAggModel, (token_id, day), populate_existing=True)
        return DailyAggDTO.from_model(model) if model else None


class PoolRepository:
    """Pool registry (written by pool discovery)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def register(self, dto: PoolDTO) -> bool:
        """Insert a pool; returns False if it was already registered."""
        stmt = _insert(self.session, PoolModel).values(
            chain_id=dto.chain_id,
            pool_address=dto.pool_address.lower(),
            token_id=dto.token_id,
            token0=dto.token0.lower(),
            token1=dto.token1.lower(),
            base_asset_address=dto.base_asset_address.lower(),
            base_decimals=dto.base_decimals,
            token_decimals=dto.token_decimals,
            discovered_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["chain_id", "pool_address"])
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def list_for_chain(self, chain_id: int) -> list[PoolDTO]:
        result = await self.session.execute(
            select(PoolModel).where(PoolModel.chain_id == chain_id).order_by(PoolModel.pool_address.asc())
        )
        return [PoolDTO.from_model(m) for m in result.scalars().all()]

    async def mark_scanned_through(self, chain_id: int, pool_addresses: list[str], block_number: int) -> None:
        if not pool_addresses:
            return
        await self.session.execute(
            update(PoolModel)
            .where(
                (PoolModel.chain_id == chain_id)
                & PoolModel.pool_address.in_([a.lower() for a in pool_addresses])
            )
            .values(scanned_through_block=block_number)
        )

    async def list_for_token(self, token_id: int) -> list[PoolDTO]:
        result = await self.session.execute(
            select(PoolModel).where(PoolModel.token_id == token_id).order_by(PoolModel.discovered_at.asc())
        )
        return [PoolDTO.from_model(m) for m in result.scalars().all()]


class PoolSnapshotRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert_many(self, dtos: list[PoolSnapshotDTO]) -> None:
        """Keep the last Sync per pool and block."""
        if not dtos:
            return
        latest: dict[tuple[int, str, int], PoolSnapshotDTO] = {}
        for dto in dtos:
            key = (dto.chain_id, dto.pool_address.lower(), dto.block_number)
            if key not in latest or latest[key].log_index < dto.log_index:
                latest[key] = dto
        now = datetime.now(UTC)
        rows = [
            {
                "chain_id": dto.chain_id,
                "pool_address": dto.pool_address.lower(),
                "block_number": dto.block_number,
                "log_index": dto.log_index,
                "reserve0": Decimal(dto.reserve0),
                "reserve1": Decimal(dto.reserve1),
                "price": dto.price,
                "block_time": dto.block_time,
                "created_at": now,
            }
            for dto in latest.values()
        ]
        stmt = _insert(self.session, PoolSnapshotModel).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["chain_id", "pool_address", "block_number"],
            set_={
                "log_index": stmt.excluded.log_index,
                "reserve0": stmt.excluded.reserve0,
                "reserve1": stmt.excluded.reserve1,
                "price": stmt.excluded.price,
                "block_time": stmt.excluded.block_time,
            },
        )
        await self.session.execute(stmt)

    async def latest_for_pool(self, chain_id: int, pool_address: str) -> PoolSnapshotDTO | None:
        result = await self.session.execute(
            select(PoolSnapshotModel)
            .where(
                (PoolSnapshotModel.chain_id == chain_id)
                & (PoolSnapshotModel.pool_address == pool_address.lower())
            )
            .order_by(PoolSnapshotModel.block_number.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return PoolSnapshotDTO.from_model(model) if model else None


class ExchangeRateRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, symbol: str) -> Decimal | None:
        model = await self.session.get(ExchangeRateModel, symbol.upper())
        return model.price_usd if model else None

    async def set(self, symbol: str, price_usd: Decimal) -> None:
        now = datetime.now(UTC)
        stmt = _insert(self.session, ExchangeRateModel).values(
            symbol=symbol.upper(), price_usd=price_usd, fetched_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["symbol"],
            set_={"price_usd": stmt.excluded.price_usd, "fetched_at": now},
        )
        await self.session.execute(stmt)


class RunLeaseRepository:
    """Named run leases with expiry."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def try_acquire(self, name: str, owner: str, now: datetime, expires_at: datetime) -> bool:
        """Take the lease if it is free, expired or already ours."""
        table = RunLeaseModel.__table__
        stmt = _insert(self.session, RunLeaseModel).values(
            name=name, owner=owner, acquired_at=now, expires_at=expires_at
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["name"],
            set_={"owner": owner, "acquired_at": now, "expires_at": expires_at},
            where=(table.c.expires_at <= now) | (table.c.owner == owner),
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def renew(self, name: str, owner: str, expires_at: datetime) -> bool:
        result = await self.session.execute(
            update(RunLeaseModel)
            .where((RunLeaseModel.name == name) & (RunLeaseModel.owner == owner))
            .values(expires_at=expires_at)
        )
        return (result.rowcount or 0) > 0

    async def release(self, name: str, owner: str) -> bool:
        result = await self.session.execute(
            delete(RunLeaseModel).where((RunLeaseModel.name == name) & (RunLeaseModel.owner == owner))
        )
        return (result.rowcount or 0) > 0

    async def get_owner(self, name: str) -> str | None:
        model = await self.session.get(RunLeaseModel, name, populate_existing=True)
        return model.owner if model else None
