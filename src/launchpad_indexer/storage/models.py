"""SQLAlchemy models for persistent storage.

This module defines the database schema for tracked tokens, chain cursors,
the transfer and trade ledgers, holder balances, candles, daily aggregates,
pool state and the run lease.

Token and native-currency amounts are stored in base units (``Numeric(40, 0)``);
prices are native currency per whole token.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

AMOUNT = Numeric(40, 0)
PRICE = Numeric(38, 18)


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TokenModel(Base):
    """A tracked token contract plus its cached market summary."""

    __tablename__ = "tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    creator_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    deployment_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    total_supply: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    base_price: Mapped[Decimal | None] = mapped_column(PRICE, nullable=True)

    holder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_graduated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Summary cache, derived by the aggregator.
    current_price: Mapped[Decimal | None] = mapped_column(PRICE, nullable=True)
    liquidity_eth: Mapped[Decimal | None] = mapped_column(PRICE, nullable=True)
    liquidity_usd: Mapped[Decimal | None] = mapped_column(PRICE, nullable=True)
    fdv: Mapped[Decimal | None] = mapped_column(PRICE, nullable=True)
    market_cap: Mapped[Decimal | None] = mapped_column(PRICE, nullable=True)
    on_dex: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    summary_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("chain_id", "contract_address", name="uq_tokens_chain_contract"),
        Index("idx_tokens_chain", "chain_id"),
    )


class ChainCursorModel(Base):
    """Per-chain last processed block watermark."""

    __tablename__ = "chain_cursors"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class TransferModel(Base):
    """Bonding-curve and plain token transfers, one row per Transfer log."""

    __tablename__ = "token_transfers"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True)

    token_id: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    eth_amount: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    price: Mapped[Decimal | None] = mapped_column(PRICE, nullable=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)

    # Set on rows merged from a multi-log graduation transaction.
    consolidated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    backfill_attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_token_transfers_token_time", "token_id", "block_time"),
        Index("idx_token_transfers_chain_block_tx", "chain_id", "block_number", "tx_hash"),
    )


class TradeModel(Base):
    """External-market (pool) swaps, one row per Swap log."""

    __tablename__ = "token_trades"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True)

    token_id: Mapped[int] = mapped_column(Integer, nullable=False)
    pool_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    trader: Mapped[str] = mapped_column(String(42), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)
    token_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    eth_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    price: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_token_trades_token_time", "token_id", "block_time"),
        Index("idx_token_trades_chain_block_tx", "chain_id", "block_number", "tx_hash"),
    )


class BalanceModel(Base):
    """Running per-holder token balance (pool addresses excluded)."""

    __tablename__ = "token_balances"

    token_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    holder: Mapped[str] = mapped_column(String(42), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class BalanceJournalModel(Base):
    """Transfer logs whose balance deltas were already applied."""

    __tablename__ = "balance_journal"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    token_id: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CandleModel(Base):
    """OHLCV bucket for one token at 1m or 1h granularity."""

    __tablename__ = "token_candles"

    token_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    interval: Mapped[str] = mapped_column(String(4), primary_key=True)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)

    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    open: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    high: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    low: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    close: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    volume_token: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    volume_eth: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    trade_count: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class DailyAggModel(Base):
    """Per-token UTC day activity statistics."""

    __tablename__ = "token_daily_agg"

    token_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)

    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    transfers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trades: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_senders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_receivers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_traders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    volume_token: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    volume_eth: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    holders_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class PoolModel(Base):
    """A constant-product pool pairing a tracked token with the base asset.

    The base asset is the native-currency side of the pair (the wrapped native
    token), so prices read as native per token. ``base_decimals`` belong to
    that side and ``token_decimals`` to the tracked token.
    """

    __tablename__ = "dex_pools"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pool_address: Mapped[str] = mapped_column(String(42), primary_key=True)

    token_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token0: Mapped[str] = mapped_column(String(42), nullable=False)
    token1: Mapped[str] = mapped_column(String(42), nullable=False)
    base_asset_address: Mapped[str] = mapped_column(String(42), nullable=False)
    base_decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    token_decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    # Set once the pool's history before the chain cursor has been ingested.
    scanned_through_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    discovered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("idx_dex_pools_token", "token_id"),)


class PoolSnapshotModel(Base):
    """Pool reserves as of a block (from Sync logs)."""

    __tablename__ = "pool_snapshots"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pool_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, primary_key=True)

    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    reserve0: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    reserve1: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    price: Mapped[Decimal | None] = mapped_column(PRICE, nullable=True)
    block_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ExchangeRateModel(Base):
    """Cached native-currency to USD rate, written by an external price job."""

    __tablename__ = "exchange_rates"

    symbol: Mapped[str] = mapped_column(String(16), primary_key=True)
    price_usd: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class RunLeaseModel(Base):
    """Singleton run ownership with expiry."""

    __tablename__ = "run_leases"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner: Mapped[str] = mapped_column(String(128), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
