"""Initial indexer schema: tokens, ledgers, balances, aggregates and pools.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AMOUNT = sa.Numeric(40, 0)
PRICE = sa.Numeric(38, 18)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # Tracked contracts plus the summary cache
    op.create_table(
        "tokens",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("creator_address", sa.String(42), nullable=True),
        _ts("created_at"),
        sa.Column("deployment_block", sa.BigInteger(), nullable=True),
        sa.Column("decimals", sa.Integer(), nullable=False, server_default="18"),
        sa.Column("total_supply", AMOUNT, nullable=True),
        sa.Column("base_price", PRICE, nullable=True),
        sa.Column("holder_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_graduated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("current_price", PRICE, nullable=True),
        sa.Column("liquidity_eth", PRICE, nullable=True),
        sa.Column("liquidity_usd", PRICE, nullable=True),
        sa.Column("fdv", PRICE, nullable=True),
        sa.Column("market_cap", PRICE, nullable=True),
        sa.Column("on_dex", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("summary_updated_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chain_id", "contract_address", name="uq_tokens_chain_contract"),
    )
    op.create_index("idx_tokens_chain", "tokens", ["chain_id"])

    op.create_table(
        "chain_cursors",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("last_processed_block", sa.BigInteger(), nullable=False),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("chain_id"),
    )

    # Transfer ledger
    op.create_table(
        "token_transfers",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("token_id", sa.Integer(), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        _ts("block_time"),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("amount", AMOUNT, nullable=False),
        sa.Column("eth_amount", AMOUNT, nullable=True),
        sa.Column("price", PRICE, nullable=True),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("consolidated", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("backfill_attempted_at", nullable=True),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("chain_id", "tx_hash", "log_index"),
    )
    op.create_index("idx_token_transfers_token_time", "token_transfers", ["token_id", "block_time"])
    op.create_index(
        "idx_token_transfers_chain_block_tx", "token_transfers", ["chain_id", "block_number", "tx_hash"]
    )

    # Trade ledger
    op.create_table(
        "token_trades",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("token_id", sa.Integer(), nullable=False),
        sa.Column("pool_address", sa.String(42), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        _ts("block_time"),
        sa.Column("trader", sa.String(42), nullable=False),
        sa.Column("side", sa.String(4), nullable=False),
        sa.Column("token_amount", AMOUNT, nullable=False),
        sa.Column("eth_amount", AMOUNT, nullable=False),
        sa.Column("price", PRICE, nullable=False),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("chain_id", "tx_hash", "log_index"),
    )
    op.create_index("idx_token_trades_token_time", "token_trades", ["token_id", "block_time"])
    op.create_index("idx_token_trades_chain_block_tx", "token_trades", ["chain_id", "block_number", "tx_hash"])

    # Balances
    op.create_table(
        "token_balances",
        sa.Column("token_id", sa.Integer(), nullable=False),
        sa.Column("holder", sa.String(42), nullable=False),
        sa.Column("balance", AMOUNT, nullable=False),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("token_id", "holder"),
    )
    op.create_table(
        "balance_journal",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("token_id", sa.Integer(), nullable=False),
        _ts("applied_at"),
        sa.PrimaryKeyConstraint("chain_id", "tx_hash", "log_index"),
    )

    # Aggregates
    op.create_table(
        "token_candles",
        sa.Column("token_id", sa.Integer(), nullable=False),
        sa.Column("interval", sa.String(4), nullable=False),
        _ts("ts"),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("open", PRICE, nullable=False),
        sa.Column("high", PRICE, nullable=False),
        sa.Column("low", PRICE, nullable=False),
        sa.Column("close", PRICE, nullable=False),
        sa.Column("volume_token", AMOUNT, nullable=False),
        sa.Column("volume_eth", AMOUNT, nullable=False),
        sa.Column("trade_count", sa.Integer(), nullable=False),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("token_id", "interval", "ts"),
    )
    op.create_table(
        "token_daily_agg",
        sa.Column("token_id", sa.Integer(), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("transfers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("trades", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_senders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_receivers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_traders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("volume_token", AMOUNT, nullable=False),
        sa.Column("volume_eth", AMOUNT, nullable=False),
        sa.Column("holders_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("token_id", "day"),
    )

    # Pools
    op.create_table(
        "dex_pools",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("pool_address", sa.String(42), nullable=False),
        sa.Column("token_id", sa.Integer(), nullable=False),
        sa.Column("token0", sa.String(42), nullable=False),
        sa.Column("token1", sa.String(42), nullable=False),
        sa.Column("base_asset_address", sa.String(42), nullable=False),
        sa.Column("base_decimals", sa.Integer(), nullable=False, server_default="18"),
        sa.Column("token_decimals", sa.Integer(), nullable=False, server_default="18"),
        sa.Column("scanned_through_block", sa.BigInteger(), nullable=True),
        _ts("discovered_at"),
        sa.PrimaryKeyConstraint("chain_id", "pool_address"),
    )
    op.create_index("idx_dex_pools_token", "dex_pools", ["token_id"])
    op.create_table(
        "pool_snapshots",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("pool_address", sa.String(42), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("reserve0", AMOUNT, nullable=False),
        sa.Column("reserve1", AMOUNT, nullable=False),
        sa.Column("price", PRICE, nullable=True),
        _ts("block_time"),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("chain_id", "pool_address", "block_number"),
    )

    op.create_table(
        "exchange_rates",
        sa.Column("symbol", sa.String(16), nullable=False),
        sa.Column("price_usd", PRICE, nullable=False),
        _ts("fetched_at"),
        sa.PrimaryKeyConstraint("symbol"),
    )
    op.create_table(
        "run_leases",
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("owner", sa.String(128), nullable=False),
        _ts("acquired_at"),
        _ts("expires_at"),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("run_leases")
    op.drop_table("exchange_rates")
    op.drop_table("pool_snapshots")
    op.drop_index("idx_dex_pools_token", table_name="dex_pools")
    op.drop_table("dex_pools")
    op.drop_table("token_daily_agg")
    op.drop_table("token_candles")
    op.drop_table("balance_journal")
    op.drop_table("token_balances")
    op.drop_index("idx_token_trades_chain_block_tx", table_name="token_trades")
    op.drop_index("idx_token_trades_token_time", table_name="token_trades")
    op.drop_table("token_trades")
    op.drop_index("idx_token_transfers_chain_block_tx", table_name="token_transfers")
    op.drop_index("idx_token_transfers_token_time", table_name="token_transfers")
    op.drop_table("token_transfers")
    op.drop_table("chain_cursors")
    op.drop_index("idx_tokens_chain", table_name="tokens")
    op.drop_table("tokens")
