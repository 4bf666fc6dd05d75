"""Storage layer - Database schemas and repositories."""

from launchpad_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from launchpad_indexer.storage.models import Base
from launchpad_indexer.storage.repos import (
    BalanceRepository,
    CandleRepository,
    CursorRepository,
    DailyAggRepository,
    PoolDTO,
    PoolRepository,
    TokenDTO,
    TokenRepository,
    TradeDTO,
    TradeRepository,
    TransferDTO,
    TransferRepository,
)

__all__ = [
    "BalanceRepository",
    "Base",
    "CandleRepository",
    "CursorRepository",
    "DailyAggRepository",
    "DatabaseManager",
    "PoolDTO",
    "PoolRepository",
    "TokenDTO",
    "TokenRepository",
    "TradeDTO",
    "TradeRepository",
    "TransferDTO",
    "TransferRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
