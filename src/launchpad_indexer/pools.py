"""Pool ingestion and discovery.

Swap and Sync logs emitted by a registered token/base-asset pair become
trade-ledger rows and reserve snapshots. Discovery looks up the pair of each
graduated token on a UniswapV2-style router's factory and registers it.
"""

from __future__ import annotations

import logging
from datetime import datetime

from eth_abi.exceptions import DecodingError

from launchpad_indexer.chain.client import ChainClient
from launchpad_indexer.chain.events import (
    FACTORY,
    GET_PAIR,
    TOKEN0,
    TOKEN1,
    WETH,
    ZERO_ADDRESS,
    SwapEvent,
    SyncEvent,
    decode_address,
    encode_call,
)
from launchpad_indexer.chain.retry import ChainClientError
from launchpad_indexer.pricing import native_per_token
from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.repos import (
    PoolDTO,
    PoolRepository,
    PoolSnapshotDTO,
    TokenDTO,
    TokenRepository,
    TradeDTO,
)

logger = logging.getLogger(__name__)

BASE_ASSET_DECIMALS = 18


def trade_from_swap(
    swap: SwapEvent,
    pool: PoolDTO,
    *,
    block_time: datetime,
    trader: str,
) -> TradeDTO | None:
    """Turn a Swap on a registered pool into a trade row.

    Tokens leaving the pool is a BUY paid in the base asset; tokens entering
    it is a SELL. Swaps that move only one side are ignored.
    """
    if pool.base_is_token0:
        base_in, base_out = swap.amount0_in, swap.amount0_out
        token_in, token_out = swap.amount1_in, swap.amount1_out
    else:
        base_in, base_out = swap.amount1_in, swap.amount1_out
        token_in, token_out = swap.amount0_in, swap.amount0_out

    if token_out > 0 and base_in > 0:
        side, token_amount, eth_amount = "BUY", token_out, base_in
    elif token_in > 0 and base_out > 0:
        side, token_amount, eth_amount = "SELL", token_in, base_out
    else:
        return None

    price = native_per_token(
        eth_amount,
        token_amount,
        token_decimals=pool.token_decimals,
        native_decimals=pool.base_decimals,
    )
    if price is None:
        return None
    return TradeDTO(
        chain_id=pool.chain_id,
        tx_hash=swap.tx_hash,
        log_index=swap.log_index,
        token_id=pool.token_id,
        block_number=swap.block_number,
        block_time=block_time,
        trader=trader,
        side=side,
        token_amount=token_amount,
        eth_amount=eth_amount,
        price=price,
        pool_address=pool.pool_address,
    )


def snapshot_from_sync(sync: SyncEvent, pool: PoolDTO, *, block_time: datetime) -> PoolSnapshotDTO:
    if pool.base_is_token0:
        base_reserve, token_reserve = sync.reserve0, sync.reserve1
    else:
        base_reserve, token_reserve = sync.reserve1, sync.reserve0
    return PoolSnapshotDTO(
        chain_id=pool.chain_id,
        pool_address=pool.pool_address,
        block_number=sync.block_number,
        log_index=sync.log_index,
        reserve0=sync.reserve0,
        reserve1=sync.reserve1,
        price=native_per_token(
            base_reserve,
            token_reserve,
            token_decimals=pool.token_decimals,
            native_decimals=pool.base_decimals,
        ),
        block_time=block_time,
    )


class PoolDiscovery:
    """Finds the DEX pair of graduated tokens through a router's factory."""

    def __init__(self, client: ChainClient, db: DatabaseManager, router_address: str) -> None:
        self._client = client
        self._db = db
        self._router = router_address.lower()
        self._factory: str | None = None
        self._weth: str | None = None

    async def _read_address(self, target: str, signature: str, arg_types: list[str], args: list[object]) -> str:
        return decode_address(await self._client.call(target, encode_call(signature, arg_types, args)))

    async def _resolve_router(self) -> tuple[str, str]:
        if self._factory is None or self._weth is None:
            self._factory = await self._read_address(self._router, FACTORY, [], [])
            self._weth = await self._read_address(self._router, WETH, [], [])
            logger.info(
                "Chain %d router %s: factory=%s base=%s",
                self._client.chain_id,
                self._router,
                self._factory,
                self._weth,
            )
        return self._factory, self._weth

    async def _find_pool(self, token: TokenDTO, factory: str, weth: str) -> PoolDTO | None:
        pair = await self._read_address(
            factory, GET_PAIR, ["address", "address"], [token.contract_address, weth]
        )
        if pair == ZERO_ADDRESS:
            return None
        token0 = await self._read_address(pair, TOKEN0, [], [])
        token1 = await self._read_address(pair, TOKEN1, [], [])
        return PoolDTO(
            chain_id=token.chain_id,
            pool_address=pair,
            token_id=token.id,
            token0=token0,
            token1=token1,
            base_asset_address=weth,
            base_decimals=BASE_ASSET_DECIMALS,
            token_decimals=token.decimals,
        )

    async def discover(self, *, token_id: int | None = None) -> list[PoolDTO]:
        """Register pools for graduated tokens that have none yet.

        Returns:
            Newly registered pools.
        """
        chain_id = self._client.chain_id
        async with self._db.get_async_session() as session:
            tokens = await TokenRepository(session).list_for_chain(chain_id, token_id=token_id)
            pooled = {p.token_id for p in await PoolRepository(session).list_for_chain(chain_id)}
        candidates = [t for t in tokens if t.is_graduated and t.id not in pooled]
        if not candidates:
            return []

        try:
            factory, weth = await self._resolve_router()
        except (ChainClientError, DecodingError) as e:
            logger.warning("Chain %d router lookup failed, skipping pool discovery: %s", chain_id, e)
            return []

        found: list[PoolDTO] = []
        for token in candidates:
            try:
                pool = await self._find_pool(token, factory, weth)
            except (ChainClientError, DecodingError) as e:
                logger.warning("Pool lookup failed for token %d (%s): %s", token.id, token.contract_address, e)
                continue
            if pool is not None:
                found.append(pool)

        registered: list[PoolDTO] = []
        async with self._db.get_async_session() as session:
            pools = PoolRepository(session)
            tokens_repo = TokenRepository(session)
            for pool in found:
                if await pools.register(pool):
                    await tokens_repo.set_on_dex(pool.token_id)
                    registered.append(pool)
                    logger.info("Registered pool %s for token %d", pool.pool_address, pool.token_id)
        return registered
