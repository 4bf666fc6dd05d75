"""Price helpers shared by the scanner, reconciler and aggregator."""

from __future__ import annotations

import logging
from decimal import Decimal, localcontext

from eth_abi.exceptions import DecodingError

from launchpad_indexer.chain.client import ChainClient
from launchpad_indexer.chain.events import GET_SELL_PRICE, decode_uint, encode_call
from launchpad_indexer.chain.retry import ChainClientError

logger = logging.getLogger(__name__)

PRICE_QUANTUM = Decimal(1).scaleb(-18)


def to_units(amount: int, decimals: int) -> Decimal:
    """Base units to whole units."""
    with localcontext() as ctx:
        ctx.prec = 60
        return Decimal(amount).scaleb(-decimals)


def native_per_token(
    native_amount: int | None,
    token_amount: int | None,
    *,
    token_decimals: int = 18,
    native_decimals: int = 18,
) -> Decimal | None:
    """Implied price in whole native units per whole token, or None."""
    if not native_amount or not token_amount or native_amount <= 0 or token_amount <= 0:
        return None
    with localcontext() as ctx:
        ctx.prec = 60
        price = to_units(native_amount, native_decimals) / to_units(token_amount, token_decimals)
        return price.quantize(PRICE_QUANTUM)


async def quote_sell(client: ChainClient, contract_address: str, amount: int, block_number: int) -> int | None:
    """Historical ``getSellPrice(amount)`` at the block before a sale.

    Best effort: an upgraded, paused or non-archive endpoint makes the call
    fail, in which case the failure is logged and None returned.
    """
    at_block = max(block_number - 1, 0)
    try:
        result = await client.call(
            contract_address,
            encode_call(GET_SELL_PRICE, ["uint256"], [amount]),
            at_block,
        )
        if not result:
            return None
        quoted = decode_uint(result)
    except (ChainClientError, DecodingError) as e:
        logger.warning(
            "Sell quote failed for %s amount=%d at block %d: %s",
            contract_address,
            amount,
            at_block,
            e,
        )
        return None
    return quoted if quoted > 0 else None
