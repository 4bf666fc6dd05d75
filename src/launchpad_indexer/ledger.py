"""Ledger writer.

Persists transfer and trade records idempotently and keeps the running
balance table and per-token holder counts in step with the transfer ledger.
Balance deltas are applied once per Transfer log, tracked through the
balance journal, so replaying a block range never moves a balance twice.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from launchpad_indexer.chain.events import ZERO_ADDRESS
from launchpad_indexer.classifier import TransferKind
from launchpad_indexer.storage.repos import (
    BalanceJournalRepository,
    BalanceRepository,
    TokenRepository,
    TradeDTO,
    TradeRepository,
    TransferDTO,
    TransferRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class LedgerWriter:
    """Writes one unit of ledger work inside the caller's transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._transfers = TransferRepository(session)
        self._trades = TradeRepository(session)
        self._balances = BalanceRepository(session)
        self._journal = BalanceJournalRepository(session)
        self._tokens = TokenRepository(session)

    async def write_transfers(
        self,
        records: list[TransferDTO],
        *,
        pool_addresses: Iterable[str] = (),
    ) -> set[int]:
        """Upsert transfer records and apply their balance deltas.

        Rows of transactions the reconciler already settled, a consolidated
        graduation or a swap recorded in the trade ledger, are not inserted
        again. Their balance deltas still go through the journal.

        Returns:
            Ids of tokens whose balances moved.
        """
        if not records:
            return set()

        pools = {address.lower() for address in pool_addresses}
        settled = await self._settled_transfer_txs(records)
        await self._transfers.upsert_many(
            [r for r in records if (r.block_number, r.tx_hash.lower()) not in settled]
        )

        graduated: set[int] = set()
        touched: set[int] = set()
        for record in sorted(records, key=lambda r: (r.block_number, r.log_index)):
            if record.kind == TransferKind.GRADUATION:
                graduated.add(record.token_id)
            is_new = await self._journal.record(
                record.chain_id, record.tx_hash, record.log_index, record.token_id
            )
            if not is_new:
                continue
            for holder, delta in (
                (record.from_address, -record.amount),
                (record.to_address, record.amount),
            ):
                holder = holder.lower()
                if holder == ZERO_ADDRESS or holder in pools:
                    continue
                await self._balances.apply_delta(record.token_id, holder, delta)
                touched.add(record.token_id)

        await self._tokens.mark_graduated(graduated)
        await self.refresh_holders(touched)
        return touched

    async def write_trades(self, records: list[TradeDTO]) -> set[int]:
        if not records:
            return set()
        merged = await self._transfers.consolidated_txs(
            records[0].chain_id, {r.tx_hash for r in records}
        )
        await self._trades.upsert_many(
            [r for r in records if (r.block_number, r.tx_hash.lower()) not in merged]
        )
        return {record.token_id for record in records}

    async def _settled_transfer_txs(self, records: list[TransferDTO]) -> set[tuple[int, str]]:
        chain_id = records[0].chain_id
        tx_hashes = {r.tx_hash for r in records}
        settled = await self._transfers.consolidated_txs(chain_id, tx_hashes)
        # A graduation alongside a swap is merged by the reconciler, not dropped.
        graduating = {
            (r.block_number, r.tx_hash.lower()) for r in records if r.kind == TransferKind.GRADUATION
        }
        traded = await self._trades.traded_txs(chain_id, tx_hashes)
        return settled | (traded - graduating)

    async def refresh_holders(self, token_ids: set[int]) -> None:
        """Prune zero balances and recompute ``holder_count`` for these tokens."""
        if not token_ids:
            return
        await self._balances.prune_zero(token_ids)
        for token_id in sorted(token_ids):
            count = await self._balances.count_holders(token_id)
            await self._tokens.set_holder_count(token_id, count)

    async def purge_pool_balances(self, token_ids: list[int], pool_addresses: Iterable[str]) -> int:
        """Drop balance rows held by pool addresses."""
        pools = {address.lower() for address in pool_addresses}
        removed = await self._balances.delete_holders(token_ids, pools)
        if removed:
            logger.info("Purged %d pool balance rows", removed)
            await self.refresh_holders(set(token_ids))
        return removed
