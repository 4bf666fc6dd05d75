"""Ledger reconciliation.

Runs once per chain after scanning and before aggregation. Each sub-pass
walks its work transaction by transaction inside a savepoint; a failing
transaction is logged and skipped without aborting the pass.

Sub-passes, in order:
1. Graduation consolidation: a graduation transaction's per-log rows collapse
   into one GRADUATION transfer carrying the summed amounts.
2. Duplicate trade collapse: identical trade rows keep the lowest log index.
3. Overlap removal: transfers of a transaction already in the trade ledger
   are deleted.
4. Migration: priced BUY transfers of pooled, graduated tokens that happened
   after graduation move to the trade ledger.
5. Backfill: rows scanned without transaction data are re-classified and
   priced.
6. Block time repair: rows stamped with a placeholder time get the real one.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from launchpad_indexer.chain.client import ChainClient, TransactionInfo
from launchpad_indexer.chain.events import ZERO_ADDRESS
from launchpad_indexer.chain.retry import ChainClientError
from launchpad_indexer.classifier import DEFAULT_SELECTORS, SelectorTable, TransferKind, classify_transfer
from launchpad_indexer.config import ReconcilerSettings
from launchpad_indexer.pricing import native_per_token, quote_sell
from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.repos import (
    PoolRepository,
    TokenDTO,
    TokenRepository,
    TradeDTO,
    TradeRepository,
    TransferDTO,
    TransferRepository,
)

logger = logging.getLogger(__name__)

TIME_REPAIR_BATCH = 500


@dataclass
class ReconcileResult:
    chain_id: int
    consolidated: int = 0
    duplicates_removed: int = 0
    overlaps_removed: int = 0
    migrated: int = 0
    backfilled: int = 0
    times_repaired: int = 0
    failures: int = 0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Reconciler:
    """Cleans one chain's ledgers so the aggregator reads settled data."""

    def __init__(
        self,
        client: ChainClient,
        db: DatabaseManager,
        settings: ReconcilerSettings,
        *,
        selectors: SelectorTable = DEFAULT_SELECTORS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._db = db
        self._settings = settings
        self._selectors = selectors
        self._clock = clock

    @property
    def chain_id(self) -> int:
        return self._client.chain_id

    async def reconcile_chain(self) -> ReconcileResult:
        result = ReconcileResult(chain_id=self.chain_id)
        await self._consolidate_graduations(result)
        await self._collapse_duplicate_trades(result)
        await self._remove_overlaps(result)
        await self._migrate_misclassified(result)
        await self._backfill(result)
        await self._repair_block_times(result)
        logger.info(
            "Chain %d reconciled: consolidated=%d duplicates=%d overlaps=%d migrated=%d "
            "backfilled=%d times=%d failures=%d",
            result.chain_id,
            result.consolidated,
            result.duplicates_removed,
            result.overlaps_removed,
            result.migrated,
            result.backfilled,
            result.times_repaired,
            result.failures,
        )
        return result

    async def _unit(
        self,
        session: AsyncSession,
        result: ReconcileResult,
        what: str,
        work: Callable[[], Awaitable[object]],
    ) -> bool:
        """Run ``work`` in a savepoint; a failure rolls back only that unit."""
        try:
            async with session.begin_nested():
                await work()
        except Exception:
            result.failures += 1
            logger.warning("Chain %d: %s failed, skipped", self.chain_id, what, exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Graduation consolidation
    # ------------------------------------------------------------------

    async def _consolidate_graduations(self, result: ReconcileResult) -> None:
        async with self._db.get_async_session() as session:
            tx_hashes = await TransferRepository(session).list_graduation_groups(self.chain_id)
            for tx_hash in tx_hashes:

                async def work(tx_hash: str = tx_hash) -> None:
                    await self._consolidate_tx(session, tx_hash)

                if await self._unit(session, result, f"graduation consolidation of {tx_hash}", work):
                    result.consolidated += 1

    async def _consolidate_tx(self, session: AsyncSession, tx_hash: str) -> None:
        transfers_repo = TransferRepository(session)
        trades_repo = TradeRepository(session)
        transfers = await transfers_repo.list_by_tx(self.chain_id, tx_hash)
        trades = await trades_repo.list_by_tx(self.chain_id, tx_hash)

        existing = next((t for t in transfers if t.consolidated), None)
        if existing is not None:
            # A rescan re-inserted per-log rows next to the merged one.
            leftovers = [(t.tx_hash, t.log_index) for t in transfers if t.log_index != existing.log_index]
            await transfers_repo.delete_keys(self.chain_id, leftovers)
            await trades_repo.delete_by_tx(self.chain_id, tx_hash)
            return

        graduation = next((t for t in transfers if t.kind == TransferKind.GRADUATION.value), None)
        if graduation is None:
            return
        mint_amount = sum(
            t.amount for t in transfers if t.from_address == ZERO_ADDRESS and t.token_id == graduation.token_id
        )
        amount = mint_amount or graduation.amount
        eth_amount = sum(t.eth_amount or 0 for t in transfers) + sum(t.eth_amount for t in trades)

        token = await TokenRepository(session).get(graduation.token_id)
        decimals = token.decimals if token is not None else 18
        merged = replace(
            graduation,
            log_index=min(t.log_index for t in transfers),
            amount=amount,
            eth_amount=eth_amount or None,
            price=native_per_token(eth_amount, amount, token_decimals=decimals),
            consolidated=True,
            backfill_attempted_at=self._clock(),
        )

        await transfers_repo.delete_keys(self.chain_id, [(t.tx_hash, t.log_index) for t in transfers])
        await trades_repo.delete_by_tx(self.chain_id, tx_hash)
        await transfers_repo.insert(merged)
        logger.info(
            "Chain %d: merged %d transfers and %d trades of %s into one graduation",
            self.chain_id,
            len(transfers),
            len(trades),
            tx_hash,
        )

    # ------------------------------------------------------------------
    # Duplicate trades and cross-ledger overlaps
    # ------------------------------------------------------------------

    async def _collapse_duplicate_trades(self, result: ReconcileResult) -> None:
        async with self._db.get_async_session() as session:
            repo = TradeRepository(session)
            groups = await repo.list_duplicate_groups(self.chain_id)
            for tx_hash, keep_log_index, _copies in groups:
                removed = 0

                async def work(tx_hash: str = tx_hash, keep: int = keep_log_index) -> None:
                    nonlocal removed
                    removed = await repo.delete_duplicates_of(self.chain_id, tx_hash, keep)

                if await self._unit(session, result, f"duplicate trade collapse of {tx_hash}", work):
                    result.duplicates_removed += removed

    async def _remove_overlaps(self, result: ReconcileResult) -> None:
        async with self._db.get_async_session() as session:
            repo = TransferRepository(session)
            overlaps = await repo.list_overlaps(self.chain_id)
            for block_number, tx_hash in overlaps:
                removed = 0

                async def work(block_number: int = block_number, tx_hash: str = tx_hash) -> None:
                    nonlocal removed
                    removed = await repo.delete_by_block_tx(self.chain_id, block_number, tx_hash)

                if await self._unit(session, result, f"overlap removal of {tx_hash}", work):
                    result.overlaps_removed += removed

    # ------------------------------------------------------------------
    # Misclassification migration
    # ------------------------------------------------------------------

    async def _migrate_misclassified(self, result: ReconcileResult) -> None:
        async with self._db.get_async_session() as session:
            transfers_repo = TransferRepository(session)
            candidates = await transfers_repo.list_migration_candidates(self.chain_id)
            if not candidates:
                return
            graduated_at = await transfers_repo.graduation_blocks(self.chain_id)
            pools = PoolRepository(session)
            trades_repo = TradeRepository(session)

            senders: dict[str, str] = {}
            for record in candidates:
                graduation_block = graduated_at.get(record.token_id)
                if graduation_block is not None and record.block_number <= graduation_block:
                    continue
                if record.tx_hash not in senders:
                    try:
                        tx = await self._client.get_transaction(record.tx_hash)
                    except ChainClientError as e:
                        result.failures += 1
                        logger.warning("Chain %d: cannot migrate %s: %s", self.chain_id, record.tx_hash, e)
                        continue
                    senders[record.tx_hash] = tx.sender

                async def work(record: TransferDTO = record) -> None:
                    token_pools = await pools.list_for_token(record.token_id)
                    await trades_repo.insert(
                        TradeDTO(
                            chain_id=record.chain_id,
                            tx_hash=record.tx_hash,
                            log_index=record.log_index,
                            token_id=record.token_id,
                            block_number=record.block_number,
                            block_time=record.block_time,
                            trader=senders[record.tx_hash],
                            side="BUY",
                            token_amount=record.amount,
                            eth_amount=record.eth_amount or 0,
                            price=record.price,
                            pool_address=token_pools[0].pool_address if token_pools else None,
                        )
                    )
                    await transfers_repo.delete_keys(self.chain_id, [(record.tx_hash, record.log_index)])

                if await self._unit(session, result, f"migration of {record.tx_hash}:{record.log_index}", work):
                    result.migrated += 1

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def _backfill(self, result: ReconcileResult) -> None:
        async with self._db.get_async_session() as session:
            transfers_repo = TransferRepository(session)
            candidates = await transfers_repo.list_backfill_candidates(
                self.chain_id, limit=self._settings.backfill_limit
            )
            if not candidates:
                return
            tokens = {t.id: t for t in await TokenRepository(session).list_for_chain(self.chain_id)}

            txs: dict[str, TransactionInfo | None] = {}
            for record in candidates:
                token = tokens.get(record.token_id)
                if token is None:
                    continue
                if record.tx_hash not in txs:
                    try:
                        txs[record.tx_hash] = await self._client.get_transaction(record.tx_hash)
                    except ChainClientError as e:
                        logger.warning("Chain %d: backfill tx %s unavailable: %s", self.chain_id, record.tx_hash, e)
                        txs[record.tx_hash] = None
                tx = txs[record.tx_hash]

                if tx is None:
                    result.failures += 1

                    async def stamp(record: TransferDTO = record) -> None:
                        await transfers_repo.mark_backfill_attempted(
                            self.chain_id, record.tx_hash, record.log_index
                        )

                    await self._unit(session, result, f"backfill stamp of {record.tx_hash}", stamp)
                    continue

                kind, eth_amount = await self._rederive(record, token, tx)
                price = native_per_token(eth_amount, record.amount, token_decimals=token.decimals)

                async def work(
                    record: TransferDTO = record,
                    kind: TransferKind = kind,
                    eth_amount: int | None = eth_amount,
                    price: Decimal | None = price,
                ) -> None:
                    await transfers_repo.update_derived(
                        self.chain_id,
                        record.tx_hash,
                        record.log_index,
                        kind=kind.value,
                        eth_amount=eth_amount,
                        price=price,
                    )
                    if kind == TransferKind.GRADUATION:
                        await TokenRepository(session).mark_graduated({record.token_id})

                if await self._unit(session, result, f"backfill of {record.tx_hash}:{record.log_index}", work):
                    result.backfilled += 1

    async def _rederive(
        self, record: TransferDTO, token: TokenDTO, tx: TransactionInfo
    ) -> tuple[TransferKind, int | None]:
        kind = classify_transfer(
            from_address=record.from_address,
            to_address=record.to_address,
            contract_address=token.contract_address,
            creator_address=token.creator_address,
            tx=tx,
            selectors=self._selectors,
        )
        if kind in (TransferKind.BUY, TransferKind.BUY_AND_LOCK):
            return kind, tx.value if tx.value > 0 else record.eth_amount
        if kind != TransferKind.SELL:
            return kind, record.eth_amount
        if record.eth_amount:
            return kind, record.eth_amount

        try:
            receipt = await self._client.get_transaction_receipt(record.tx_hash)
        except ChainClientError as e:
            logger.warning("Chain %d: receipt for %s unavailable: %s", self.chain_id, record.tx_hash, e)
            return kind, None
        if receipt.status == 0:
            return kind, None
        quoted = await quote_sell(self._client, token.contract_address, record.amount, receipt.block_number)
        return kind, quoted

    # ------------------------------------------------------------------
    # Block time repair
    # ------------------------------------------------------------------

    async def _repair_block_times(self, result: ReconcileResult) -> None:
        async with self._db.get_async_session() as session:
            trades_repo = TradeRepository(session)
            transfers_repo = TransferRepository(session)
            blocks = await trades_repo.list_blocks_missing_time(self.chain_id, limit=TIME_REPAIR_BATCH)
            for block_number in blocks:
                try:
                    ts = await self._client.get_block_timestamp(block_number)
                except ChainClientError as e:
                    result.failures += 1
                    logger.warning("Chain %d: block %d time unavailable: %s", self.chain_id, block_number, e)
                    continue
                block_time = datetime.fromtimestamp(ts, UTC)
                repaired = 0

                async def work(block_number: int = block_number, block_time: datetime = block_time) -> None:
                    nonlocal repaired
                    repaired = await trades_repo.repair_block_time(self.chain_id, block_number, block_time)
                    repaired += await transfers_repo.repair_block_time(self.chain_id, block_number, block_time)

                if await self._unit(session, result, f"block time repair of {block_number}", work):
                    result.times_repaired += repaired
