"""Chain scanner.

Walks a chain from its cursor (minus a reorg cushion) to the head in
block-chunked, address-batched windows. Each window's Transfer logs are
classified and written to the transfer ledger, and the Swap and Sync logs of
registered pools become trades and reserve snapshots. Everything a window
produces is committed together with the cursor advance, so a crash either
leaves the window fully applied or not at all.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from launchpad_indexer.chain.client import ChainClient, TransactionInfo
from launchpad_indexer.chain.events import (
    SWAP_TOPIC,
    SYNC_TOPIC,
    TRANSFER_TOPIC,
    EventDecodeError,
    LogEvent,
    SwapEvent,
    SyncEvent,
    TransferEvent,
    decode_swap,
    decode_sync,
    decode_transfer,
)
from launchpad_indexer.chain.retry import ChainClientError, RateLimitError
from launchpad_indexer.classifier import DEFAULT_SELECTORS, SelectorTable, TransferKind, classify_transfer
from launchpad_indexer.config import ScannerSettings
from launchpad_indexer.ledger import LedgerWriter
from launchpad_indexer.pools import snapshot_from_sync, trade_from_swap
from launchpad_indexer.pricing import native_per_token, quote_sell
from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.repos import (
    CursorRepository,
    PoolDTO,
    PoolRepository,
    PoolSnapshotDTO,
    PoolSnapshotRepository,
    TokenDTO,
    TokenRepository,
    TradeDTO,
    TransferDTO,
)

logger = logging.getLogger(__name__)

PRICED_ON_BUY = frozenset({TransferKind.BUY, TransferKind.BUY_AND_LOCK})


@dataclass(frozen=True)
class ScanResult:
    chain_id: int
    from_block: int | None
    to_block: int | None
    windows: int
    transfers: int
    trades: int
    final_chunk_size: int


@dataclass
class _ScanPlan:
    """Addresses and lookups for one chain pass."""

    tokens: dict[str, TokenDTO]
    pools: dict[str, PoolDTO]
    excluded_holders: set[str]
    deployments: dict[int, int] = field(default_factory=dict)
    transfers: int = 0
    trades: int = 0


def _batched(items: Sequence[str], size: int) -> Iterator[list[str]]:
    for i in range(0, len(items), size):
        yield list(items[i : i + size])


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Scanner:
    """Scans one chain's tracked contracts and pools into the ledgers."""

    def __init__(
        self,
        client: ChainClient,
        db: DatabaseManager,
        settings: ScannerSettings,
        *,
        selectors: SelectorTable = DEFAULT_SELECTORS,
        clock: Callable[[], datetime] = _utcnow,
        heartbeat: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._client = client
        # Awaited before every window; the orchestrator renews its lease here.
        self._heartbeat = heartbeat
        self._db = db
        self._settings = settings
        self._selectors = selectors
        self._clock = clock
        # Shrinks on rate limiting and never grows back within a run.
        self._chunk_size = settings.chunk_size

    @property
    def chain_id(self) -> int:
        return self._client.chain_id

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    async def scan_chain(self) -> ScanResult:
        """Scan from the cursor to the current head."""
        chain_id = self.chain_id
        token_filter = self._settings.token_id

        async with self._db.get_async_session() as session:
            tokens = await TokenRepository(session).list_for_chain(chain_id, token_id=token_filter)
            all_pools = await PoolRepository(session).list_for_chain(chain_id)
            cursor = await CursorRepository(session).get(chain_id)

        if not tokens:
            logger.info("Chain %d: no tracked tokens", chain_id)
            return self._result(None, None, 0, _ScanPlan({}, {}, set()))

        token_ids = {t.id for t in tokens}
        plan = _ScanPlan(
            tokens={t.contract_address.lower(): t for t in tokens},
            pools={p.pool_address.lower(): p for p in all_pools if p.token_id in token_ids},
            excluded_holders={p.pool_address.lower() for p in all_pools},
        )

        async with self._db.get_async_session() as session:
            await LedgerWriter(session).purge_pool_balances(sorted(token_ids), plan.excluded_holders)

        newly_resolved = await self._resolve_deployments(tokens, plan)
        start = self._start_block(cursor, plan.deployments, newly_resolved)
        if start is None:
            logger.warning("Chain %d: no cursor and no resolvable deployment block, skipping", chain_id)
            return self._result(None, None, 0, plan)

        head = await self._client.current_block_number()
        if start > head:
            logger.info("Chain %d: up to date (start=%d head=%d)", chain_id, start, head)
            return self._result(start, head, 0, plan)

        await self._catch_up_pools(plan, start)

        advance_cursor = token_filter is None
        token_addresses = sorted(plan.tokens)
        pool_addresses = sorted(plan.pools)

        async def handle(from_block: int, to_block: int) -> None:
            await self._scan_window(
                plan,
                from_block,
                to_block,
                token_addresses=token_addresses,
                pool_addresses=pool_addresses,
                advance_cursor=advance_cursor,
            )

        logger.info(
            "Chain %d: scanning blocks %d-%d (%d tokens, %d pools, chunk=%d)",
            chain_id,
            start,
            head,
            len(token_addresses),
            len(pool_addresses),
            self._chunk_size,
        )
        windows = await self._run_range(start, head, handle)
        logger.info(
            "Chain %d: scanned %d windows, %d transfers, %d trades",
            chain_id,
            windows,
            plan.transfers,
            plan.trades,
        )
        return self._result(start, head, windows, plan)

    def _result(self, from_block: int | None, to_block: int | None, windows: int, plan: _ScanPlan) -> ScanResult:
        return ScanResult(
            chain_id=self.chain_id,
            from_block=from_block,
            to_block=to_block,
            windows=windows,
            transfers=plan.transfers,
            trades=plan.trades,
            final_chunk_size=self._chunk_size,
        )

    async def _resolve_deployments(self, tokens: list[TokenDTO], plan: _ScanPlan) -> set[int]:
        """Fill ``plan.deployments``; returns ids resolved during this call."""
        newly: set[int] = set()
        for token in tokens:
            if token.deployment_block is not None:
                plan.deployments[token.id] = token.deployment_block
                continue
            try:
                block = await self._client.find_block_by_timestamp(token.created_at)
            except ChainClientError as e:
                logger.warning("Deployment block lookup failed for token %d: %s", token.id, e)
                continue
            async with self._db.get_async_session() as session:
                await TokenRepository(session).set_deployment_block(token.id, block)
            logger.info("Token %d deployment block resolved to %d", token.id, block)
            plan.deployments[token.id] = block
            newly.add(token.id)
        return newly

    def _start_block(self, cursor: int | None, deployments: dict[int, int], newly: set[int]) -> int | None:
        if self._settings.token_id is not None and deployments:
            return min(deployments.values())
        if cursor is not None:
            start = max(cursor - self._settings.reorg_cushion, 0)
            # A token registered behind the cursor needs its history scanned.
            late = [deployments[t] for t in newly if deployments[t] < start]
            return min([start, *late])
        if deployments:
            return min(deployments.values())
        return None

    async def _catch_up_pools(self, plan: _ScanPlan, start: int) -> None:
        """Scan pools registered since the last pass up to ``start - 1``."""
        for address, pool in sorted(plan.pools.items()):
            if pool.scanned_through_block is not None:
                first = pool.scanned_through_block + 1
            else:
                first = plan.deployments.get(pool.token_id, start)
            if first >= start:
                continue
            logger.info("Pool %s: catching up blocks %d-%d", address, first, start - 1)

            async def handle(from_block: int, to_block: int, address: str = address) -> None:
                await self._scan_window(
                    plan,
                    from_block,
                    to_block,
                    token_addresses=[],
                    pool_addresses=[address],
                    advance_cursor=False,
                )

            await self._run_range(first, start - 1, handle)

    async def _run_range(
        self,
        start: int,
        end: int,
        handle: Callable[[int, int], Awaitable[None]],
    ) -> int:
        """Drive ``handle`` over ``[start, end]`` in chunks, halving on rate limits."""
        windows = 0
        block = start
        while block <= end:
            to_block = min(block + self._chunk_size - 1, end)
            if self._heartbeat is not None:
                await self._heartbeat()
            try:
                await handle(block, to_block)
            except RateLimitError:
                if self._chunk_size <= self._settings.min_chunk_size:
                    raise
                self._chunk_size = max(self._chunk_size // 2, self._settings.min_chunk_size)
                logger.warning(
                    "Chain %d: rate limited on %d-%d, chunk size now %d",
                    self.chain_id,
                    block,
                    to_block,
                    self._chunk_size,
                )
                continue
            windows += 1
            block = to_block + 1
        return windows

    async def _fetch_logs(
        self,
        token_addresses: list[str],
        pool_addresses: list[str],
        from_block: int,
        to_block: int,
    ) -> list[LogEvent]:
        batch_size = self._settings.address_batch_size
        logs: list[LogEvent] = []
        for batch in _batched(token_addresses, batch_size):
            logs.extend(await self._client.get_logs(batch, [TRANSFER_TOPIC], from_block, to_block))
        for batch in _batched(pool_addresses, batch_size):
            logs.extend(await self._client.get_logs(batch, [[SWAP_TOPIC, SYNC_TOPIC]], from_block, to_block))
        logs.sort(key=lambda log: (log.block_number, log.log_index))
        return logs

    async def _block_times(self, blocks: set[int]) -> dict[int, datetime]:
        """Block timestamps; wall-clock for the rest of the chunk once rate limited."""
        times: dict[int, datetime] = {}
        fallback: datetime | None = None
        for block in sorted(blocks):
            if fallback is None:
                try:
                    ts = await self._client.get_block_timestamp(block)
                    times[block] = datetime.fromtimestamp(ts, UTC)
                    continue
                except RateLimitError as e:
                    fallback = self._clock()
                    logger.warning(
                        "Chain %d: timestamp lookups rate limited at block %d, using wall clock: %s",
                        self.chain_id,
                        block,
                        e,
                    )
            times[block] = fallback
        return times

    async def _transactions(self, tx_hashes: set[str]) -> dict[str, TransactionInfo | None]:
        txs: dict[str, TransactionInfo | None] = {}
        for tx_hash in sorted(tx_hashes):
            try:
                txs[tx_hash] = await self._client.get_transaction(tx_hash)
            except ChainClientError as e:
                logger.warning("Chain %d: transaction %s unavailable: %s", self.chain_id, tx_hash, e)
                txs[tx_hash] = None
        return txs

    async def _scan_window(
        self,
        plan: _ScanPlan,
        from_block: int,
        to_block: int,
        *,
        token_addresses: list[str],
        pool_addresses: list[str],
        advance_cursor: bool,
    ) -> None:
        logs = await self._fetch_logs(token_addresses, pool_addresses, from_block, to_block)

        transfers: list[TransferEvent] = []
        swaps: list[SwapEvent] = []
        syncs: list[SyncEvent] = []
        for log in logs:
            try:
                if log.topic0 == TRANSFER_TOPIC and log.address in plan.tokens:
                    event = decode_transfer(log)
                    if event.amount > 0:
                        transfers.append(event)
                elif log.topic0 == SWAP_TOPIC and log.address in plan.pools:
                    swaps.append(decode_swap(log))
                elif log.topic0 == SYNC_TOPIC and log.address in plan.pools:
                    syncs.append(decode_sync(log))
            except EventDecodeError as e:
                logger.warning("Skipping malformed log %s:%d: %s", log.tx_hash, log.log_index, e)

        block_times = await self._block_times(
            {e.block_number for e in transfers} | {e.block_number for e in swaps} | {e.block_number for e in syncs}
        )
        txs = await self._transactions({e.tx_hash for e in transfers} | {e.tx_hash for e in swaps})

        transfer_rows: list[TransferDTO] = []
        for event in transfers:
            transfer_rows.append(await self._transfer_row(plan, event, txs.get(event.tx_hash), block_times))
        trade_rows: list[TradeDTO] = []
        for swap in swaps:
            tx = txs.get(swap.tx_hash)
            trade = trade_from_swap(
                swap,
                plan.pools[swap.pool_address],
                block_time=block_times[swap.block_number],
                trader=tx.sender if tx is not None else swap.recipient,
            )
            if trade is not None:
                trade_rows.append(trade)
        snapshots: list[PoolSnapshotDTO] = [
            snapshot_from_sync(sync, plan.pools[sync.pool_address], block_time=block_times[sync.block_number])
            for sync in syncs
        ]

        async with self._db.get_async_session() as session:
            ledger = LedgerWriter(session)
            await ledger.write_transfers(transfer_rows, pool_addresses=plan.excluded_holders)
            await ledger.write_trades(trade_rows)
            await PoolSnapshotRepository(session).upsert_many(snapshots)
            await PoolRepository(session).mark_scanned_through(self.chain_id, pool_addresses, to_block)
            if advance_cursor:
                await CursorRepository(session).advance(self.chain_id, to_block)

        plan.transfers += len(transfer_rows)
        plan.trades += len(trade_rows)
        logger.debug(
            "Chain %d window %d-%d: %d transfers, %d trades, %d snapshots",
            self.chain_id,
            from_block,
            to_block,
            len(transfer_rows),
            len(trade_rows),
            len(snapshots),
        )

    async def _transfer_row(
        self,
        plan: _ScanPlan,
        event: TransferEvent,
        tx: TransactionInfo | None,
        block_times: dict[int, datetime],
    ) -> TransferDTO:
        token = plan.tokens[event.contract_address]
        kind = classify_transfer(
            from_address=event.from_address,
            to_address=event.to_address,
            contract_address=token.contract_address,
            creator_address=token.creator_address,
            tx=tx,
            selectors=self._selectors,
        )

        eth_amount: int | None = None
        if kind in PRICED_ON_BUY and tx is not None and tx.value > 0:
            eth_amount = tx.value
        elif kind == TransferKind.SELL:
            eth_amount = await quote_sell(self._client, token.contract_address, event.amount, event.block_number)
        price = native_per_token(eth_amount, event.amount, token_decimals=token.decimals)

        settled = tx is not None and (kind != TransferKind.SELL or eth_amount is not None)
        return TransferDTO(
            chain_id=self.chain_id,
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            token_id=token.id,
            contract_address=token.contract_address,
            block_number=event.block_number,
            block_time=block_times[event.block_number],
            from_address=event.from_address,
            to_address=event.to_address,
            amount=event.amount,
            kind=kind.value,
            eth_amount=eth_amount,
            price=price,
            backfill_attempted_at=self._clock() if settled else None,
        )
