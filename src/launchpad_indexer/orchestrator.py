"""Run orchestration.

One run takes the singleton lease, probes every chain, and then runs each
stage as a complete pass over all healthy chains before the next begins:

    pool discovery + scan  ->  reconcile  ->  aggregate

Chains are processed one after another. A failure in one chain's stage is
logged and recorded in the report; the other chains carry on.
The lease is renewed before every chain step and before every scan window;
losing it aborts the run.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from launchpad_indexer.aggregator import AggregateResult, Aggregator
from launchpad_indexer.chain.client import ChainClient
from launchpad_indexer.classifier import DEFAULT_SELECTORS, SelectorTable
from launchpad_indexer.config import Settings
from launchpad_indexer.lease import LeaseUnavailableError, RunLease
from launchpad_indexer.pools import PoolDiscovery
from launchpad_indexer.reconciler import ReconcileResult, Reconciler
from launchpad_indexer.scanner import Scanner, ScanResult
from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.repos import TokenRepository

logger = logging.getLogger(__name__)


class IndexerError(RuntimeError):
    """A structural failure that makes the whole run fail."""


class Stage(str, Enum):
    """Pipeline stages, in run order."""

    SCAN = "scan"
    RECONCILE = "reconcile"
    AGGREGATE = "aggregate"


@dataclass
class RunReport:
    """Outcome of one orchestrator run."""

    started_at: datetime
    finished_at: datetime | None = None
    chains: list[int] = field(default_factory=list)
    unhealthy: list[int] = field(default_factory=list)
    scans: dict[int, ScanResult] = field(default_factory=dict)
    reconciles: dict[int, ReconcileResult] = field(default_factory=dict)
    aggregates: dict[int, AggregateResult] = field(default_factory=dict)
    pools_discovered: dict[int, int] = field(default_factory=dict)
    errors: dict[int, list[str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def record_error(self, chain_id: int, stage: Stage, error: BaseException) -> None:
        self.errors.setdefault(chain_id, []).append(f"{stage.value}: {error}")


class Orchestrator:
    """Sequences the pipeline stages for every configured chain.

    Example:
        ```python
        settings = get_settings()
        db = DatabaseManager(settings.database.url)
        clients = {6342: ChainClient(6342, "https://rpc.example")}
        report = await Orchestrator(settings, db=db, clients=clients).run()
        ```
    """

    def __init__(
        self,
        settings: Settings,
        *,
        db: DatabaseManager,
        clients: dict[int, ChainClient],
        lease_owner: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._db = db
        self._clients = clients
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lease = RunLease(
            db,
            settings.lease.name,
            owner=lease_owner,
            ttl_seconds=settings.lease.ttl_seconds,
            clock=self._clock,
        )
        self._selectors = DEFAULT_SELECTORS.merged(SelectorTable.parse(settings.classifier.selectors_raw))
        self._aggregator = Aggregator(db, settings.aggregator, clock=self._clock)

    @property
    def lease(self) -> RunLease:
        return self._lease

    async def run(self) -> RunReport:
        """Execute one full run.

        Raises:
            IndexerError: If the datastore is unreachable or another run
                holds the lease.
        """
        report = RunReport(started_at=self._clock())

        try:
            await self._db.check_connection()
        except Exception as e:
            raise IndexerError(f"Datastore unreachable: {e}") from e

        try:
            await self._lease.acquire()
        except LeaseUnavailableError as e:
            raise IndexerError(str(e)) from e

        try:
            chain_ids = await self._chains_to_run()
            report.chains = chain_ids
            healthy = await self._healthy_chains(chain_ids, report)

            await self._stage(Stage.SCAN, healthy, report, self._scan_chain)
            await self._stage(Stage.RECONCILE, healthy, report, self._reconcile_chain)
            await self._stage(Stage.AGGREGATE, healthy, report, self._aggregate_chain)
        except LeaseUnavailableError as e:
            raise IndexerError(str(e)) from e
        finally:
            await self._lease.release()
            report.finished_at = self._clock()

        logger.info(
            "Run finished: %d chains, %d unhealthy, %d with errors",
            len(report.chains),
            len(report.unhealthy),
            len(report.errors),
        )
        return report

    async def _chains_to_run(self) -> list[int]:
        async with self._db.get_async_session() as session:
            tracked = await TokenRepository(session).list_chain_ids()
        missing = [c for c in tracked if c not in self._clients]
        if missing:
            logger.warning("No RPC endpoint configured for chains %s; their tokens are skipped", missing)
        return [c for c in tracked if c in self._clients]

    async def _healthy_chains(self, chain_ids: list[int], report: RunReport) -> list[int]:
        if self._settings.skip_health_check:
            return list(chain_ids)
        healthy = []
        for chain_id in chain_ids:
            if await self._clients[chain_id].health_check(self._settings.health_check_timeout_seconds):
                healthy.append(chain_id)
            else:
                logger.warning("Chain %d failed its health check; skipped this run", chain_id)
                report.unhealthy.append(chain_id)
        return healthy

    async def _stage(
        self,
        stage: Stage,
        chain_ids: list[int],
        report: RunReport,
        step: Callable[[int, RunReport], Awaitable[Any]],
    ) -> None:
        logger.info("Stage %s: %d chains", stage.value, len(chain_ids))
        for chain_id in chain_ids:
            await self._lease.renew()
            try:
                await step(chain_id, report)
            except LeaseUnavailableError:
                raise
            except Exception as e:
                logger.exception("Chain %d %s failed", chain_id, stage.value)
                report.record_error(chain_id, stage, e)

    async def _scan_chain(self, chain_id: int, report: RunReport) -> None:
        client = self._clients[chain_id]
        router = self._settings.chains.dex_routers.get(chain_id)
        if router:
            discovery = PoolDiscovery(client, self._db, router)
            found = await discovery.discover(token_id=self._settings.scanner.token_id)
            report.pools_discovered[chain_id] = len(found)
        scanner = Scanner(
            client,
            self._db,
            self._settings.scanner,
            selectors=self._selectors,
            clock=self._clock,
            heartbeat=self._lease.renew,
        )
        report.scans[chain_id] = await scanner.scan_chain()

    async def _reconcile_chain(self, chain_id: int, report: RunReport) -> None:
        reconciler = Reconciler(
            self._clients[chain_id],
            self._db,
            self._settings.reconciler,
            selectors=self._selectors,
            clock=self._clock,
        )
        report.reconciles[chain_id] = await reconciler.reconcile_chain()

    async def _aggregate_chain(self, chain_id: int, report: RunReport) -> None:
        report.aggregates[chain_id] = await self._aggregator.aggregate_chain(
            chain_id, token_id=self._settings.scanner.token_id
        )
