"""Tests for the singleton run lease."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from launchpad_indexer.lease import LeaseUnavailableError, RunLease, default_owner
from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.repos import RunLeaseRepository

T0 = datetime(2026, 3, 1, tzinfo=UTC)


class Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


async def _owner(db: DatabaseManager, name: str = "indexer") -> str | None:
    async with db.get_async_session() as session:
        return await RunLeaseRepository(session).get_owner(name)


class TestRunLease:
    @pytest.mark.asyncio
    async def test_acquire_and_release(self, db: DatabaseManager) -> None:
        lease = RunLease(db, "indexer", owner="a", clock=Clock())

        await lease.acquire()
        assert lease.held
        assert await _owner(db) == "a"

        await lease.release()
        assert not lease.held
        assert await _owner(db) is None

    @pytest.mark.asyncio
    async def test_second_run_is_refused(self, db: DatabaseManager) -> None:
        clock = Clock()
        await RunLease(db, "indexer", owner="a", ttl_seconds=60, clock=clock).acquire()

        other = RunLease(db, "indexer", owner="b", ttl_seconds=60, clock=clock)
        with pytest.raises(LeaseUnavailableError):
            await other.acquire()
        assert not other.held
        assert await _owner(db) == "a"

    @pytest.mark.asyncio
    async def test_same_owner_reacquires(self, db: DatabaseManager) -> None:
        clock = Clock()
        await RunLease(db, "indexer", owner="a", clock=clock).acquire()

        again = RunLease(db, "indexer", owner="a", clock=clock)
        await again.acquire()
        assert again.held

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, db: DatabaseManager) -> None:
        clock = Clock()
        crashed = RunLease(db, "indexer", owner="a", ttl_seconds=60, clock=clock)
        await crashed.acquire()

        clock.now = T0 + timedelta(seconds=61)
        successor = RunLease(db, "indexer", owner="b", ttl_seconds=60, clock=clock)
        await successor.acquire()
        assert await _owner(db) == "b"

        with pytest.raises(LeaseUnavailableError):
            await crashed.renew()
        assert not crashed.held

    @pytest.mark.asyncio
    async def test_renew_extends_expiry(self, db: DatabaseManager) -> None:
        clock = Clock()
        lease = RunLease(db, "indexer", owner="a", ttl_seconds=60, clock=clock)
        await lease.acquire()

        clock.now = T0 + timedelta(seconds=50)
        await lease.renew()
        clock.now = T0 + timedelta(seconds=70)

        with pytest.raises(LeaseUnavailableError):
            await RunLease(db, "indexer", owner="b", ttl_seconds=60, clock=clock).acquire()

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_error(self, db: DatabaseManager) -> None:
        with pytest.raises(KeyError):
            async with RunLease(db, "indexer", owner="a", clock=Clock()) as lease:
                assert lease.held
                raise KeyError("boom")

        assert await _owner(db) is None

    @pytest.mark.asyncio
    async def test_leases_are_independent_by_name(self, db: DatabaseManager) -> None:
        clock = Clock()
        await RunLease(db, "indexer", owner="a", clock=clock).acquire()
        await RunLease(db, "backfill", owner="b", clock=clock).acquire()

        assert await _owner(db, "backfill") == "b"

    def test_default_owner_is_unique(self) -> None:
        assert default_owner() != default_owner()
