"""Singleton run lease.

At most one orchestrator run holds the named lease at a time. A holder that
crashes simply lets the lease expire, after which the next run takes over.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from types import TracebackType

from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.repos import RunLeaseRepository

logger = logging.getLogger(__name__)


class LeaseUnavailableError(RuntimeError):
    """Raised when another run holds the lease."""


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RunLease:
    """Leased, renewable ownership of a pipeline run.

    Example:
        ```python
        async with RunLease(db, "indexer", ttl_seconds=900):
            ...
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        name: str,
        *,
        owner: str | None = None,
        ttl_seconds: int = 900,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self.name = name
        self.owner = owner or default_owner()
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> None:
        now = self._clock()
        async with self._db.get_async_session() as session:
            acquired = await RunLeaseRepository(session).try_acquire(
                self.name, self.owner, now, now + self._ttl
            )
        if not acquired:
            raise LeaseUnavailableError(f"Lease {self.name!r} is held by another run")
        self._held = True
        logger.info("Acquired lease %s as %s", self.name, self.owner)

    async def renew(self) -> None:
        """Push the expiry out by one TTL; raises if the lease was lost."""
        async with self._db.get_async_session() as session:
            renewed = await RunLeaseRepository(session).renew(self.name, self.owner, self._clock() + self._ttl)
        if not renewed:
            self._held = False
            raise LeaseUnavailableError(f"Lease {self.name!r} was taken over")

    async def release(self) -> None:
        if not self._held:
            return
        async with self._db.get_async_session() as session:
            released = await RunLeaseRepository(session).release(self.name, self.owner)
        self._held = False
        if released:
            logger.info("Released lease %s", self.name)
        else:
            logger.warning("Lease %s was no longer ours at release", self.name)

    async def __aenter__(self) -> RunLease:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.release()
