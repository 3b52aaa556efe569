"""Admission control for start/end operations.

Two independent gates:

* a per-user lease that never waits: a second concurrent operation for the
  same user is refused with ``AlreadyInProgress`` instead of queuing;
* a global capacity ceiling that refuses new starts once the number of
  PENDING/ACTIVE sessions reaches the pool size.

``allocation_lock`` serialises the allocate-then-persist section across
users within one process. Cross-process exclusivity is left to the store.
"""

from __future__ import annotations

import asyncio

from lab_control.observability import get_logger

from ..errors import AlreadyInProgress, PoolAtCapacity
from ..sessions.repository import LabSessionRepository
from ..sessions.state_machine import LIVE_STATUSES

logger = get_logger(__name__)


class Lease:
    """Held per-user lock. Use as ``async with``; release is idempotent."""

    def __init__(self, guard: ConcurrencyGuard, user_id: str) -> None:
        self._guard = guard
        self.user_id = user_id
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._guard.release(self.user_id)

    async def __aenter__(self) -> Lease:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class ConcurrencyGuard:
    """In-process mutual exclusion keyed by user id."""

    def __init__(self) -> None:
        self._held: set[str] = set()
        self._allocation_lock = asyncio.Lock()

    def try_acquire(self, user_id: str) -> Lease:
        """Take the user's lease or fail immediately.

        Raises:
            AlreadyInProgress: another operation holds the lease.
        """
        if user_id in self._held:
            logger.info('guard_contention', user_id=user_id)
            raise AlreadyInProgress(user_id)
        self._held.add(user_id)
        return Lease(self, user_id)

    def release(self, user_id: str) -> None:
        self._held.discard(user_id)

    def is_held(self, user_id: str) -> bool:
        return user_id in self._held

    @property
    def held_count(self) -> int:
        return len(self._held)

    def allocation_lock(self) -> asyncio.Lock:
        return self._allocation_lock

    async def check_capacity(
        self, repo: LabSessionRepository, capacity: int,
    ) -> int:
        """Refuse once live sessions reach ``capacity``; return the live count.

        Raises:
            PoolAtCapacity: live PENDING/ACTIVE count >= capacity.
        """
        live = len(await repo.list_by_status(LIVE_STATUSES))
        if live >= capacity:
            logger.warning('pool_at_capacity', live=live, capacity=capacity)
            raise PoolAtCapacity(live, capacity)
        return live
