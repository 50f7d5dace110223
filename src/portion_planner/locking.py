"""Per-plan mutual exclusion for generate, scale and shopping-list runs.

Two runs against the same plan would otherwise both read "nothing to do
yet" and write overlapping entries or snapshots. The lock is re-entrant so
auto-generation can trigger scaling while it still holds the plan.
This only serialises callers inside one process.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager

logger = logging.getLogger(__name__)


class PlanLockRegistry:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.RLock] = {}

    def lock_for(self, plan_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(plan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[plan_id] = lock
            return lock

    @contextmanager
    def hold(self, plan_id: int) -> Iterator[None]:
        lock = self.lock_for(plan_id)
        if not lock.acquire(blocking=False):
            logger.info("Plan %d is busy, waiting for the running operation", plan_id)
            lock.acquire()
        try:
            yield
        finally:
            lock.release()


_registry = PlanLockRegistry()


def plan_lock(plan_id: int, registry: PlanLockRegistry | None = None) -> AbstractContextManager[None]:
    """Context manager holding the plan's lock for the duration of an operation."""
    return (registry or _registry).hold(plan_id)
