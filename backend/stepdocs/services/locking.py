import logging
import threading
import time
from contextlib import contextmanager

from stepdocs.config import settings
from stepdocs.errors import ConcurrentModification

logger = logging.getLogger(__name__)


class _StepLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class StepLockRegistry:
    """One mutex per step id; rebuilds of different steps never contend.

    Entries are reference-counted and dropped once no thread holds or waits
    on them, so the registry only grows with the number of busy steps.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, _StepLock] = {}

    def _checkout(self, step_id: str) -> _StepLock:
        with self._guard:
            entry = self._locks.get(step_id)
            if entry is None:
                entry = self._locks[step_id] = _StepLock()
            entry.users += 1
            return entry

    def _checkin(self, step_id: str, entry: _StepLock):
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[step_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, step_id: str, timeout: float | None = None):
        wait = settings.lock_timeout_seconds if timeout is None else timeout
        entry = self._checkout(step_id)
        try:
            started = time.monotonic()
            if not entry.lock.acquire(timeout=wait):
                waited = time.monotonic() - started
                logger.warning("Step %s lock not acquired after %.2fs", step_id, waited)
                raise ConcurrentModification(step_id, waited)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(step_id, entry)


step_locks = StepLockRegistry()


def step_lock(step_id: str, timeout: float | None = None):
    return step_locks.hold(step_id, timeout)
