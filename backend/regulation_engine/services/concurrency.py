"""
Per-User Serialization

All writes touching one user's RegulationState, CandidateSignal set or
consent flags run under that user's lock, and commit before releasing it,
so the next holder always reads the previous holder's writes. Different
users never contend.

The registry is process-local. Multi-process deployments must route a
user's writes to a single worker (single-writer partition); the optimistic
version check on RegulationState catches anything that slips through.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional


class UserLockRegistry:
    """Hands out one re-entrant lock per user id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def lock_for(self, user_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def hold(self, user_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Acquire the user's lock for the duration of the block.

        Raises TimeoutError if `timeout` elapses first.
        """
        lock = self.lock_for(user_id)
        acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise TimeoutError(f"Timed out waiting for lock of user {user_id}")
        try:
            yield
        finally:
            lock.release()


# Shared by request handlers and background workers in this process
user_locks = UserLockRegistry()
