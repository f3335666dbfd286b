"""
Asynchronous Invalidation Delivery

The behavior event log must never wait on signal invalidation. Edits and
removals enqueue an InvalidationJob here and return immediately; a small
worker pool applies the job under the user's lock with its own session.

Delivery is at-least-once: a failed attempt is retried with exponential
backoff, and a job that exhausts its attempts is parked in `failed` until
an operator (or the /internal/invalidation-retry job) resubmits it.
Re-running a job is harmless because invalidation skips rows that are
no longer in `candidate` status.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ...config import INVALIDATION_MAX_ATTEMPTS, INVALIDATION_MAX_WORKERS
from ..concurrency import user_locks
from .manager import DEFAULT_INVALIDATION_REASON, SYSTEM_ACTOR, SignalLifecycleManager


logger = logging.getLogger(__name__)


@dataclass
class InvalidationJob:
    user_id: str
    event_ids: Tuple[str, ...]
    reason: str = DEFAULT_INVALIDATION_REASON
    actor: str = SYSTEM_ACTOR
    attempts: int = 0
    last_error: Optional[str] = None
    enqueued_at: datetime = field(default_factory=datetime.utcnow)


def _default_session_factory() -> Session:
    from ...database import SessionLocal

    return SessionLocal()


class InvalidationDispatcher:
    """
    Fire-and-forget executor for InvalidateForEvents.

    Usage:
        dispatcher = InvalidationDispatcher(session_factory=SessionLocal)
        dispatcher.dispatch(user_id, ["evt-1"], reason="event edited")
        dispatcher.flush()  # tests only: wait for queued jobs
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        max_attempts: int = INVALIDATION_MAX_ATTEMPTS,
        max_workers: int = INVALIDATION_MAX_WORKERS,
        backoff_seconds: float = 0.05,
    ):
        self.session_factory = session_factory or _default_session_factory
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="invalidation")
        self._guard = threading.Lock()
        self._pending: Dict[int, Future] = {}
        self._failed: List[InvalidationJob] = []
        self._applied = 0

    # =========================================================================
    # Submission
    # =========================================================================

    def dispatch(
        self,
        user_id: str,
        event_ids,
        reason: str = DEFAULT_INVALIDATION_REASON,
        actor: str = SYSTEM_ACTOR,
    ) -> InvalidationJob:
        """Queue an invalidation job and return without waiting for it."""
        job = InvalidationJob(
            user_id=user_id,
            event_ids=tuple(sorted(set(event_ids))),
            reason=reason,
            actor=actor,
        )
        self._submit(job)
        return job

    def _submit(self, job: InvalidationJob) -> None:
        future = self._executor.submit(self._run, job)
        with self._guard:
            self._pending[id(future)] = future
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._guard:
            self._pending.pop(id(future), None)

    # =========================================================================
    # Execution
    # =========================================================================

    def run_job(self, job: InvalidationJob) -> int:
        """Apply one job synchronously. Raises on failure."""
        db = self.session_factory()
        try:
            with user_locks.hold(job.user_id):
                manager = SignalLifecycleManager(db)
                count = manager.invalidate_for_events(
                    job.user_id, job.event_ids, reason=job.reason, actor=job.actor
                )
                db.commit()
            return count
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _run(self, job: InvalidationJob) -> Optional[int]:
        while job.attempts < self.max_attempts:
            job.attempts += 1
            try:
                count = self.run_job(job)
                with self._guard:
                    self._applied += 1
                return count
            except Exception as e:
                job.last_error = str(e)
                logger.warning(
                    f"Invalidation attempt {job.attempts}/{self.max_attempts} failed "
                    f"for user {job.user_id}: {e}"
                )
                if job.attempts < self.max_attempts:
                    time.sleep(self.backoff_seconds * (2 ** (job.attempts - 1)))

        logger.error(f"Invalidation for user {job.user_id} parked after {job.attempts} attempts")
        with self._guard:
            self._failed.append(job)
        return None

    # =========================================================================
    # Operations
    # =========================================================================

    @property
    def failed_jobs(self) -> List[InvalidationJob]:
        with self._guard:
            return list(self._failed)

    def retry_failed(self) -> Dict[str, int]:
        """Resubmit every parked job with a fresh attempt budget."""
        with self._guard:
            jobs, self._failed = self._failed, []
        for job in jobs:
            job.attempts = 0
            self._submit(job)
        return {"resubmitted": len(jobs)}

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued job finished. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._guard:
                pending = list(self._pending.values())
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait(pending, timeout=remaining)
            if not_done:
                return False

    def stats(self) -> Dict[str, int]:
        with self._guard:
            return {
                "pending": len(self._pending),
                "failed": len(self._failed),
                "applied": self._applied,
            }

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_jobs)


# Process-wide dispatcher used by the event log unless one is injected
invalidation_dispatcher = InvalidationDispatcher()
