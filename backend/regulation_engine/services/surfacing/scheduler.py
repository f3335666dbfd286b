"""
Surfacer Scheduler

Periodic evaluation pass across users.

- One worker job per user, each with its own session.
- Per-user timeout: a slow user is cancelled (cooperatively, between
  definitions) and counted as timed_out; the others keep going.
- Overall pass timeout: whatever has not finished is cancelled.
- Cancelled jobs roll back. Partial passes are acceptable: a missed signal
  is picked up on the next pass.

Returns a summary dict in the same shape as the other internal jobs.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ...config import (
    SURFACER_MAX_WORKERS,
    SURFACER_PASS_TIMEOUT_SECONDS,
    SURFACER_USER_TIMEOUT_SECONDS,
)
from ..behavior import BehaviorEventLog
from .surfacer import ActiveSignalSurfacer


logger = logging.getLogger(__name__)

# Users with events this recent are evaluated when no explicit list is given
ACTIVE_USER_LOOKBACK = timedelta(hours=24)


def _default_session_factory() -> Session:
    from ...database import SessionLocal

    return SessionLocal()


class SurfacerScheduler:
    """
    Usage:
        scheduler = SurfacerScheduler(session_factory=SessionLocal)
        summary = scheduler.run_pass()
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        max_workers: int = SURFACER_MAX_WORKERS,
        user_timeout_seconds: float = SURFACER_USER_TIMEOUT_SECONDS,
        pass_timeout_seconds: float = SURFACER_PASS_TIMEOUT_SECONDS,
        surfacer_factory: Callable[[Session], ActiveSignalSurfacer] = ActiveSignalSurfacer,
    ):
        self.session_factory = session_factory or _default_session_factory
        self.max_workers = max(1, max_workers)
        self.user_timeout_seconds = user_timeout_seconds
        self.pass_timeout_seconds = pass_timeout_seconds
        self.surfacer_factory = surfacer_factory

    def _active_users(self, now: datetime) -> List[str]:
        db = self.session_factory()
        try:
            return BehaviorEventLog(db).active_user_ids(since=now - ACTIVE_USER_LOOKBACK)
        finally:
            db.close()

    def _evaluate_user(self, user_id: str, now: datetime, cancel_event: threading.Event) -> int:
        db = self.session_factory()
        try:
            outcome = self.surfacer_factory(db).evaluate_user(user_id, now=now, cancel_event=cancel_event)
            if cancel_event.is_set():
                db.rollback()
                return 0
            db.commit()
            return len(outcome.surfaced)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def run_pass(self, user_ids: Optional[List[str]] = None, now: Optional[datetime] = None) -> Dict:
        """
        Evaluate every user once.

        Returns:
            {task, run_date, evaluated, timed_out, failed, surfaced, errors}
        """
        now = now or datetime.utcnow()
        users = sorted(set(user_ids)) if user_ids is not None else self._active_users(now)

        summary = {
            "task": "surfacer_pass",
            "run_date": now.isoformat(),
            "users": len(users),
            "evaluated": 0,
            "timed_out": 0,
            "failed": 0,
            "surfaced": 0,
            "errors": [],
        }
        if not users:
            return summary

        pass_deadline = time.monotonic() + self.pass_timeout_seconds
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="surfacer")
        jobs: List[Tuple[str, threading.Event, object]] = []
        try:
            for user_id in users:
                cancel_event = threading.Event()
                future = executor.submit(self._evaluate_user, user_id, now, cancel_event)
                jobs.append((user_id, cancel_event, future))

            for user_id, cancel_event, future in jobs:
                remaining = pass_deadline - time.monotonic()
                if remaining <= 0:
                    cancel_event.set()
                    future.cancel()
                    summary["timed_out"] += 1
                    continue
                try:
                    summary["surfaced"] += future.result(timeout=min(self.user_timeout_seconds, remaining))
                    summary["evaluated"] += 1
                except FutureTimeout:
                    cancel_event.set()
                    future.cancel()
                    summary["timed_out"] += 1
                    logger.warning(f"Surfacer evaluation timed out for user {user_id}")
                except Exception as e:
                    summary["failed"] += 1
                    summary["errors"].append({"user_id": user_id, "error": str(e)})
                    logger.error(f"Surfacer evaluation failed for user {user_id}: {e}")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            f"Surfacer pass: evaluated={summary['evaluated']} timed_out={summary['timed_out']} "
            f"failed={summary['failed']} surfaced={summary['surfaced']}"
        )
        return summary
