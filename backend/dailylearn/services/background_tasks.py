"""
Background job runner for DailyLearn.

Manual triggers (daily flow, batch answer generation) return immediately;
the work runs on a small thread pool. ``submit`` hands back the Future so
callers that care (tests, the scheduler) can wait for completion.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from dailylearn.database import SessionLocal
from dailylearn.models.models import generate_uuid

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class JobAcknowledgement:
    """Returned by manual triggers before the job has finished."""
    message: str
    job_id: str
    future: Future = field(repr=False)


class JobRunner:
    """Fire-and-forget execution of named jobs on a thread pool."""

    def __init__(self, max_workers: int = 3):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dailylearn-job")

    def submit(self, name: str, func: Callable[..., Any], *args, **kwargs) -> Future:
        job_id = generate_uuid()
        logger.info(f"Job {name} ({job_id}) submitted")

        def run():
            try:
                result = func(*args, **kwargs)
                logger.info(f"Job {name} ({job_id}) finished")
                return result
            except Exception as e:
                logger.exception(f"Job {name} ({job_id}) failed: {e}")
                raise

        future = self._executor.submit(run)
        future.job_id = job_id
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def run_with_session(
    func: Callable[[Session], Any],
    session_factory: Callable[[], Session] = SessionLocal,
) -> Any:
    """Run ``func`` with a fresh session, closing it afterwards."""
    db = session_factory()
    try:
        return func(db)
    finally:
        db.close()


# Global job runner
_job_runner: Optional[JobRunner] = None


def get_job_runner() -> JobRunner:
    """Get or create the global job runner."""
    global _job_runner
    if _job_runner is None:
        _job_runner = JobRunner()
    return _job_runner


def shutdown_job_runner(wait: bool = False) -> None:
    """Stop the global job runner; a later get_job_runner() starts a new one."""
    global _job_runner
    if _job_runner is not None:
        _job_runner.shutdown(wait=wait)
        _job_runner = None
