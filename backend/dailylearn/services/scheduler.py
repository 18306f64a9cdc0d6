"""
Cron wiring for the daily pipeline.

    00:00  reset stale streaks
    02:00  nightly AI answer generation
    03:00  invalid push token cleanup
    05:00  daily flow (select, record, notify)

All jobs run on one BackgroundScheduler in the API process. Each job opens
its own session and logs its own failures.
"""

import logging
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from dailylearn.config import get_settings
from dailylearn.services.answer_generator import get_answer_generator
from dailylearn.services.background_tasks import run_with_session
from dailylearn.services.daily_flow import get_daily_flow_service
from dailylearn.services.notification_dispatcher import get_notification_dispatcher

logger = logging.getLogger(__name__)

scheduler: Optional[BackgroundScheduler] = None


def _run_job(name: str, func: Callable) -> None:
    try:
        result = run_with_session(func)
        logger.info(f"Scheduled job {name} finished: {result}")
    except Exception as e:
        logger.exception(f"Scheduled job {name} failed: {e}")


def job_reset_streaks() -> None:
    _run_job("reset_streaks", get_daily_flow_service().reset_stale_streaks)


def job_generate_answers() -> None:
    _run_job("generate_answers", get_answer_generator().nightly_generation)


def job_cleanup_tokens() -> None:
    _run_job("cleanup_tokens", get_notification_dispatcher().cleanup_invalid_tokens)


def job_daily_flow() -> None:
    _run_job("daily_flow", get_daily_flow_service().run_daily_flow)


# (job id, function, hour, minute)
DAILY_JOBS = [
    ("reset_streaks", job_reset_streaks, 0, 0),
    ("generate_answers", job_generate_answers, 2, 0),
    ("cleanup_tokens", job_cleanup_tokens, 3, 0),
    ("daily_flow", job_daily_flow, 5, 0),
]


def resolve_timezone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown APP_TZ '{tz_name}', falling back to UTC")
        return ZoneInfo("UTC")


def build_scheduler(tz_name: Optional[str] = None) -> BackgroundScheduler:
    """Create a scheduler with the daily jobs registered but not started."""
    tz = resolve_timezone(tz_name or get_settings().app_tz)
    sched = BackgroundScheduler(timezone=tz)

    for job_id, func, hour, minute in DAILY_JOBS:
        sched.add_job(
            func,
            CronTrigger(hour=hour, minute=minute, timezone=tz),
            id=job_id,
            name=job_id,
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )

    return sched


def start_scheduler() -> BackgroundScheduler:
    global scheduler
    if scheduler:
        return scheduler

    scheduler = build_scheduler()
    scheduler.start()
    logger.info(f"Daily scheduler started with jobs: {[job.id for job in scheduler.get_jobs()]}")
    return scheduler


def shutdown_scheduler() -> None:
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Daily scheduler stopped")
