import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.aggregator import Aggregator
from app.batch import BatchAnalyzer
from app.config import (
    AGGREGATION_INTERVAL_SECONDS,
    ANALYSIS_QUEUE_INTERVAL_SECONDS,
    CONTENT_RULES_INTERVAL_SECONDS,
    DOMAIN_REFRESH_INTERVAL_SECONDS,
    RETENTION_INTERVAL_SECONDS,
)
from app.database import utcnow
from app.models import JobRun
from app.retention import RetentionSweeper
from app.rules import generate_content_rules

logger = logging.getLogger(__name__)

DbFactory = Callable[[], Session]


# ---------------------------------------------------------------------------
# Jobs: each takes a session factory and returns a JSON-able summary
# ---------------------------------------------------------------------------

async def aggregate_job(db_factory: DbFactory) -> dict:
    result = await asyncio.to_thread(Aggregator(db_factory).run)
    return result.summary()


async def retention_job(db_factory: DbFactory) -> dict:
    result = await asyncio.to_thread(RetentionSweeper(db_factory).run)
    return result.summary()


async def analysis_queue_job(db_factory: DbFactory) -> dict:
    return await BatchAnalyzer(db_factory).drain_queue()


async def domain_refresh_job(db_factory: DbFactory) -> dict:
    return await BatchAnalyzer(db_factory).refresh_stale()


async def content_rules_job(db_factory: DbFactory) -> dict:
    def _run():
        db = db_factory()
        try:
            return generate_content_rules(db)
        finally:
            db.close()

    result = await asyncio.to_thread(_run)
    return {"created": result["created"]}


@dataclass
class Job:
    name: str
    interval_seconds: int
    func: Callable[[DbFactory], Awaitable[dict]]


# Registry of scheduled jobs: the same entries back POST /jobs/{name}
JOBS: Dict[str, Job] = {
    job.name: job for job in (
        Job("aggregate", AGGREGATION_INTERVAL_SECONDS, aggregate_job),
        Job("retention", RETENTION_INTERVAL_SECONDS, retention_job),
        Job("analysis-queue", ANALYSIS_QUEUE_INTERVAL_SECONDS, analysis_queue_job),
        Job("domain-refresh", DOMAIN_REFRESH_INTERVAL_SECONDS, domain_refresh_job),
        Job("content-rules", CONTENT_RULES_INTERVAL_SECONDS, content_rules_job),
    )
}


def _record_run(db_factory: DbFactory, run: JobRun) -> None:
    db = db_factory()
    try:
        db.add(run)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"[{run.job_name}] Could not record job run: {e}")
    finally:
        db.close()


async def run_job(name: str, db_factory: DbFactory, jobs: Dict[str, Job] = None) -> dict:
    """
    Run one job now and record the outcome. Shared by the scheduler and manual triggers.

    Raises:
        KeyError: unknown job name
    """
    job = (jobs or JOBS)[name]
    started_at = utcnow()
    started = time.monotonic()
    summary, error = None, None

    try:
        summary = await job.func(db_factory)
    except Exception as e:
        # A failed run is recorded; the next scheduled run retries
        logger.exception(f"[{name}] Job failed: {e}")
        error = str(e) or type(e).__name__

    duration = time.monotonic() - started
    overran = duration > job.interval_seconds
    if overran:
        logger.warning(f"[{name}] Run took {duration:.1f}s, longer than its {job.interval_seconds}s window")

    run = JobRun(
        job_name=name,
        started_at=started_at,
        finished_at=utcnow(),
        duration_seconds=round(duration, 3),
        status="failed" if error else "success",
        summary=summary,
        error=error,
        overran=overran,
    )
    outcome = {
        "job": name,
        "status": run.status,
        "started_at": started_at.isoformat(),
        "duration_seconds": run.duration_seconds,
        "summary": summary,
        "error": error,
        "overran": overran,
    }
    _record_run(db_factory, run)
    return outcome


# ---------------------------------------------------------------------------
# Scheduler service: background loops
# ---------------------------------------------------------------------------

class SchedulerService:
    """
    Runs every registered job on its own interval.
    A job's next run starts only after the previous one finished, so runs of the
    same job never overlap within one process.
    """

    def __init__(self, jobs: Dict[str, Job] = None):
        self.jobs = jobs or JOBS

    async def run(self, db_factory: DbFactory):
        """
        Entry point for the background task.
        db_factory: callable that returns a new SQLAlchemy Session (e.g. SessionLocal)
        """
        logger.info(f"SchedulerService started with jobs: {', '.join(self.jobs)}")
        await asyncio.gather(*(self._loop(job, db_factory) for job in self.jobs.values()))

    async def _loop(self, job: Job, db_factory: DbFactory):
        while True:
            await run_job(job.name, db_factory, self.jobs)
            await asyncio.sleep(job.interval_seconds)
