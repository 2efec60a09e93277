"""
Durable queue of "apply rule to existing mail" jobs, and the worker draining it
"""
import asyncio
import time
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Set, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field

from mailsort.config import Settings
from mailsort.database import FilterJob, get_db_session
from mailsort.database.connection import SessionFactory
from mailsort.database.models import utcnow
from .bulk import BulkApplyResult, BulkRuleApplier

logger = structlog.get_logger()

JobStatus = str  # pending, processing, completed, failed
FINISHED = ('completed', 'failed')


class Job(BaseModel):
    """A queued bulk pass and its outcome"""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    account_id: str = Field(alias='accountId')
    rule_id: str = Field(alias='ruleId')
    status: JobStatus = 'pending'
    created_at: datetime = Field(alias='createdAt')
    started_at: Optional[datetime] = Field(None, alias='startedAt')
    completed_at: Optional[datetime] = Field(None, alias='completedAt')
    error: Optional[str] = None
    result: Optional[BulkApplyResult] = None

    @classmethod
    def from_row(cls, row: FilterJob) -> 'Job':
        result = None
        if row.total is not None:
            result = BulkApplyResult(applied=row.applied, total=row.total, processed=row.processed,
                                     timed_out=bool(row.timed_out))
        return cls(
            id=row.id,
            account_id=row.account_id,
            rule_id=row.rule_id,
            status=row.status,
            created_at=row.created_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            error=row.error,
            result=result,
        )


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:12]}"


class JobQueue:
    """Jobs live in the filter_jobs table; a job is committed before add_job returns"""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def add_job(self, account_id: str, rule_id: str) -> Job:
        """Queue a bulk pass of a rule"""
        with get_db_session(self.session_factory) as db:
            row = FilterJob(id=new_job_id(), account_id=account_id, rule_id=rule_id,
                            status='pending', created_at=utcnow())
            db.add(row)
            db.flush()
            job = Job.from_row(row)
        logger.info("Queued job", job=job.id, account=account_id, rule=rule_id)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with get_db_session(self.session_factory) as db:
            row = db.get(FilterJob, job_id)
            return Job.from_row(row) if row else None

    def get_pending_jobs(self, limit: Optional[int] = None) -> List[Job]:
        """Pending jobs, oldest first"""
        with get_db_session(self.session_factory) as db:
            query = db.query(FilterJob).filter(FilterJob.status == 'pending').order_by(FilterJob.created_at)
            if limit:
                query = query.limit(limit)
            return [Job.from_row(row) for row in query.all()]

    def mark_processing(self, job_id: str) -> bool:
        """Claim a pending job; False if someone else got it first"""
        with get_db_session(self.session_factory) as db:
            claimed = db.query(FilterJob).filter(
                FilterJob.id == job_id,
                FilterJob.status == 'pending',
            ).update({'status': 'processing', 'started_at': utcnow()}, synchronize_session=False)
        return claimed == 1

    def mark_completed(self, job_id: str, result: BulkApplyResult) -> None:
        self._finish(job_id, 'completed', applied=result.applied, total=result.total,
                     processed=result.processed, timed_out=result.timed_out)

    def mark_failed(self, job_id: str, error: str) -> None:
        self._finish(job_id, 'failed', error=error)

    def _finish(self, job_id: str, status: str, **values) -> None:
        with get_db_session(self.session_factory) as db:
            row = db.get(FilterJob, job_id)
            if row is None:
                logger.warning("Job vanished before it could be finished", job=job_id)
                return
            row.status = status
            row.completed_at = utcnow()
            for name, value in values.items():
                setattr(row, name, value)

    def requeue_stale(self, max_age: float) -> int:
        """Put jobs stuck in processing for more than `max_age` seconds back to pending"""
        cutoff = utcnow() - timedelta(seconds=max_age)
        with get_db_session(self.session_factory) as db:
            count = db.query(FilterJob).filter(
                FilterJob.status == 'processing',
                FilterJob.started_at < cutoff,
            ).update({'status': 'pending', 'started_at': None}, synchronize_session=False)
        if count:
            logger.warning("Requeued stale jobs", count=count)
        return count

    def cleanup_old_jobs(self, max_age_days: int = 7) -> int:
        """Delete finished jobs older than `max_age_days`; pending ones are kept"""
        cutoff = utcnow() - timedelta(days=max_age_days)
        with get_db_session(self.session_factory) as db:
            count = db.query(FilterJob).filter(
                FilterJob.status.in_(FINISHED),
                FilterJob.completed_at < cutoff,
            ).delete(synchronize_session=False)
        logger.debug("Cleaned up old jobs", count=count)
        return count


class JobWorker:
    """Hands queued jobs to the bulk applier, one at a time.

    A job whose rule already has a pass running stays pending and is
    picked up by a later drain.
    """

    CLEANUP_INTERVAL = 24 * 60 * 60

    def __init__(self, queue: JobQueue, applier: BulkRuleApplier, settings: Optional[Settings] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.queue = queue
        self.applier = applier
        self.settings = settings or Settings()
        self.clock = clock
        self._in_flight: Set[Tuple[str, str]] = set()
        self._stopped = asyncio.Event()
        self._last_cleanup: Optional[float] = None

    async def run_pending(self) -> List[Job]:
        """Drain the pending jobs; returns the jobs this call finished"""
        finished = []
        for job in self.queue.get_pending_jobs():
            key = (job.account_id, job.rule_id)
            if key in self._in_flight:
                logger.debug("Rule already has a pass running, leaving job queued", job=job.id, rule=job.rule_id)
                continue
            if not self.queue.mark_processing(job.id):
                continue

            self._in_flight.add(key)
            log = logger.bind(job=job.id, account=job.account_id, rule=job.rule_id)
            try:
                result = await self.applier.apply(job.rule_id, job.account_id)
                self.queue.mark_completed(job.id, result)
                log.info("Job completed", applied=result.applied, total=result.total, timed_out=result.timed_out)
            except Exception as e:
                self.queue.mark_failed(job.id, str(e))
                log.error("Job failed", error=str(e))
            finally:
                self._in_flight.discard(key)
            finished.append(self.queue.get_job(job.id))
        return finished

    async def run(self) -> None:
        """Poll the queue until stop() is called"""
        self._stopped.clear()
        self.queue.requeue_stale(self.settings.job_stale_after)
        while not self._stopped.is_set():
            try:
                await self.run_pending()
                self._maybe_cleanup()
            except Exception as e:
                logger.error("Job worker pass failed", error=str(e))
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.settings.job_poll_interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()

    def _maybe_cleanup(self) -> None:
        now = self.clock()
        if self._last_cleanup is not None and now - self._last_cleanup < self.CLEANUP_INTERVAL:
            return
        self._last_cleanup = now
        self.queue.cleanup_old_jobs(self.settings.job_retention_days)
