"""Job processing for docwatch.

Source-sync jobs run on a bounded pool of asyncio workers fed by an in-process
queue. Failed jobs are re-queued with exponential backoff until they run out
of attempts. APScheduler drives the periodic per-source syncs.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR

from config.settings import WorkerSettings

logger = logging.getLogger(__name__)

SOURCE_SYNC_JOB = "source.sync.requested"
DEFAULT_JOB_RETENTION = 500


class JobStatus(str, Enum):
    """Job status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SourceSyncJob:
    """Queue payload for a requested source sync."""
    request_id: str
    source: str
    requested_at: datetime
    attempt: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "source": self.source,
            "requested_at": self.requested_at.isoformat(),
            "attempt": self.attempt,
        }


@dataclass
class JobRecord:
    """Job record for tracking job state."""
    id: str
    source: str
    status: JobStatus
    created_at: datetime
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def add_log(self, message: str):
        """Add a log message with timestamp."""
        timestamp = datetime.now(timezone.utc).isoformat()
        self.logs.append(f"[{timestamp}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        for name in ['created_at', 'started_at', 'completed_at']:
            if data[name]:
                data[name] = data[name].isoformat()
        return data


JobHandler = Callable[[SourceSyncJob], Awaitable[Optional[Dict[str, Any]]]]


def retry_delay(backoff_seconds: float, attempt: int) -> float:
    """Exponential backoff: ``backoff * 2**(attempt - 1)`` for attempt >= 1."""
    return backoff_seconds * (2 ** max(0, attempt - 1))


class JobManager:
    """Runs source-sync jobs with bounded concurrency and at-least-once retries.

    Args:
        handler: Coroutine function processing one job; raising marks the attempt failed
        concurrency: Number of worker tasks
        max_attempts: Attempts per job including the first
        backoff_seconds: Base delay for exponential retry backoff
        job_retention: Finished job records kept for status lookups; older ones are dropped
    """

    def __init__(self, handler: JobHandler, concurrency: int = 3,
                 max_attempts: int = 3, backoff_seconds: float = 3.0,
                 job_retention: int = DEFAULT_JOB_RETENTION):
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.job_retention = max(0, job_retention)
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._pending_retries: List[asyncio.TimerHandle] = []
        self._jobs: Dict[str, JobRecord] = {}
        self._running = False

    @classmethod
    def from_settings(cls, handler: JobHandler, settings: WorkerSettings) -> 'JobManager':
        return cls(handler, concurrency=settings.concurrency,
                   max_attempts=settings.max_attempts,
                   backoff_seconds=settings.backoff_seconds,
                   job_retention=settings.job_retention)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start worker tasks and the scheduler."""
        if self._running:
            return

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"source-sync-worker-{index}")
            for index in range(self.concurrency)
        ]

        self.scheduler = AsyncIOScheduler(job_defaults={'coalesce': True, 'max_instances': 1})
        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.start()

        self._running = True
        logger.info(f"Job manager started with {self.concurrency} workers")

    async def shutdown(self):
        """Stop the scheduler, cancel pending retries and workers."""
        self._running = False
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        for handle in self._pending_retries:
            handle.cancel()
        self._pending_retries = []

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Job manager shutdown complete")

    async def join(self):
        """Wait until every queued job (including retries already re-queued) is processed."""
        if self._queue is not None:
            await self._queue.join()

    def _on_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def enqueue(self, job: SourceSyncJob) -> str:
        """Queue a job; the request id doubles as the job id.

        Safe to call from other threads (APScheduler runs plain functions in
        its executor); the queue itself is only touched on the manager's loop.
        """
        if not self._running or self._queue is None:
            raise RuntimeError("Job manager not started")

        if self._on_loop():
            self._put(job)
        else:
            self._loop.call_soon_threadsafe(self._put, job)
        return job.request_id

    def _put(self, job: SourceSyncJob) -> None:
        record = self._jobs.get(job.request_id)
        if record is None:
            record = JobRecord(
                id=job.request_id,
                source=job.source,
                status=JobStatus.QUEUED,
                created_at=datetime.now(timezone.utc),
            )
            self._jobs[job.request_id] = record
        record.add_log(f"Queued attempt {job.attempt + 1}")

        self._queue.put_nowait(job)
        logger.info(f"Enqueued {SOURCE_SYNC_JOB} job {job.request_id} for {job.source}")
        logger.debug(f"Job payload: {job.to_dict()}")

    def get_job_status(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[JobRecord]:
        """List jobs, newest first, optionally filtered by status."""
        jobs = [job for job in list(self._jobs.values()) if status is None or job.status == status]
        jobs.sort(key=lambda x: x.created_at, reverse=True)
        return jobs[:limit]

    def schedule_periodic_syncs(self, sources: Iterable[Any],
                                request_sync: Callable[[str], Any]) -> List[str]:
        """Add one interval job per source using its ``poll_interval_minutes``.

        Args:
            sources: Objects with ``id`` and ``poll_interval_minutes``
            request_sync: Called with the source id on every tick

        Returns:
            Scheduler job ids
        """
        if not self._running or self.scheduler is None:
            raise RuntimeError("Job manager not started")

        job_ids = []
        for source in sources:
            job_id = f"periodic_sync_{source.id}"
            self.scheduler.add_job(
                request_sync,
                'interval',
                minutes=max(1, int(source.poll_interval_minutes)),
                args=[source.id],
                id=job_id,
                replace_existing=True,
            )
            job_ids.append(job_id)
            logger.info(f"Scheduled periodic sync for {source.id} every {source.poll_interval_minutes} minutes")
        return job_ids

    async def _worker(self, index: int):
        while True:
            job = await self._queue.get()
            try:
                await self._execute_job(job)
                self._prune_finished()
            finally:
                self._queue.task_done()

    async def _execute_job(self, job: SourceSyncJob):
        """Run one attempt of a job and schedule a retry on failure."""
        record = self._jobs[job.request_id]
        record.status = JobStatus.RUNNING
        record.attempts = job.attempt + 1
        record.started_at = datetime.now(timezone.utc)
        record.add_log(f"Attempt {record.attempts} started")

        try:
            result = await self.handler(job)
        except Exception as e:
            record.error = str(e)
            record.add_log(f"Attempt {record.attempts} failed: {e}")

            if record.attempts < self.max_attempts:
                delay = retry_delay(self.backoff_seconds, record.attempts)
                record.status = JobStatus.RETRYING
                logger.warning(f"Job {job.request_id} failed (attempt {record.attempts}/{self.max_attempts}), "
                               f"retrying in {delay:.1f}s: {e}")
                self._schedule_retry(SourceSyncJob(job.request_id, job.source, job.requested_at,
                                                   attempt=job.attempt + 1), delay)
            else:
                record.status = JobStatus.FAILED
                record.completed_at = datetime.now(timezone.utc)
                logger.error(f"Job {job.request_id} failed after {record.attempts} attempts: {e}")
            return

        record.status = JobStatus.DONE
        record.completed_at = datetime.now(timezone.utc)
        record.result = result
        record.error = None
        record.add_log("Job completed successfully")

    def _prune_finished(self) -> None:
        """Drop the oldest finished job records beyond the retention count."""
        finished = [record for record in self._jobs.values()
                    if record.status in (JobStatus.DONE, JobStatus.FAILED)]
        excess = len(finished) - self.job_retention
        if excess <= 0:
            return
        finished.sort(key=lambda record: record.completed_at or record.created_at)
        for record in finished[:excess]:
            del self._jobs[record.id]
        logger.debug(f"Pruned {excess} finished job records")

    def _schedule_retry(self, job: SourceSyncJob, delay: float):
        loop = asyncio.get_running_loop()
        handle = None

        def requeue():
            if handle in self._pending_retries:
                self._pending_retries.remove(handle)
            if self._running:
                self.enqueue(job)

        handle = loop.call_later(delay, requeue)
        self._pending_retries.append(handle)

    @property
    def pending_retries(self) -> int:
        return len(self._pending_retries)

    def _job_executed(self, event):
        """Handle scheduler job execution event."""
        logger.debug(f"Scheduled job {event.job_id} executed")

    def _job_error(self, event):
        """Handle scheduler job error event."""
        logger.error(f"Scheduled job {event.job_id} failed: {event.exception}")
