"""
Background batch jobs.

Each accepted batch gets a BatchJob that moves through

    queued -> running -> completed | failed

The job runs as a tracked asyncio task. Any failure inside the task is
written onto the job as its terminal `failed` state. Finished jobs stay
readable for a retention window and are evicted after it.
"""

import asyncio
import enum
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import Field

from concierge.calling import ProviderCallingService
from concierge.errors import NotificationError
from concierge.logging_config import get_logger
from concierge.models import (
    Backend,
    BatchCallRequest,
    BatchCallResult,
    CallRequest,
    CamelModel,
    RecommendationResponse,
)
from concierge.notifications import SmsNotifier
from concierge.recommendations import RecommendationEngine

logger = get_logger(__name__)

DEFAULT_RETENTION_SECONDS = 60 * 60


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_ALLOWED = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BatchJob(CamelModel):
    job_id: str
    status: JobStatus = JobStatus.QUEUED
    total: int
    service_request_id: Optional[str] = None
    backend: Optional[Backend] = None
    created_at: datetime = Field(default_factory=_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[BatchCallResult] = None
    recommendations: Optional[RecommendationResponse] = None
    notification_sid: Optional[str] = None
    notification_error: Optional[str] = None
    error: Optional[str] = None


class BatchJobManager:
    def __init__(
        self,
        calling: ProviderCallingService,
        engine: RecommendationEngine,
        notifier: Optional[SmsNotifier] = None,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.calling = calling
        self.engine = engine
        self.notifier = notifier
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._jobs: dict[str, BatchJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        # job id -> clock time the job reached a terminal state
        self._finished: dict[str, float] = {}

    def get(self, job_id: str) -> Optional[BatchJob]:
        self.sweep()
        return self._jobs.get(job_id)

    def sweep(self) -> int:
        """Evict finished jobs older than the retention window. Returns the count removed."""
        cutoff = self._clock() - self.retention_seconds
        expired = [job_id for job_id, finished in self._finished.items() if finished <= cutoff]
        for job_id in expired:
            del self._finished[job_id]
            self._jobs.pop(job_id, None)
        if expired:
            logger.info("batch_jobs_evicted", count=len(expired), remaining=len(self._jobs))
        return len(expired)

    def _transition(self, job_id: str, status: JobStatus, **fields) -> BatchJob:
        job = self._jobs[job_id]
        if status not in _ALLOWED[job.status]:
            raise ValueError(f"Job {job_id}: illegal transition {job.status.value} -> {status.value}")
        job = job.model_copy(update={"status": status, **fields})
        self._jobs[job_id] = job
        if status in (JobStatus.COMPLETED, JobStatus.FAILED):
            self._finished[job_id] = self._clock()
        logger.info("batch_job_transition", job_id=job_id, status=status.value)
        return job

    def submit(self, batch: BatchCallRequest) -> BatchJob:
        """
        Accept a batch and start it in the background.

        Raises:
            CallRequestValidationError: a provider phone can't be normalized
        """
        requests = batch.to_call_requests()
        self.sweep()
        job = BatchJob(
            job_id=str(uuid.uuid4()),
            total=len(requests),
            service_request_id=batch.service_request_id,
        )
        self._jobs[job.job_id] = job

        task = asyncio.create_task(self._run(job.job_id, requests, batch))
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda t, job_id=job.job_id: self._on_done(job_id, t))
        logger.info("batch_job_queued", job_id=job.job_id, total=job.total)
        return job

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is not None and job.status in (JobStatus.QUEUED, JobStatus.RUNNING):
            # Cancelled before or while running
            error = "Job cancelled" if task.cancelled() else "Job ended without a result"
            self._transition(job_id, JobStatus.FAILED, finished_at=_now(), error=error)

    async def _run(self, job_id: str, requests: list[CallRequest], batch: BatchCallRequest) -> None:
        self._transition(job_id, JobStatus.RUNNING, started_at=_now())
        try:
            result = await self.calling.call_providers(requests, max_concurrent=batch.max_concurrent)
            recommendations = await self.engine.recommend(result.results, batch.user_criteria)
        except Exception as e:
            logger.exception("batch_job_failed", job_id=job_id)
            self._transition(job_id, JobStatus.FAILED, finished_at=_now(), error=str(e))
            return

        sid = None
        notification_error = None
        if batch.notify_phone and self.notifier is not None:
            try:
                sid = await self.notifier.notify_recommendations(batch.notify_phone, recommendations)
            except NotificationError as e:
                logger.warning("batch_job_notification_failed", job_id=job_id, error=str(e))
                notification_error = str(e)

        self._transition(
            job_id,
            JobStatus.COMPLETED,
            finished_at=_now(),
            backend=result.backend,
            result=result,
            recommendations=recommendations,
            notification_sid=sid,
            notification_error=notification_error,
        )

    async def drain(self) -> None:
        """Wait for every running job to reach a terminal state."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
