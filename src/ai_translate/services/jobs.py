"""Job service: schedules resumable background jobs.

Jobs run as background asyncio.Tasks. The input of every job is persisted in
the blob storage so that a later process can read it back by job id (this is
what makes batch imports resumable).
"""

import asyncio
import time
import uuid
from enum import StrEnum
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog

from ai_translate.storage.blob import BlobStorage, Namespace, Retention

logger = structlog.get_logger()

JobHandler = Callable[["Job"], Awaitable[Any]]


class JobStatus(StrEnum):
    """Job status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Job:
    """A scheduled unit of work."""

    def __init__(
        self,
        job_id: str,
        job_type: str,
        input_json: str,
        parent_id: Optional[str] = None,
        delay_seconds: float = 0,
    ):
        self.id = job_id
        self.job_type = job_type
        self.input_json = input_json
        self.parent_id = parent_id
        self.delay_seconds = delay_seconds
        self.status = JobStatus.PENDING
        self.created_at = time.time()
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        self.result: Any = None
        self.error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "parent_id": self.parent_id,
            "status": self.status,
            "delay_seconds": self.delay_seconds,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }


class JobScheduler(Protocol):
    def register(self, job_type: str, handler: JobHandler) -> None:
        ...

    def schedule(
        self,
        job_type: str,
        input_json: str,
        parent_id: Optional[str] = None,
        delay_seconds: float = 0,
    ) -> Job:
        ...

    def get_input(self, job_id: str) -> str:
        ...


def input_key(job_id: str) -> str:
    return f"{job_id}/input"


class InProcessJobScheduler:
    """Runs jobs in the current event loop.

    Handlers are registered per job type. ``schedule`` must be called from
    within a running event loop.
    """

    def __init__(
        self,
        blob_storage: BlobStorage,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.blob_storage = blob_storage
        self._sleep = sleep
        self._handlers: dict[str, JobHandler] = {}
        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def schedule(
        self,
        job_type: str,
        input_json: str,
        parent_id: Optional[str] = None,
        delay_seconds: float = 0,
    ) -> Job:
        """Persist the input and start the job after ``delay_seconds``."""
        if job_type not in self._handlers:
            raise ValueError(f"No handler registered for job type: {job_type}")

        job = Job(str(uuid.uuid4()), job_type, input_json, parent_id, delay_seconds)
        self.blob_storage.put(
            Namespace.JOB_INPUT, input_key(job.id), input_json, Retention.MIN_1_WEEK
        )
        self._jobs[job.id] = job
        self._tasks[job.id] = asyncio.get_running_loop().create_task(self._run(job))
        logger.info(
            "job_scheduled",
            job_id=job.id,
            job_type=job_type,
            parent_id=parent_id,
            delay_seconds=delay_seconds,
        )
        return job

    def get_input(self, job_id: str) -> str:
        """Read the persisted input of a job, possibly scheduled by another process."""
        input_json = self.blob_storage.get(Namespace.JOB_INPUT, input_key(job_id))
        if input_json is None:
            raise KeyError(f"No persisted input for job: {job_id}")
        return input_json

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[Job]:
        """List all jobs, newest first."""
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)

    def children(self, job_id: str) -> list[Job]:
        return [j for j in self._jobs.values() if j.parent_id == job_id]

    async def cancel(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task and not task.done():
            task.cancel()

    async def join(self) -> None:
        """Wait until no job is running, including jobs scheduled meanwhile."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run(self, job: Job) -> None:
        try:
            if job.delay_seconds > 0:
                await self._sleep(job.delay_seconds)

            job.status = JobStatus.RUNNING
            job.started_at = time.time()
            logger.info("job_started", job_id=job.id, job_type=job.job_type)

            job.result = await self._handlers[job.job_type](job)

            job.status = JobStatus.COMPLETED
            job.completed_at = time.time()
            logger.info("job_completed", job_id=job.id, job_type=job.job_type)

        except asyncio.CancelledError:
            job.status = JobStatus.CANCELLED
            job.completed_at = time.time()
            logger.info("job_cancelled", job_id=job.id)

        except Exception as e:
            job.status = JobStatus.FAILED
            job.completed_at = time.time()
            job.error = str(e)
            logger.exception("job_failed", job_id=job.id, job_type=job.job_type)
