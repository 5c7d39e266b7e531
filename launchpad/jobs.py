"""
Deploy job tracking for launchpad.

Each deploy request becomes a DeployJob that runs as a background asyncio
task, so the triggering request is acknowledged immediately while the
per-stage outcome stays queryable afterwards.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StageOutcome:
    """Result of one pipeline stage."""

    name: str
    ok: bool
    message: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "ok": self.ok,
            "message": self.message,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class DeployJob:
    """A single deploy run."""

    id: str
    source_kind: str
    source: str
    run_command: str = ""
    install_dependencies: bool = False
    status: JobStatus = JobStatus.PENDING
    stage: Optional[str] = None
    error: Optional[str] = None
    stages: list[StageOutcome] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def done(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_kind": self.source_kind,
            "source": self.source,
            "run_command": self.run_command,
            "install_dependencies": self.install_dependencies,
            "status": self.status.value,
            "stage": self.stage,
            "error": self.error,
            "stages": [s.to_dict() for s in self.stages],
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": (
                (self.completed_at or datetime.now()) - self.started_at
            ).total_seconds()
            if self.started_at
            else None,
        }


class JobManager:
    """Keeps deploy jobs and their background tasks."""

    def __init__(self, max_completed: int = 20):
        self._jobs: dict[str, DeployJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._max_completed = max_completed

    def create_job(self, source_kind: str, source: str, **kwargs) -> DeployJob:
        job_id = str(uuid.uuid4())[:8]
        job = DeployJob(id=job_id, source_kind=source_kind, source=source, **kwargs)
        self._jobs[job_id] = job
        self._cleanup_old_jobs()
        logger.info(f"Created deploy job {job_id}: {source_kind} {source}")
        return job

    def get_job(self, job_id: str) -> Optional[DeployJob]:
        return self._jobs.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None) -> list[DeployJob]:
        jobs = list(self._jobs.values())
        if status:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def run_async_in_background(self, job: DeployJob, coro_func: Callable, *args) -> asyncio.Task:
        """Schedule coro_func(*args) on the running loop and track it under job."""
        task = asyncio.create_task(coro_func(*args), name=f"deploy-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))
        return task

    async def wait_for(self, job_id: str) -> Optional[DeployJob]:
        """Wait until the job's background task has finished."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._jobs.get(job_id)

    async def cancel_all(self):
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _cleanup_old_jobs(self):
        """Remove old finished jobs to prevent memory growth."""
        finished = [j for j in self._jobs.values() if j.done]
        if len(finished) > self._max_completed:
            finished.sort(key=lambda j: j.completed_at or datetime.min)
            for job in finished[: len(finished) - self._max_completed]:
                del self._jobs[job.id]
