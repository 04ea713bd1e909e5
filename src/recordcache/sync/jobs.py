"""Ephemeral ledger of background jobs, kept for the lifetime of the process."""

from __future__ import annotations

import itertools
import time
from dataclasses import asdict, dataclass
from typing import Literal

import structlog

log = structlog.get_logger(__name__)

JobStatus = Literal["running", "completed", "failed"]

PRUNE_AGE_SECONDS = 5 * 60


@dataclass
class Job:
    id: str
    type: str
    status: JobStatus
    message: str
    started_at: float
    completed_at: float | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class JobTracker:
    """Records start/complete/fail of jobs; finished jobs expire after 5 minutes."""

    def __init__(self, *, clock=time.time) -> None:
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._ids = itertools.count(1)

    def start_job(self, job_type: str, message: str) -> str:
        self._prune()
        job_id = f"job-{next(self._ids)}"
        self._jobs[job_id] = Job(
            id=job_id,
            type=job_type,
            status="running",
            message=message,
            started_at=self._clock(),
        )
        log.info("job_started", job_id=job_id, type=job_type, message=message)
        return job_id

    def complete_job(self, job_id: str, message: str | None = None) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.status = "completed"
        job.completed_at = self._clock()
        if message:
            job.message = message
        log.info("job_completed", job_id=job_id, type=job.type, message=job.message)

    def fail_job(self, job_id: str, error: str) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.status = "failed"
        job.completed_at = self._clock()
        job.error = error
        log.error("job_failed", job_id=job_id, type=job.type, error=error)

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def recent_jobs(self) -> list[Job]:
        """Return live jobs, newest first."""
        self._prune()
        return sorted(self._jobs.values(), key=lambda j: j.started_at, reverse=True)

    def _prune(self) -> None:
        cutoff = self._clock() - PRUNE_AGE_SECONDS
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
