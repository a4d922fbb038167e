"""Job board: status of load jobs as reported to the admin surface."""
import itertools
import logging
import time
from typing import Callable, Optional

from starfield.schemas import JobRecord

logger = logging.getLogger(__name__)


class JobBoard:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._ids = itertools.count(1)
        self._jobs: dict[int, JobRecord] = {}

    def start(self, name: str, job_type: str) -> JobRecord:
        job = JobRecord(id=next(self._ids), name=name, type=job_type, start_time=self._clock())
        self._jobs[job.id] = job
        logger.info("Job %d started: %s", job.id, name)
        return job

    def update(
        self,
        job_id: int,
        progress: Optional[float] = None,
        message: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Optional[JobRecord]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if progress is not None:
            job.progress = max(0.0, min(100.0, progress))
        if message is not None:
            job.message = message
        if status is not None:
            job.status = status
        return job

    def complete(self, job_id: int, message: str = "Done") -> None:
        self.update(job_id, progress=100.0, message=message, status="completed")
        logger.info("Job %d completed: %s", job_id, message)

    def fail(self, job_id: int, message: str) -> None:
        self.update(job_id, message=message, status="error")
        logger.warning("Job %d failed: %s", job_id, message)

    def get(self, job_id: int) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[JobRecord]:
        return sorted(self._jobs.values(), key=lambda j: (j.start_time, j.id), reverse=True)

    def running(self, job_type: Optional[str] = None) -> list[JobRecord]:
        return [
            j for j in self._jobs.values()
            if j.status == "running" and (job_type is None or j.type == job_type)
        ]

    def clear_finished(self) -> int:
        done = [jid for jid, j in self._jobs.items() if j.status != "running"]
        for jid in done:
            del self._jobs[jid]
        return len(done)
