"""In-memory registry of live jobs, the single source of truth for job state."""
import asyncio
import uuid
import logging
from typing import Dict, List, Optional

from .jobs import DownloadJob
from .exceptions import JobNotFoundError


class JobRegistry:
    """
    Owns every live DownloadJob, keyed by job id.

    Callers only ever hold job ids across awaits; once a job is removed every
    lookup fails with JobNotFoundError.
    """
    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._jobs: Dict[str, DownloadJob] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    async def create(self, url: str, fmt: str) -> DownloadJob:
        """
        Registers a new job under a fresh id.

        Args:
            url: The source URL.
            fmt: The validated output format key.

        Returns:
            The new job, in the initializing state.
        """
        async with self._lock:
            job_id = str(uuid.uuid4())
            while job_id in self._jobs:
                job_id = str(uuid.uuid4())
            job = DownloadJob(job_id=job_id, url=url, format=fmt)
            self._jobs[job_id] = job
        self.logger.debug(f"Registered job {job_id} ({fmt}) for {url}")
        return job

    def get(self, job_id: str) -> DownloadJob:
        """
        Raises:
            JobNotFoundError: If no live job has this id.
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def remove(self, job_id: str) -> Optional[DownloadJob]:
        """Removes a job, returning it, or None if it was already gone."""
        async with self._lock:
            return self._jobs.pop(job_id, None)

    def job_ids(self) -> List[str]:
        return list(self._jobs)
