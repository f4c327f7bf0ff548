"""Reclaims a job's processes, observers, and records."""
import asyncio
import logging
from typing import Dict, Optional, Set

from .broadcaster import Broadcaster
from .constants import OUTPUT_CHUNK_SIZE
from .pipeline import terminate_process
from .registry import JobRegistry
from .store import JobStore


class CleanupCoordinator:
    """
    Tears jobs down exactly once, whatever triggered it.

    `cleanup` may be called any number of times, concurrently, for the same
    job: only the caller that removes the job from the registry does the work,
    the rest return False.
    """
    def __init__(self, registry: JobRegistry, broadcaster: Broadcaster, store: Optional[JobStore] = None, terminate_timeout: float = 5.0):
        self.registry = registry
        self.broadcaster = broadcaster
        self.store = store
        self.terminate_timeout = terminate_timeout
        self.logger = logging.getLogger(__name__)
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, job_id: str, delay: float, reason: str = 'grace period elapsed'):
        """Arms a deferred cleanup, replacing any timer already set for the job."""
        self._cancel_timer(job_id)
        if delay <= 0:
            self.cleanup_soon(job_id, reason)
            return
        loop = asyncio.get_running_loop()
        self._timers[job_id] = loop.call_later(delay, self.cleanup_soon, job_id, reason)
        self.logger.debug(f"[{job_id}] Cleanup scheduled in {delay:g}s")

    def cleanup_soon(self, job_id: str, reason: str) -> asyncio.Task:
        """Runs `cleanup` as a tracked background task."""
        task = asyncio.create_task(self.cleanup(job_id, reason), name=f'cleanup-{job_id}')
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def cleanup(self, job_id: str, reason: str = 'requested') -> bool:
        """
        Stops a job's processes, ends its subscriptions and forgets it.

        Args:
            job_id: The job to reclaim.
            reason: Logged, and used as the failure message if the job was still running.

        Returns:
            True if this call performed the cleanup, False if the job was already gone.
        """
        self._cancel_timer(job_id)
        job = await self.registry.remove(job_id)
        if job is None:
            return False

        supervisor = job.task
        if supervisor is not None and not supervisor.done() and supervisor is not asyncio.current_task():
            supervisor.cancel(reason)
            await asyncio.gather(supervisor, return_exceptions=True)

        self.broadcaster.close_job(job_id)
        await asyncio.gather(
            terminate_process(job.retrieval_process, self.terminate_timeout),
            terminate_process(job.transform_process, self.terminate_timeout),
        )
        if job.transform_process is not None and not job.output_reading:
            await self._discard_output(job_id, job.transform_process.stdout)
        job.retrieval_process = None
        job.transform_process = None
        job.task = None
        if self.store:
            self.store.delete(job_id)
        self.logger.info(f"[{job_id}] Cleaned up ({reason}); final status: {job.status}")
        return True

    async def _discard_output(self, job_id: str, reader: Optional[asyncio.StreamReader]):
        """Reads leftover output to EOF so the pipe transport closes with the process."""
        if reader is None:
            return
        try:
            while await asyncio.wait_for(reader.read(OUTPUT_CHUNK_SIZE), timeout=self.terminate_timeout):
                pass
        except asyncio.TimeoutError:
            self.logger.warning(f"[{job_id}] ffmpeg output did not reach EOF after termination")

    async def shutdown(self):
        """Cleans up every live job and waits for pending cleanups."""
        await asyncio.gather(*(self.cleanup(job_id, 'service shutdown') for job_id in self.registry.job_ids()))
        await self.wait_idle()

    async def wait_idle(self):
        """Waits for every cleanup started with `cleanup_soon`."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _cancel_timer(self, job_id: str):
        timer = self._timers.pop(job_id, None)
        if timer:
            timer.cancel()

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")
