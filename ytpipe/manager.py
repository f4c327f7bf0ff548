"""
The job lifecycle facade used by the HTTP layer.

`JobManager` creates jobs and starts their supervisors, hands out update
subscriptions and the output stream, answers status queries, and routes every
ending through the cleanup coordinator.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional

from .broadcaster import Broadcaster, Subscription
from .cleanup import CleanupCoordinator
from .config import Settings
from .constants import OUTPUT_CHUNK_SIZE
from .dependencies import ToolLocator
from .exceptions import JobNotFoundError, JobNotReadyError, OutputClaimedError, ServiceBusyError
from .jobs import DownloadJob, STATUS_FAILED, STATUS_INITIALIZING
from .metadata import MetadataResolver
from .pipeline import PipelineLauncher, get_output_format
from .registry import JobRegistry
from .store import JobStore
from .supervisor import JobSupervisor


@dataclass
class OutputStream:
    """A claimed job output: the ffmpeg stdout reader plus response metadata."""
    job_id: str
    reader: asyncio.StreamReader
    content_type: str
    filename: str

    async def iter_chunks(
        self,
        is_disconnected: Callable[[], bool] = lambda: False,
        poll_interval: float = 1.0,
        chunk_size: int = OUTPUT_CHUNK_SIZE,
    ) -> AsyncIterator[bytes]:
        """
        Yields output chunks until EOF.

        While no data is flowing, `is_disconnected` is polled every
        `poll_interval` seconds so a vanished consumer is noticed even when
        the pipeline is stalled.

        Raises:
            ConnectionResetError: If `is_disconnected` reports True.
        """
        while True:
            try:
                chunk = await asyncio.wait_for(self.reader.read(chunk_size), timeout=poll_interval)
            except asyncio.TimeoutError:
                if is_disconnected():
                    raise ConnectionResetError(f"Output consumer of job {self.job_id} disconnected")
                continue
            if not chunk:
                return
            yield chunk


class JobManager:
    """Creates, exposes, and retires download jobs."""
    def __init__(self, settings: Settings, store: Optional[JobStore] = None, tools: Optional[ToolLocator] = None):
        """
        Initializes the JobManager.

        Args:
            settings: The validated service settings.
            store: Optional persistence mirror for job metadata.
            tools: Locates yt-dlp and ffmpeg; built from settings when omitted.
        """
        self.settings = settings
        self.store = store
        self.logger = logging.getLogger(__name__)
        self.tools = tools or ToolLocator(settings.yt_dlp_path, settings.ffmpeg_path)
        self.registry = JobRegistry()
        self.broadcaster = Broadcaster()
        self.launcher = PipelineLauncher(
            self.tools.resolved_yt_dlp(),
            self.tools.resolved_ffmpeg(),
            audio_bitrate=settings.audio_bitrate,
            terminate_timeout=settings.terminate_timeout_seconds,
        )
        self.resolver = MetadataResolver(self.tools.resolved_yt_dlp(), timeout=settings.title_timeout_seconds)
        self.coordinator = CleanupCoordinator(
            self.registry, self.broadcaster, store, terminate_timeout=settings.terminate_timeout_seconds)

    async def start(self):
        """Opens the store, retires records from a previous run, and logs tool versions."""
        if self.store:
            await self.store.open()
            await self.store.mark_interrupted()
            await self.store.prune(self.settings.persisted_job_retention_seconds)
        for tool, version in (await self.tools.get_versions()).items():
            self.logger.info(f"{tool} version: {version}")

    async def shutdown(self):
        """Stops every job and closes the store."""
        self.logger.info(f"Shutting down; cleaning up {len(self.registry)} job(s)...")
        await self.coordinator.shutdown()
        if self.store:
            await self.store.close()

    def active_job_count(self) -> int:
        """Jobs whose pipelines have not reached a terminal state."""
        return sum(1 for job_id in self.registry.job_ids() if not self.registry.get(job_id).is_terminal)

    async def create_job(self, url: str, fmt: str) -> DownloadJob:
        """
        Registers a job and starts its pipeline in the background.

        Args:
            url: A source URL already validated by the caller.
            fmt: The requested output format key.

        Returns:
            The new job; its title is the fallback until the resolver reports.

        Raises:
            InvalidFormatError: If the format is not supported.
            ServiceBusyError: If max_concurrent_jobs jobs are already running.
        """
        fmt = (fmt or 'mp3').lower()
        get_output_format(fmt)
        if self.active_job_count() >= self.settings.max_concurrent_jobs:
            raise ServiceBusyError("Too many downloads in progress. Please try again later.")

        job = await self.registry.create(url, fmt)
        if self.store:
            self.store.save(job.snapshot())

        supervisor = JobSupervisor(
            job,
            self.launcher,
            self.resolver,
            self.broadcaster,
            store=self.store,
            cleanup_grace=self.settings.cleanup_grace_seconds,
            claim_timeout=self.settings.output_claim_timeout_seconds,
            terminate_timeout=self.settings.terminate_timeout_seconds,
        )
        job.task = asyncio.create_task(supervisor.run(), name=f'job-{job.job_id}')
        job.task.add_done_callback(functools.partial(self._on_supervisor_done, job.job_id))
        self.logger.info(f"[{job.job_id}] Created {fmt} job for {url}")
        return job

    def _on_supervisor_done(self, job_id: str, task: asyncio.Task):
        if task.cancelled():
            return # Cancelled by a cleanup that is already running
        try:
            delay = task.result()
        except Exception:
            self.logger.exception(f"Supervisor for job {job_id} crashed:")
            delay = 0.0
        if job_id in self.registry:
            reason = 'grace period elapsed' if delay > 0 else 'pipeline could not run'
            self.coordinator.schedule(job_id, delay, reason)

    def subscribe_updates(self, job_id: str) -> Subscription:
        """
        Attaches an observer to a job.

        Raises:
            JobNotFoundError: If the job is unknown or already cleaned up.
        """
        return self.broadcaster.subscribe(self.registry.get(job_id))

    def open_output(self, job_id: str) -> OutputStream:
        """
        Claims the job's transform output for streaming.

        The output is live: it can be claimed once, from the moment the pipeline
        starts until the job is cleaned up.

        Raises:
            JobNotFoundError: If the job is unknown, failed, or has no pipeline.
            JobNotReadyError: If the pipeline has not started yet.
            OutputClaimedError: If another consumer already holds the output.
        """
        job = self.registry.get(job_id)
        if job.status == STATUS_FAILED:
            raise JobNotFoundError(f"Job {job_id} failed: {job.error}")
        if not job.has_pipeline or job.transform_process.stdout is None:
            if job.status == STATUS_INITIALIZING:
                raise JobNotReadyError(f"Job status: {job.status}")
            raise JobNotFoundError(f"Job {job_id} not found or not started")
        if job.output_claimed:
            raise OutputClaimedError(f"Output of job {job_id} is already being downloaded")

        job.output_claimed = True
        job.output_reading = True
        output_format = get_output_format(job.format)
        return OutputStream(
            job_id=job_id,
            reader=job.transform_process.stdout,
            content_type=output_format.content_type,
            filename=f"{job.title}.{output_format.extension}",
        )

    def release_output(self, job_id: str, delivered: bool) -> Optional[asyncio.Task]:
        """
        Reports that the output consumer went away.

        Args:
            job_id: The job whose output was being streamed.
            delivered: Whether the stream reached EOF before the consumer left.

        Returns:
            The cleanup task started for an early disconnect, else None.
        """
        if job_id in self.registry:
            self.registry.get(job_id).output_reading = False
        if delivered:
            self.logger.info(f"[{job_id}] Output delivered")
            return None
        self.logger.info(f"[{job_id}] Output consumer disconnected early; cleaning up")
        return self.coordinator.cleanup_soon(job_id, 'output consumer disconnected')

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        """
        Current snapshot of a job, falling back to the persisted record.

        Raises:
            JobNotFoundError: If neither the registry nor the store knows the job.
        """
        if job_id in self.registry:
            return self.registry.get(job_id).snapshot()
        if self.store:
            record = await self.store.get(job_id)
            if record:
                return record
        raise JobNotFoundError(f"Job {job_id} not found")

    async def cleanup(self, job_id: str) -> bool:
        """Tears a job down immediately. Idempotent."""
        return await self.coordinator.cleanup(job_id, 'requested')

    async def tool_versions(self) -> Dict[str, str]:
        return await self.tools.get_versions()
