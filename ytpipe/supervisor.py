"""
Runs one job from launch to process exit.

A JobSupervisor task is the only writer of its job's state. Everything that
happens asynchronously (title lookup, progress lines, process exits, the
unclaimed-output timer) is posted to the job's inbox as an `(event, value)`
tuple and applied here in arrival order.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from .broadcaster import Broadcaster
from .exceptions import PipelineError, SpawnError
from .jobs import (
    DownloadJob, STATUS_DOWNLOADING, STATUS_PROCESSING, STATUS_COMPLETE, STATUS_FAILED,
)
from .metadata import MetadataResolver
from .monitor import ProgressMonitor
from .pipeline import PipelineLauncher, describe_exit, terminate_process
from .store import JobStore

RETRIEVAL = 'retrieval'
TRANSFORM = 'transform'
_TOOL_NAMES = {RETRIEVAL: 'yt-dlp', TRANSFORM: 'ffmpeg'}


class JobSupervisor:
    """Owns a job's pipeline and applies every state transition for it."""
    def __init__(
        self,
        job: DownloadJob,
        launcher: PipelineLauncher,
        resolver: MetadataResolver,
        broadcaster: Broadcaster,
        store: Optional[JobStore] = None,
        cleanup_grace: float = 60.0,
        claim_timeout: float = 600.0,
        terminate_timeout: float = 5.0,
    ):
        """
        Initializes the JobSupervisor.

        Args:
            job: The registered job to run.
            launcher: Starts the yt-dlp -> ffmpeg pipeline.
            resolver: Looks up the display title.
            broadcaster: Receives every published snapshot.
            store: Optional persistence mirror.
            cleanup_grace: Seconds the finished job stays queryable.
            claim_timeout: Seconds to wait for an output consumer before failing.
            terminate_timeout: Seconds to wait for a process to stop before killing it.
        """
        self.job = job
        self.launcher = launcher
        self.resolver = resolver
        self.broadcaster = broadcaster
        self.store = store
        self.cleanup_grace = cleanup_grace
        self.claim_timeout = claim_timeout
        self.terminate_timeout = terminate_timeout
        self.logger = logging.getLogger(__name__)
        self._pending_exits: Set[str] = set()
        self._helpers: Set[asyncio.Task] = set()
        self._watchers: Dict[str, asyncio.Task] = {}
        self._monitors: Dict[str, ProgressMonitor] = {}
        self._title_resolved = False

    async def run(self) -> float:
        """
        Launches the pipeline and processes inbox events until both processes exit.

        Returns:
            Seconds to wait before the job is cleaned up.
        """
        job = self.job
        self._spawn_helper(self._resolve_title(), name=f'title-{job.job_id}')
        claim_timer: Optional[asyncio.TimerHandle] = None
        try:
            try:
                pipeline = await self.launcher.launch(job.url, job.format)
            except SpawnError as e:
                self.logger.error(f"[{job.job_id}] {e}")
                self._fail(str(e))
                return 0.0

            job.retrieval_process = pipeline.retrieval
            job.transform_process = pipeline.transform
            self._pending_exits = {RETRIEVAL, TRANSFORM}
            self._set_status(STATUS_DOWNLOADING)
            self.logger.info(f"[{job.job_id}] Pipeline started for {job.url} ({job.format})")

            self._watchers[RETRIEVAL] = self._spawn_helper(
                self._watch_process(RETRIEVAL, pipeline.retrieval, self._post_progress), name=f'retrieval-{job.job_id}')
            self._watchers[TRANSFORM] = self._spawn_helper(
                self._watch_process(TRANSFORM, pipeline.transform), name=f'transform-{job.job_id}')
            claim_timer = asyncio.get_running_loop().call_later(
                self.claim_timeout, job.inbox.put_nowait, ('claim_timeout', None))

            handler_map: Dict[str, Callable[[Any], Awaitable[None]]] = {
                'title': self._handle_title,
                'progress': self._handle_progress,
                'exit': self._handle_exit,
                'claim_timeout': self._handle_claim_timeout,
            }
            while self._pending_exits:
                msg_type, value = await job.inbox.get()
                handler = handler_map.get(msg_type)
                if handler:
                    await handler(value)
                else:
                    self.logger.warning(f"[{job.job_id}] Unhandled job event type: {msg_type}")
            return self.cleanup_grace
        except asyncio.CancelledError as e:
            self._fail(f"Job cancelled: {e.args[0]}" if e.args and e.args[0] else "Job cancelled")
            raise
        except Exception:
            self.logger.exception(f"Unexpected error while supervising job {job.job_id}")
            self._fail("An unexpected error occurred while processing the job")
            return 0.0
        finally:
            if claim_timer: claim_timer.cancel()
            for task in self._helpers:
                task.cancel()

    # --- State transitions (only ever called from run) ---

    def _publish(self):
        snapshot = self.job.snapshot()
        self.broadcaster.publish(self.job.job_id, snapshot)
        if self.store:
            self.store.save(snapshot)

    def _set_status(self, status: str) -> bool:
        job = self.job
        if not job.can_transition(status):
            self.logger.debug(f"[{job.job_id}] Ignoring transition {job.status} -> {status}")
            return False
        job.status = status
        if job.is_terminal:
            job.finished_at = time.time()
            self.logger.info(f"[{job.job_id}] Job {status} after {job.elapsed:.1f}s")
        self._publish()
        return True

    def _fail(self, error: str):
        job = self.job
        if job.is_terminal:
            return
        if job.error is None:
            job.error = error
        self.logger.warning(f"[{job.job_id}] Job failed: {job.error}")
        self._set_status(STATUS_FAILED)

    # --- Event handlers ---

    async def _handle_title(self, title: str):
        if self._title_resolved or self.job.is_terminal:
            return
        self._title_resolved = True
        if title != self.job.title:
            self.job.title = title
            self._publish()

    async def _handle_progress(self, percentage: float):
        job = self.job
        if job.is_terminal or percentage <= job.progress:
            return
        job.progress = percentage
        self._publish()

    async def _handle_exit(self, value: Tuple[str, int]):
        name, return_code = value
        self._pending_exits.discard(name)
        self.logger.debug(f"[{self.job.job_id}] {_TOOL_NAMES[name]} exited with code {return_code}")
        job = self.job
        try:
            self._check_exit(name, return_code)
            if name == RETRIEVAL:
                self._set_status(STATUS_PROCESSING)
            else:
                await self._on_transform_success()
        except PipelineError as e:
            self._fail(str(e))
            await asyncio.gather(
                terminate_process(job.retrieval_process, self.terminate_timeout),
                terminate_process(job.transform_process, self.terminate_timeout),
            )

    async def _on_transform_success(self):
        job = self.job
        # ffmpeg also exits cleanly on a truncated input, so success needs yt-dlp's verdict too.
        retrieval_code = await self._await_retrieval_exit()
        if retrieval_code is not None:
            self._check_exit(RETRIEVAL, retrieval_code)
        if not job.is_terminal:
            job.progress = 100.0
            self._set_status(STATUS_COMPLETE)
            self.logger.info(f"[{job.job_id}] Job complete: '{job.title}.{job.format}'")

    async def _handle_claim_timeout(self, _):
        job = self.job
        if job.output_claimed or job.is_terminal:
            return
        self._fail(f"Output was not requested within {self.claim_timeout:g} seconds")
        await asyncio.gather(
            terminate_process(job.retrieval_process, self.terminate_timeout),
            terminate_process(job.transform_process, self.terminate_timeout),
        )

    # --- Helpers ---

    async def _await_retrieval_exit(self) -> Optional[int]:
        """Waits briefly for yt-dlp to finish; returns its exit code, or None if it had to be stopped."""
        watcher = self._watchers.get(RETRIEVAL)
        if watcher is None:
            return None
        try:
            return await asyncio.wait_for(asyncio.shield(watcher), timeout=self.terminate_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"[{self.job.job_id}] yt-dlp still running after ffmpeg finished; stopping it.")
            await terminate_process(self.job.retrieval_process, self.terminate_timeout)
            return None

    def _check_exit(self, name: str, return_code: int):
        """
        Raises:
            PipelineError: If the process exited non-zero or was killed by a signal.
        """
        if return_code == 0:
            return
        message = describe_exit(_TOOL_NAMES[name], return_code)
        monitor = self._monitors.get(name)
        detail = monitor.describe_failure() if monitor else None
        raise PipelineError(f"{message}: {detail}" if detail else message)

    def _spawn_helper(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._helpers.add(task)
        task.add_done_callback(self._helper_done)
        return task

    def _helper_done(self, task: asyncio.Task):
        self._helpers.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass # Normal cancellation
        except Exception:
            self.logger.exception(f"Exception in job helper task {task.get_name()}:")

    async def _post_progress(self, percentage: float):
        self.job.inbox.put_nowait(('progress', percentage))

    async def _resolve_title(self):
        title = await self.resolver.resolve(self.job.url)
        self.job.inbox.put_nowait(('title', title))

    async def _watch_process(self, name: str, process: Any, on_progress=None) -> int:
        monitor = ProgressMonitor(self.job.job_id, _TOOL_NAMES[name])
        self._monitors[name] = monitor
        if process.stderr is not None:
            await monitor.watch(process.stderr, on_progress)
        return_code = await process.wait()
        self.job.inbox.put_nowait(('exit', (name, return_code)))
        return return_code
