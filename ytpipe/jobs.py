"""
Defines the data class for a download job and its status ordering.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from .constants import FALLBACK_TITLE

STATUS_INITIALIZING = 'initializing'
STATUS_DOWNLOADING = 'downloading'
STATUS_PROCESSING = 'processing'
STATUS_COMPLETE = 'complete'
STATUS_FAILED = 'failed'

TERMINAL_STATUSES = frozenset({STATUS_COMPLETE, STATUS_FAILED})

# Both terminal states share the last rank: neither can follow the other.
STATUS_RANK: Dict[str, int] = {
    STATUS_INITIALIZING: 0,
    STATUS_DOWNLOADING: 1,
    STATUS_PROCESSING: 2,
    STATUS_COMPLETE: 3,
    STATUS_FAILED: 3,
}


@dataclass
class DownloadJob:
    """
    Represents a single retrieve-and-transform request.

    Attributes:
        job_id: A unique identifier for the job.
        url: The source URL provided by the client.
        format: The requested output format key ("mp3" or "mp4").
        title: Display title, the fallback until the resolver reports.
        status: The current lifecycle status.
        progress: Percentage in [0, 100], non-decreasing while not terminal.
        error: Failure description, set at most once.
        retrieval_process: The running yt-dlp process, if any.
        transform_process: The running ffmpeg process, if any.
        output_claimed: Whether a consumer has taken the output stream.
        output_reading: Whether that consumer is still reading it.
        created_at: Wall-clock time the job was registered.
        finished_at: Wall-clock time the job became terminal.
        inbox: Events for the job's supervisor task.
        task: The supervisor task that owns this job.
    """
    job_id: str
    url: str
    format: str
    title: str = FALLBACK_TITLE
    status: str = STATUS_INITIALIZING
    progress: float = 0.0
    error: Optional[str] = None
    retrieval_process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    transform_process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    output_claimed: bool = False
    output_reading: bool = False
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    inbox: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def elapsed(self) -> float:
        """Seconds from registration until the job finished, or until now while it runs."""
        return (self.finished_at or time.time()) - self.created_at

    @property
    def has_pipeline(self) -> bool:
        return self.transform_process is not None

    def can_transition(self, new_status: str) -> bool:
        """Whether moving to new_status keeps the lifecycle forward-only."""
        if self.is_terminal:
            return False
        return STATUS_RANK[new_status] > STATUS_RANK[self.status]

    def snapshot(self) -> Dict[str, Any]:
        """The state published to observers and status queries."""
        return {
            'jobId': self.job_id,
            'status': self.status,
            'progress': round(self.progress, 1),
            'error': self.error,
            'title': self.title,
            'format': self.format,
        }
