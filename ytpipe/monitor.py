"""Extracts progress and error lines from the diagnostic output of pipeline processes."""
import asyncio
import re
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

from .constants import STDERR_TAIL_LINES

_PERCENT_RE = re.compile(r'(\d+(?:\.\d+)?)%')


def parse_progress(line: str) -> Optional[float]:
    """
    Best-effort percentage extraction from one diagnostic line.

    Args:
        line: A decoded line of yt-dlp output.

    Returns:
        The first "NN.N%" value clamped to [0, 100], or None if the line has none.
    """
    match = _PERCENT_RE.search(line)
    if not match:
        return None
    try:
        percentage = float(match.group(1))
    except ValueError:
        return None
    return max(0.0, min(100.0, percentage))


class ProgressMonitor:
    """
    Consumes a line-oriented diagnostic stream until EOF.

    Percentages go to the `on_progress` callback; the tail of the stream and
    the last "ERROR:" line are kept for failure messages.
    """
    def __init__(self, job_id: str, label: str):
        self.job_id = job_id
        self.label = label
        self.last_error: Optional[str] = None
        self.tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self.logger = logging.getLogger(__name__)

    async def watch(self, stream: asyncio.StreamReader, on_progress: Optional[Callable[[float], Awaitable[None]]] = None):
        """
        Reads `stream` line by line until EOF.

        Args:
            stream: The process's stderr reader.
            on_progress: Called with every percentage found.
        """
        while True:
            try:
                line_bytes = await stream.readline()
            except ValueError:
                # Over-long line; the reader has already discarded it.
                continue
            if not line_bytes: break
            # yt-dlp redraws progress with carriage returns when --newline is ignored.
            for clean_line in line_bytes.decode('utf-8', 'replace').replace('\r', '\n').splitlines():
                clean_line = clean_line.strip()
                if not clean_line: continue
                self.logger.debug(f"[{self.job_id}] {self.label}: {clean_line}")
                self.tail.append(clean_line)

                if clean_line.startswith('ERROR:'):
                    self.last_error = clean_line[6:].strip()
                elif on_progress and (percentage := parse_progress(clean_line)) is not None:
                    await on_progress(percentage)

    def describe_failure(self) -> Optional[str]:
        """The most useful diagnostic for a failed exit, if any output was seen."""
        if self.last_error:
            return self.last_error[:200]
        if self.tail:
            return self.tail[-1][:200]
        return None
