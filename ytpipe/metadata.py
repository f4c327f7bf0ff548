"""
Resolves display titles for source URLs using yt-dlp.
"""

import asyncio
import re
import sys
import logging
from pathlib import Path
from typing import List, Tuple

from .constants import FALLBACK_TITLE, MAX_TITLE_LENGTH, SUBPROCESS_CREATION_FLAGS
from .exceptions import ResolutionError

_UNSAFE_TITLE_CHARS = re.compile(r'[^a-zA-Z0-9 ]')


def sanitize_title(raw_title: str) -> str:
    """
    Reduces a title to characters that are safe in file names and headers.

    Args:
        raw_title: The title as reported by yt-dlp.

    Returns:
        Letters, digits and spaces only, capped at MAX_TITLE_LENGTH, or the
        fallback title if nothing usable remains.
    """
    cleaned = _UNSAFE_TITLE_CHARS.sub('', raw_title or '')[:MAX_TITLE_LENGTH].strip()
    return cleaned or FALLBACK_TITLE


class MetadataResolver:
    """
    Looks up a URL's title with a short-lived yt-dlp process.

    `resolve` never raises: any failure is logged and the fallback title is
    returned, so a slow or broken lookup cannot hold up a job.
    """
    def __init__(self, yt_dlp_path: Path, timeout: float = 30.0):
        """
        Initializes the MetadataResolver.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            timeout: Seconds to wait for yt-dlp before giving up.
        """
        self.yt_dlp_path = yt_dlp_path
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    async def _run_command(self, command: List[str]) -> Tuple[str, str]:
        """
        Runs a yt-dlp command to completion.

        Args:
            command: The command and its arguments as a list of strings.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            ResolutionError: On any failure (e.g., timeout, non-zero exit code).
        """
        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
            stdout = stdout_bytes.decode('utf-8', 'replace')
            stderr = stderr_bytes.decode('utf-8', 'replace')
        except FileNotFoundError:
            raise ResolutionError(f"yt-dlp executable not found at: {self.yt_dlp_path}")
        except asyncio.TimeoutError:
            if process and process.returncode is None:
                process.kill()
                await process.wait()
            raise ResolutionError(f"Title lookup timed out after {self.timeout:g}s.")
        except OSError as e:
            raise ResolutionError(f"OS error running yt-dlp: {e}")
        except asyncio.CancelledError:
            if process and process.returncode is None:
                process.kill()
            raise

        if process.returncode != 0:
            raise ResolutionError(self._parse_yt_dlp_error(stderr))

        return stdout, stderr

    async def resolve(self, url: str) -> str:
        """
        Retrieves the sanitized title for a single video URL.

        Args:
            url: The URL of the video.

        Returns:
            The sanitized title, or the fallback title on any failure.
        """
        command = [str(self.yt_dlp_path), '--get-title', '--no-warnings', '--no-playlist', url]
        try:
            stdout, _ = await self._run_command(command)
        except ResolutionError as e:
            self.logger.warning(f"Could not resolve title for {url}: {e}")
            return FALLBACK_TITLE

        lines = [line for line in stdout.splitlines() if line.strip()]
        if not lines:
            self.logger.warning(f"yt-dlp printed no title for {url}")
            return FALLBACK_TITLE
        return sanitize_title(lines[0])
