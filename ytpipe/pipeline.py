"""Starts the yt-dlp -> ffmpeg process pair for a job and stops processes."""
import asyncio
import os
import sys
import signal
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, List, Optional

from .constants import OUTPUT_FORMATS, OutputFormat, SUBPROCESS_CREATION_FLAGS
from .exceptions import InvalidFormatError, SpawnError

logger = logging.getLogger(__name__)


def get_output_format(fmt: str) -> OutputFormat:
    """
    Looks up the parameters for a format key.

    Raises:
        InvalidFormatError: If the format is not supported.
    """
    try:
        return OUTPUT_FORMATS[fmt]
    except KeyError:
        raise InvalidFormatError(f"Unsupported format '{fmt}'. Expected one of: {', '.join(OUTPUT_FORMATS)}.")


def describe_exit(name: str, return_code: int) -> str:
    """Human-readable summary of a failed process exit."""
    if return_code < 0:
        try:
            signal_name = signal.Signals(-return_code).name
        except ValueError:
            signal_name = f"signal {-return_code}"
        return f"{name} was killed by {signal_name}"
    return f"{name} failed with code {return_code}"


async def terminate_process(process: Optional[asyncio.subprocess.Process], timeout: float = 5.0) -> None:
    """
    Stops a process and its process group, escalating to a kill after `timeout`.

    Safe to call on processes that already exited or were never started.
    """
    if process is None or process.returncode is not None:
        return
    try:
        if sys.platform == 'win32':
            process.terminate()
        else:
            os.killpg(os.getpgid(process.pid), signal.SIGTERM)
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
        if process.returncode is None:
            logger.warning(f"Graceful shutdown of PID {process.pid} failed: {e!r}. Forcing termination...")
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            pass # Already gone
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"PID {process.pid} did not exit after SIGKILL.")


@dataclass
class Pipeline:
    """The two live processes of one job, fused by an OS pipe."""
    retrieval: asyncio.subprocess.Process
    transform: asyncio.subprocess.Process


class PipelineLauncher:
    """Builds the yt-dlp and ffmpeg commands and starts them as one pipeline."""
    def __init__(self, yt_dlp_path: Path, ffmpeg_path: Path, audio_bitrate: str = '192k', terminate_timeout: float = 5.0):
        """
        Initializes the PipelineLauncher.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            ffmpeg_path: The path to the ffmpeg executable.
            audio_bitrate: Target bitrate for re-encoded audio (e.g. '192k').
            terminate_timeout: Seconds to wait when stopping a half-started pipeline.
        """
        self.yt_dlp_path = yt_dlp_path
        self.ffmpeg_path = ffmpeg_path
        self.audio_bitrate = audio_bitrate
        self.terminate_timeout = terminate_timeout
        self.logger = logging.getLogger(__name__)

    def build_retrieval_command(self, url: str, fmt: str) -> List[str]:
        """Builds the yt-dlp command that writes the selected media to stdout."""
        output_format = get_output_format(fmt)
        return [
            str(self.yt_dlp_path),
            '--newline', '--no-playlist', '--no-part', '--no-warnings',
            '-f', output_format.selector_expression,
            '-o', '-',
            url,
        ]

    def build_transform_command(self, fmt: str) -> List[str]:
        """Builds the ffmpeg command that reads stdin and writes the output container to stdout."""
        output_format = get_output_format(fmt)
        args = [arg.format(audio_bitrate=self.audio_bitrate) for arg in output_format.transform_args]
        return [str(self.ffmpeg_path), '-hide_banner', '-loglevel', 'error', '-i', 'pipe:0', *args, 'pipe:1']

    def _process_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['preexec_fn'] = os.setsid
        return kwargs

    async def launch(self, url: str, fmt: str) -> Pipeline:
        """
        Starts yt-dlp and ffmpeg with yt-dlp's stdout piped into ffmpeg's stdin.

        Args:
            url: The source URL.
            fmt: The output format key.

        Returns:
            The started Pipeline.

        Raises:
            InvalidFormatError: If the format is not supported.
            SpawnError: If either process cannot be started. A retrieval process
                that did start is terminated before raising.
        """
        retrieval_command = self.build_retrieval_command(url, fmt)
        transform_command = self.build_transform_command(fmt)

        read_fd, write_fd = os.pipe()
        try:
            try:
                retrieval = await asyncio.create_subprocess_exec(
                    *retrieval_command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=write_fd,
                    stderr=asyncio.subprocess.PIPE,
                    **self._process_kwargs()
                )
            except OSError as e:
                raise SpawnError(f"yt-dlp could not be started: {e}") from e

            try:
                transform = await asyncio.create_subprocess_exec(
                    *transform_command,
                    stdin=read_fd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    **self._process_kwargs()
                )
            except OSError as e:
                await terminate_process(retrieval, self.terminate_timeout)
                raise SpawnError(f"ffmpeg could not be started: {e}") from e
            except BaseException:
                # Cancelled mid-launch: yt-dlp has no owner yet.
                await terminate_process(retrieval, self.terminate_timeout)
                raise
        finally:
            # The children hold their own copies; ffmpeg only sees EOF once ours are gone.
            os.close(read_fd)
            os.close(write_fd)

        self.logger.debug(f"Started yt-dlp (PID {retrieval.pid}) -> ffmpeg (PID {transform.pid}) for {url}")
        return Pipeline(retrieval=retrieval, transform=transform)
