"""Locates the yt-dlp and FFmpeg executables and reports their versions."""
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .constants import APP_PATH, SUBPROCESS_CREATION_FLAGS


class ToolLocator:
    """Finds yt-dlp and FFmpeg, preferring explicitly configured paths."""

    def __init__(self, yt_dlp_path: Optional[Path] = None, ffmpeg_path: Optional[Path] = None):
        """
        Initializes the ToolLocator.

        Args:
            yt_dlp_path: A configured yt-dlp path that overrides discovery.
            ffmpeg_path: A configured ffmpeg path that overrides discovery.
        """
        self.logger = logging.getLogger(__name__)
        self.yt_dlp_path: Optional[Path] = yt_dlp_path
        self.ffmpeg_path: Optional[Path] = ffmpeg_path

    def find_yt_dlp(self) -> Optional[Path]:
        """Finds the yt-dlp executable."""
        self.yt_dlp_path = self.yt_dlp_path or self._find_executable('yt-dlp')
        return self.yt_dlp_path

    def find_ffmpeg(self) -> Optional[Path]:
        """Finds the ffmpeg executable."""
        self.ffmpeg_path = self.ffmpeg_path or self._find_executable('ffmpeg')
        return self.ffmpeg_path

    def _find_executable(self, name: str) -> Optional[Path]:
        """Finds an executable, preferring one placed next to the project."""
        local_path = APP_PATH / (f'{name}.exe' if sys.platform == 'win32' else name)
        if local_path.exists():
            return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    def resolved_yt_dlp(self) -> Path:
        """The yt-dlp path to launch, falling back to a bare name so spawn errors surface per job."""
        return self.find_yt_dlp() or Path('yt-dlp')

    def resolved_ffmpeg(self) -> Path:
        """The ffmpeg path to launch, falling back to a bare name so spawn errors surface per job."""
        return self.find_ffmpeg() or Path('ffmpeg')

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Asynchronously returns the version of an executable by running it with '--version'."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        try:
            command: List[str] = [str(executable_path)]
            if 'ffmpeg' in executable_path.name.lower():
                command.append('-version')
            else:
                command.append('--version')

            kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
            if sys.platform == 'win32':
                kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

            process = await asyncio.create_subprocess_exec(*command, **kwargs)
            try:
                stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=15)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                return "Version check timed out"

            if process.returncode != 0:
                return "Cannot execute"

            return stdout_bytes.decode('utf-8', 'replace').strip().split('\n')[0]
        except FileNotFoundError:
            return "Not found or no permission"
        except OSError:
            return "Cannot execute"
        except Exception:
            self.logger.exception(f"Error checking version for {executable_path}")
            return "Error checking version"

    async def get_versions(self) -> Dict[str, str]:
        """Versions of both tools, keyed by tool name."""
        yt_dlp_version, ffmpeg_version = await asyncio.gather(
            self.get_version(self.yt_dlp_path),
            self.get_version(self.ffmpeg_path),
        )
        return {'yt-dlp': yt_dlp_version, 'ffmpeg': ffmpeg_version}
