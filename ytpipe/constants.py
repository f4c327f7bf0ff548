"""
Defines service-wide constants, paths, and the supported output formats.

This module centralizes the user data locations, the fallback values used when
metadata is unavailable, and the per-format parameters for the retrieval and
transform processes.
"""

import sys
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Tuple

# --- Paths ---
APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.ytpipe'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
DATABASE_FILE: Path = USER_DATA_DIR / 'jobs.db'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Job defaults ---
FALLBACK_TITLE = 'download'
MAX_TITLE_LENGTH = 50
OUTPUT_CHUNK_SIZE = 64 * 1024
STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class OutputFormat:
    """
    Parameters for one supported output format.

    Attributes:
        name: The format key clients send (e.g. "mp3").
        extension: File extension of the produced container.
        content_type: MIME type served with the output.
        selectors: yt-dlp format expressions, tried left to right.
        transform_args: ffmpeg output options; "{audio_bitrate}" is filled in at launch.
    """
    name: str
    extension: str
    content_type: str
    selectors: Tuple[str, ...]
    transform_args: Tuple[str, ...]

    @property
    def selector_expression(self) -> str:
        """The selectors joined into one yt-dlp fallback chain."""
        return '/'.join(self.selectors)


OUTPUT_FORMATS: Dict[str, OutputFormat] = {
    'mp3': OutputFormat(
        name='mp3',
        extension='mp3',
        content_type='audio/mpeg',
        selectors=('bestaudio',),
        transform_args=('-vn', '-acodec', 'libmp3lame', '-b:a', '{audio_bitrate}', '-f', 'mp3'),
    ),
    'mp4': OutputFormat(
        name='mp4',
        extension='mp4',
        content_type='video/mp4',
        selectors=('bestvideo[ext=mp4]+bestaudio[ext=m4a]', 'best[ext=mp4]', 'best'),
        # Fragmented MP4 so the muxer never has to seek back in a pipe.
        transform_args=('-c:v', 'copy', '-c:a', 'aac', '-movflags', 'frag_keyframe+empty_moov', '-f', 'mp4'),
    ),
}

DEFAULT_ALLOWED_HOSTS: Tuple[str, ...] = (
    'youtube.com',
    'www.youtube.com',
    'm.youtube.com',
    'music.youtube.com',
    'youtu.be',
)
