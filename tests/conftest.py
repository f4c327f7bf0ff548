import sys
import textwrap
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from ytpipe.config import Settings

FAKE_TITLE = 'Fake Title: Test/Video!'
FAKE_PAYLOAD = b'chunk-one-chunk-two'

# Shared by every fake yt-dlp: title and version lookups.
_YT_DLP_PREAMBLE = """\
for arg in "$@"; do
  case "$arg" in
    --get-title) echo '%s'; exit 0 ;;
    --version) echo '2024.01.01-fake'; exit 0 ;;
  esac
done
""" % FAKE_TITLE

YT_DLP_OK = _YT_DLP_PREAMBLE + """\
sleep 0.3
echo '[download]  10.0% of 1.00MiB at 1.00MiB/s ETA 00:01' >&2
printf 'chunk-one-'
echo '[download]  55.5% of 1.00MiB at 1.00MiB/s ETA 00:01' >&2
printf 'chunk-two'
echo '[download] 100.0% of 1.00MiB at 1.00MiB/s ETA 00:00' >&2
exit 0
"""

YT_DLP_FAIL = """\
for arg in "$@"; do
  case "$arg" in
    --version) echo '2024.01.01-fake'; exit 0 ;;
  esac
done
echo '[download]   5.0% of 1.00MiB at 1.00MiB/s ETA 00:09' >&2
echo 'ERROR: [youtube] abc: Video unavailable' >&2
exit 1
"""

YT_DLP_SLOW = _YT_DLP_PREAMBLE + """\
echo '[download]  10.0% of 1.00MiB at 1.00MiB/s ETA 00:09' >&2
printf 'partial'
exec sleep 30
"""

YT_DLP_SLOW_TITLE = """\
for arg in "$@"; do
  case "$arg" in
    --get-title) sleep 0.5; echo 'Late Title'; exit 0 ;;
  esac
done
printf 'late'
exit 0
"""

YT_DLP_REGRESSING = _YT_DLP_PREAMBLE + """\
sleep 0.3
echo '[download]  50.0% of 1.00MiB at 1.00MiB/s ETA 00:01' >&2
printf 'chunk-one-'
echo '[download]  20.0% of 1.00MiB at 1.00MiB/s ETA 00:01' >&2
printf 'chunk-two'
exit 0
"""

FFMPEG_OK = """\
if [ "$1" = "-version" ]; then echo 'ffmpeg version 6.0-fake'; exit 0; fi
exec cat
"""

FFMPEG_LINGER = """\
if [ "$1" = "-version" ]; then echo 'ffmpeg version 6.0-fake'; exit 0; fi
cat
sleep 0.5
exit 0
"""

FFMPEG_FAIL = """\
if [ "$1" = "-version" ]; then echo 'ffmpeg version 6.0-fake'; exit 0; fi
cat > /dev/null
echo 'pipe:0: Invalid data found when processing input' >&2
exit 1
"""


def write_script(directory: Path, name: str, body: str) -> Path:
    path = directory / name
    path.write_text('#!/bin/sh\n' + textwrap.dedent(body))
    path.chmod(0o755)
    return path


@pytest.fixture
def make_tools(tmp_path):
    """Returns a factory that writes fake yt-dlp and ffmpeg scripts."""
    def _make(yt_dlp_body: str = YT_DLP_OK, ffmpeg_body: str = FFMPEG_OK):
        bin_dir = tmp_path / 'bin'
        bin_dir.mkdir(exist_ok=True)
        return write_script(bin_dir, 'yt-dlp', yt_dlp_body), write_script(bin_dir, 'ffmpeg', ffmpeg_body)
    return _make


@pytest.fixture
def make_settings(tmp_path, make_tools):
    """Returns a factory for test Settings pointing at fake tools."""
    def _make(yt_dlp_body: str = YT_DLP_OK, ffmpeg_body: str = FFMPEG_OK, **overrides) -> Settings:
        yt_dlp, ffmpeg = make_tools(yt_dlp_body, ffmpeg_body)
        values = dict(
            yt_dlp_path=yt_dlp,
            ffmpeg_path=ffmpeg,
            persist_jobs=False,
            database_path=tmp_path / 'jobs.db',
            cleanup_grace_seconds=30,
            terminate_timeout_seconds=2,
            title_timeout_seconds=5,
        )
        values.update(overrides)
        return Settings(**values)
    return _make
