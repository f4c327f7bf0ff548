import asyncio

import pytest

from ytpipe.monitor import ProgressMonitor, parse_progress


@pytest.mark.parametrize('line, expected', [
    ('[download]  42.3% of 3.00MiB at 1.00MiB/s ETA 00:02', 42.3),
    ('[download] 100% of 3.00MiB', 100.0),
    ('[download] Destination: -', None),
    ('250%', 100.0),
])
def test_parse_progress(line, expected):
    assert parse_progress(line) == expected


def _stream(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


@pytest.mark.asyncio
async def test_watch_reports_progress_and_errors():
    seen = []

    async def on_progress(percentage):
        seen.append(percentage)

    monitor = ProgressMonitor('job', 'yt-dlp')
    await monitor.watch(_stream(
        b'[download]   1.0% of 1MiB\r[download]  20.5% of 1MiB\n'
        b'not a progress line\n'
        b'ERROR: [youtube] abc: Video unavailable\n'
    ), on_progress)

    assert seen == [1.0, 20.5]
    assert monitor.last_error == '[youtube] abc: Video unavailable'
    assert monitor.describe_failure() == '[youtube] abc: Video unavailable'


@pytest.mark.asyncio
async def test_describe_failure_uses_tail_without_error_line():
    monitor = ProgressMonitor('job', 'ffmpeg')
    await monitor.watch(_stream(b'pipe:0: Invalid data found when processing input\n'))
    assert monitor.describe_failure() == 'pipe:0: Invalid data found when processing input'


@pytest.mark.asyncio
async def test_describe_failure_is_none_for_silent_stream():
    monitor = ProgressMonitor('job', 'ffmpeg')
    await monitor.watch(_stream(b''))
    assert monitor.describe_failure() is None
