import asyncio
import contextlib

import pytest

from ytpipe.exceptions import (
    InvalidFormatError, JobNotFoundError, JobNotReadyError, OutputClaimedError, ServiceBusyError,
)
from ytpipe.manager import JobManager
from ytpipe.store import INTERRUPTED_ERROR, JobStore

from conftest import (
    FAKE_PAYLOAD, FFMPEG_FAIL, FFMPEG_LINGER, YT_DLP_FAIL, YT_DLP_REGRESSING, YT_DLP_SLOW,
)

URL = 'https://www.youtube.com/watch?v=abc'


@contextlib.asynccontextmanager
async def running_manager(settings, store=None):
    manager = JobManager(settings, store=store)
    await manager.start()
    try:
        yield manager
    finally:
        await manager.shutdown()


async def collect(subscription, timeout=10):
    async def _drain():
        return [snapshot async for snapshot in subscription]
    return await asyncio.wait_for(_drain(), timeout)


async def wait_for_status(subscription, status, timeout=10):
    async def _wait():
        async for snapshot in subscription:
            if snapshot['status'] == status:
                return snapshot
        raise AssertionError(f"stream ended before status {status}")
    return await asyncio.wait_for(_wait(), timeout)


async def wait_until_gone(manager, job_id, timeout=10):
    async def _wait():
        while job_id in manager.registry:
            await asyncio.sleep(0.05)
    await asyncio.wait_for(_wait(), timeout)


@pytest.mark.asyncio
async def test_create_job_returns_immediately_and_title_arrives_later(make_settings):
    async with running_manager(make_settings()) as manager:
        job = await manager.create_job(URL, 'mp3')
        assert job.title == 'download'
        assert job.status == 'initializing'

        updates = await collect(manager.subscribe_updates(job.job_id))

    assert updates[0]['title'] == 'download'
    assert 'Fake Title TestVideo' in [u['title'] for u in updates]
    statuses = [u['status'] for u in updates]
    assert statuses[-1] == 'complete'
    assert statuses.index('downloading') < statuses.index('complete')
    assert updates[-1]['progress'] == 100.0
    progress = [u['progress'] for u in updates]
    assert progress == sorted(progress)


@pytest.mark.asyncio
async def test_progress_never_decreases_and_statuses_move_forward(make_settings):
    async with running_manager(make_settings(YT_DLP_REGRESSING, FFMPEG_LINGER)) as manager:
        job = await manager.create_job(URL, 'mp3')
        updates = await collect(manager.subscribe_updates(job.job_id))

    progress = [u['progress'] for u in updates]
    assert progress == sorted(progress)
    assert 50.0 in progress
    assert 20.0 not in progress

    statuses = []
    for update in updates:
        if not statuses or statuses[-1] != update['status']:
            statuses.append(update['status'])
    assert statuses == ['initializing', 'downloading', 'processing', 'complete']


@pytest.mark.asyncio
async def test_unsupported_format_creates_no_job(make_settings):
    async with running_manager(make_settings()) as manager:
        with pytest.raises(InvalidFormatError):
            await manager.create_job(URL, 'wav')
        assert len(manager.registry) == 0


@pytest.mark.asyncio
async def test_unknown_job_is_not_found(make_settings):
    async with running_manager(make_settings()) as manager:
        with pytest.raises(JobNotFoundError):
            manager.subscribe_updates('does-not-exist')
        with pytest.raises(JobNotFoundError):
            manager.open_output('does-not-exist')
        with pytest.raises(JobNotFoundError):
            await manager.get_status('does-not-exist')


@pytest.mark.asyncio
async def test_output_consumer_disconnect_tears_job_down(make_settings):
    async with running_manager(make_settings(YT_DLP_SLOW)) as manager:
        job = await manager.create_job(URL, 'mp3')
        observer = manager.subscribe_updates(job.job_id)
        await wait_for_status(observer, 'downloading')
        retrieval, transform = job.retrieval_process, job.transform_process

        output = manager.open_output(job.job_id)
        chunks = output.iter_chunks()
        assert await asyncio.wait_for(chunks.__anext__(), 10) == b'partial'
        await chunks.aclose()

        cleanup = manager.release_output(job.job_id, delivered=False)
        assert await asyncio.wait_for(cleanup, 10) is True

        assert retrieval.returncode is not None
        assert transform.returncode is not None
        with pytest.raises(JobNotFoundError):
            manager.subscribe_updates(job.job_id)
        with pytest.raises(JobNotFoundError):
            await manager.get_status(job.job_id)

        remaining = await collect(observer)
        assert remaining[-1]['status'] == 'failed'
        assert remaining[-1]['error'] == 'Job cancelled: output consumer disconnected'


@pytest.mark.asyncio
async def test_concurrent_observers_see_identical_sequences(make_settings):
    async with running_manager(make_settings()) as manager:
        job = await manager.create_job(URL, 'mp3')
        first = manager.subscribe_updates(job.job_id)
        first_seen = []
        async for snapshot in first:
            first_seen.append(snapshot)
            if snapshot['status'] == 'downloading':
                break
        second = manager.subscribe_updates(job.job_id)

        first_rest, second_all = await asyncio.gather(collect(first), collect(second))

    first_all = first_seen + first_rest
    assert second_all[-1]['status'] == 'complete'
    assert first_all[-1] == second_all[-1]
    assert first_all[-len(second_all):] == second_all


@pytest.mark.asyncio
async def test_completed_output_is_streamed_once(make_settings):
    async with running_manager(make_settings()) as manager:
        job = await manager.create_job(URL, 'mp3')
        with pytest.raises(JobNotReadyError):
            manager.open_output(job.job_id)

        await wait_for_status(manager.subscribe_updates(job.job_id), 'downloading')
        output = manager.open_output(job.job_id)
        assert output.content_type == 'audio/mpeg'
        assert output.filename.endswith('.mp3')
        with pytest.raises(OutputClaimedError):
            manager.open_output(job.job_id)

        data = b''.join([chunk async for chunk in output.iter_chunks()])
        assert data == FAKE_PAYLOAD
        assert manager.release_output(job.job_id, delivered=True) is None

        final = await collect(manager.subscribe_updates(job.job_id))
        assert final[-1]['status'] == 'complete'


@pytest.mark.asyncio
async def test_retrieval_failure_is_reported(make_settings):
    async with running_manager(make_settings(YT_DLP_FAIL)) as manager:
        job = await manager.create_job(URL, 'mp3')
        updates = await collect(manager.subscribe_updates(job.job_id))

        assert updates[-1]['status'] == 'failed'
        assert updates[-1]['error'].startswith('yt-dlp failed with code 1')
        assert 'Video unavailable' in updates[-1]['error']
        with pytest.raises(JobNotFoundError):
            manager.open_output(job.job_id)


@pytest.mark.asyncio
async def test_transform_failure_is_reported(make_settings):
    async with running_manager(make_settings(ffmpeg_body=FFMPEG_FAIL)) as manager:
        job = await manager.create_job(URL, 'mp4')
        updates = await collect(manager.subscribe_updates(job.job_id))

        assert updates[-1]['status'] == 'failed'
        assert updates[-1]['error'].startswith('ffmpeg failed with code 1')
        assert 'complete' not in [u['status'] for u in updates]


@pytest.mark.asyncio
async def test_spawn_failure_fails_and_cleans_up_immediately(make_settings, tmp_path):
    settings = make_settings(ffmpeg_path=tmp_path / 'no-such-ffmpeg')
    async with running_manager(settings) as manager:
        job = await manager.create_job(URL, 'mp3')
        updates = await collect(manager.subscribe_updates(job.job_id))

        assert updates[-1]['status'] == 'failed'
        assert updates[-1]['error'].startswith('ffmpeg could not be started')
        await wait_until_gone(manager, job.job_id)
        assert job.retrieval_process is None


@pytest.mark.asyncio
async def test_finished_job_is_removed_after_grace_period(make_settings):
    async with running_manager(make_settings(cleanup_grace_seconds=0.2)) as manager:
        job = await manager.create_job(URL, 'mp3')
        await collect(manager.subscribe_updates(job.job_id))
        assert (await manager.get_status(job.job_id))['status'] == 'complete'

        await wait_until_gone(manager, job.job_id)
        with pytest.raises(JobNotFoundError):
            await manager.get_status(job.job_id)


@pytest.mark.asyncio
async def test_unclaimed_output_times_out(make_settings):
    async with running_manager(make_settings(YT_DLP_SLOW, output_claim_timeout_seconds=0.5)) as manager:
        job = await manager.create_job(URL, 'mp3')
        updates = await collect(manager.subscribe_updates(job.job_id))

        assert updates[-1]['status'] == 'failed'
        assert updates[-1]['error'] == 'Output was not requested within 0.5 seconds'
        assert await asyncio.wait_for(job.retrieval_process.wait(), 10) is not None


@pytest.mark.asyncio
async def test_cleanup_is_idempotent(make_settings):
    async with running_manager(make_settings(YT_DLP_SLOW)) as manager:
        job = await manager.create_job(URL, 'mp3')
        await wait_for_status(manager.subscribe_updates(job.job_id), 'downloading')
        retrieval = job.retrieval_process

        results = await asyncio.gather(manager.cleanup(job.job_id), manager.cleanup(job.job_id))
        assert sorted(results) == [False, True]
        assert await manager.cleanup(job.job_id) is False
        assert retrieval.returncode is not None
        assert job.status == 'failed'
        assert job.task is None


@pytest.mark.asyncio
async def test_cleanup_reads_unclaimed_output_to_eof(make_settings):
    async with running_manager(make_settings(YT_DLP_SLOW)) as manager:
        job = await manager.create_job(URL, 'mp3')
        await wait_for_status(manager.subscribe_updates(job.job_id), 'downloading')
        transform = job.transform_process

        assert await manager.cleanup(job.job_id) is True
        assert transform.returncode is not None
        assert transform.stdout.at_eof()


@pytest.mark.asyncio
async def test_capacity_limit(make_settings):
    async with running_manager(make_settings(YT_DLP_SLOW, max_concurrent_jobs=1)) as manager:
        await manager.create_job(URL, 'mp3')
        with pytest.raises(ServiceBusyError):
            await manager.create_job(URL, 'mp3')


@pytest.mark.asyncio
async def test_status_of_interrupted_job_comes_from_store(make_settings, tmp_path):
    settings = make_settings(persist_jobs=True)
    previous = JobStore(settings.database_path)
    await previous.open()
    previous.save({'jobId': 'old-job', 'status': 'downloading', 'progress': 42.0,
                   'error': None, 'title': 'Old Song', 'format': 'mp3'})
    await previous.close()

    async with running_manager(settings, store=JobStore(settings.database_path)) as manager:
        status = await manager.get_status('old-job')

    assert status['status'] == 'failed'
    assert status['error'] == INTERRUPTED_ERROR
    assert status['title'] == 'Old Song'
