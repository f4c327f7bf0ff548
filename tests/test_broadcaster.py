import pytest

from ytpipe.broadcaster import Broadcaster
from ytpipe.jobs import DownloadJob, STATUS_COMPLETE, STATUS_DOWNLOADING


def _job(**kwargs) -> DownloadJob:
    return DownloadJob(job_id='job-1', url='https://youtu.be/abc', format='mp3', **kwargs)


async def _drain(subscription):
    return [snapshot async for snapshot in subscription]


@pytest.mark.asyncio
async def test_subscribers_see_the_same_ordered_updates():
    broadcaster = Broadcaster()
    job = _job()
    first = broadcaster.subscribe(job)

    job.status = STATUS_DOWNLOADING
    broadcaster.publish(job.job_id, job.snapshot())
    second = broadcaster.subscribe(job)

    job.progress = 50.0
    broadcaster.publish(job.job_id, job.snapshot())
    job.status = STATUS_COMPLETE
    broadcaster.publish(job.job_id, job.snapshot())

    first_updates = await _drain(first)
    second_updates = await _drain(second)
    assert [s['status'] for s in first_updates] == ['initializing', 'downloading', 'downloading', 'complete']
    assert second_updates == first_updates[1:]
    assert broadcaster.observer_count(job.job_id) == 0


@pytest.mark.asyncio
async def test_subscribe_to_terminal_job_yields_final_snapshot_only():
    broadcaster = Broadcaster()
    job = _job(status=STATUS_COMPLETE, progress=100.0)
    updates = await _drain(broadcaster.subscribe(job))
    assert [s['status'] for s in updates] == ['complete']


@pytest.mark.asyncio
async def test_detach_leaves_other_observers_attached():
    broadcaster = Broadcaster()
    job = _job()
    leaving = broadcaster.subscribe(job)
    staying = broadcaster.subscribe(job)

    leaving.detach()
    assert broadcaster.observer_count(job.job_id) == 1
    assert await _drain(leaving) == [job.snapshot()]

    job.status = STATUS_DOWNLOADING
    broadcaster.publish(job.job_id, job.snapshot())
    broadcaster.close_job(job.job_id)
    assert [s['status'] for s in await _drain(staying)] == ['initializing', 'downloading']
