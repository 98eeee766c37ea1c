import asyncio

import pytest

from cutout.core.exceptions import BatchAlreadyRunningError, TransformError
from cutout.modules.imagery.models import EpisodeOutcome, JobStatus
from cutout.pipeline.retry import RetryPolicy
from cutout.pipeline.scheduler import BatchScheduler, partition_waves
from cutout.pipeline.tasks import JobRunner


@pytest.fixture
def build(handles, options, make_job):
    def factory(client, count=5, limit=2, max_retries=3):
        jobs = {}
        for i in range(count):
            job = make_job(name=f"img{i}.png", data=bytes([i]))
            jobs[job.id] = job
        runner = JobRunner(client, RetryPolicy(max_retries=max_retries, base_delay=0.001), handles, options)
        scheduler = BatchScheduler(runner, jobs.get, concurrency_limit=limit)
        return scheduler, jobs
    return factory


def test_partition_waves():
    assert [len(w) for w in partition_waves(list(range(5)), 2)] == [2, 2, 1]
    assert partition_waves([], 3) == []


@pytest.mark.asyncio
async def test_five_jobs_run_in_three_waves(build, scripted):
    client = scripted()
    scheduler, jobs = build(client, count=5, limit=2)

    result = await scheduler.run(list(jobs))

    assert result.waves == 3
    assert (result.succeeded, result.failed, result.total) == (5, 0, 5)
    assert result.summary == "5 of 5 processed"
    assert all(job.status == JobStatus.COMPLETED for job in jobs.values())
    assert not scheduler.running


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_limit(build, scripted):
    client = scripted([TransformError("flaky")] * 3)
    scheduler, jobs = build(client, count=7, limit=3)
    peak = 0

    def observe(progress):
        nonlocal peak
        peak = max(peak, sum(job.status == JobStatus.PROCESSING for job in jobs.values()))

    await scheduler.run(list(jobs), on_progress=observe)

    assert client.max_active <= 3
    assert peak <= 3


@pytest.mark.asyncio
async def test_progress_is_monotone_and_reaches_total_even_with_failures(build, scripted):
    client = scripted(failing_inputs={bytes([1])})
    scheduler, jobs = build(client, count=4, limit=2, max_retries=3)
    reports = []

    result = await scheduler.run(list(jobs), on_progress=reports.append)

    fractions = [r.fraction for r in reports]
    assert fractions == sorted(fractions)
    assert len(reports) == 4
    assert reports[-1].completed == reports[-1].total == 4
    assert result.failed == 1
    assert result.succeeded == 3
    assert client.calls == 6
    assert result.summary == "3 of 4 processed"


@pytest.mark.asyncio
async def test_completed_jobs_are_skipped(build, scripted):
    client = scripted()
    scheduler, jobs = build(client, count=3)
    first = next(iter(jobs))
    await scheduler.runner.submit(jobs[first])

    result = await scheduler.run(list(jobs) + ["missing"])

    assert result.total == 2
    assert client.calls == 3


@pytest.mark.asyncio
async def test_overlapping_runs_are_rejected(build, scripted):
    gate = asyncio.Event()
    client = scripted([gate])
    scheduler, jobs = build(client, count=1)

    running = asyncio.ensure_future(scheduler.run(list(jobs)))
    await asyncio.sleep(0.01)
    assert scheduler.running
    assert scheduler.current_run.concurrency_limit == 2

    with pytest.raises(BatchAlreadyRunningError):
        await scheduler.run(list(jobs))

    gate.set()
    result = await running
    assert result.succeeded == 1


@pytest.mark.asyncio
async def test_abort_cancels_active_wave_and_skips_rest(build, scripted):
    client = scripted([asyncio.Event(), asyncio.Event()])
    scheduler, jobs = build(client, count=5, limit=2)

    running = asyncio.ensure_future(scheduler.run(list(jobs)))
    await asyncio.sleep(0.01)
    assert scheduler.abort()

    result = await asyncio.wait_for(running, timeout=1)

    assert result.aborted
    assert result.waves == 1
    assert result.cancelled == 2
    assert client.calls == 2
    assert all(job.status == JobStatus.PENDING for job in jobs.values())
    assert not scheduler.abort()


@pytest.mark.asyncio
async def test_empty_selection_returns_empty_tally(build, scripted):
    scheduler, _ = build(scripted(), count=0)

    result = await scheduler.run([])

    assert result.total == 0 and result.waves == 0


@pytest.mark.asyncio
async def test_invalid_limit(build, scripted):
    scheduler, jobs = build(scripted(), count=1)

    with pytest.raises(ValueError):
        await scheduler.run(list(jobs), concurrency_limit=-1)
    with pytest.raises(ValueError):
        await scheduler.run(list(jobs), concurrency_limit=0)
    assert not scheduler.running


@pytest.mark.asyncio
async def test_superseded_member_keeps_its_slot_until_settled(build, scripted):
    first, second, takeover = asyncio.Event(), asyncio.Event(), asyncio.Event()
    client = scripted([first, second, takeover])
    scheduler, jobs = build(client, count=4, limit=2)
    job0, job1, job2, job3 = jobs.values()

    batch = asyncio.ensure_future(scheduler.run(list(jobs)))
    await asyncio.sleep(0.01)
    manual = asyncio.ensure_future(scheduler.runner.submit(job0))
    await asyncio.sleep(0.01)

    assert client.calls == 3
    assert client.active == 2
    second.set()
    await asyncio.sleep(0.01)

    # job0 is still processing under the newer episode: the next wave waits
    assert job1.status == JobStatus.COMPLETED
    assert job0.status == JobStatus.PROCESSING
    assert job2.status == JobStatus.PENDING and job3.status == JobStatus.PENDING
    assert client.calls == 3

    takeover.set()
    assert await manual == EpisodeOutcome.COMPLETED
    result = await asyncio.wait_for(batch, timeout=1)

    assert (result.succeeded, result.failed, result.cancelled) == (4, 0, 0)
    assert result.waves == 2
    assert client.calls == 5
    assert all(job.status == JobStatus.COMPLETED for job in jobs.values())


@pytest.mark.asyncio
async def test_member_deleted_while_superseded_is_tallied_cancelled(build, scripted, handles):
    client = scripted([asyncio.Event(), asyncio.Event()], honor_cancel=True)
    scheduler, jobs = build(client, count=1, limit=1)
    job = next(iter(jobs.values()))

    batch = asyncio.ensure_future(scheduler.run(list(jobs)))
    await asyncio.sleep(0.01)
    manual = asyncio.ensure_future(scheduler.runner.submit(job))
    await asyncio.sleep(0.01)
    job.release_handles(handles)

    result = await asyncio.wait_for(batch, timeout=1)
    await manual

    assert result.cancelled == 1
    assert result.succeeded == 0


@pytest.mark.asyncio
async def test_failing_progress_callback_does_not_break_the_batch(build, scripted):
    client = scripted()
    scheduler, jobs = build(client, count=4, limit=2)
    seen = []

    def flaky(progress):
        seen.append(progress.completed)
        raise RuntimeError("renderer crashed")

    result = await scheduler.run(list(jobs), on_progress=flaky)

    assert result.succeeded == 4
    assert seen == [1, 2, 3, 4]
    assert not scheduler.running
