import asyncio

import pytest
from prometheus_client import REGISTRY

from cutout.core.exceptions import TransformError
from cutout.modules.imagery.models import EpisodeOutcome, JobStatus
from cutout.pipeline.retry import RetryPolicy
from cutout.pipeline.tasks import JobRunner


@pytest.fixture
def make_runner(handles, options):
    def factory(client, max_retries=3, events=None):
        return JobRunner(
            client,
            RetryPolicy(max_retries=max_retries, base_delay=0.001),
            handles,
            options,
            notify=events.append if events is not None else None
        )
    return factory


@pytest.mark.asyncio
async def test_success_records_result(make_runner, make_job, scripted):
    client = scripted([b"png-bytes"])
    job = make_job(data=b"compressed")

    outcome = await make_runner(client).submit(job)

    assert outcome == EpisodeOutcome.COMPLETED
    assert job.status == JobStatus.COMPLETED
    assert job.result.data == b"png-bytes"
    assert job.result.content_type == "image/png"
    assert job.progress == 1.0
    assert client.inputs == [b"compressed"]


@pytest.mark.asyncio
async def test_two_failures_then_success(make_runner, make_job, scripted):
    client = scripted([TransformError("flaky"), TransformError("flaky"), b"done"])
    job = make_job()

    outcome = await make_runner(client, max_retries=3).submit(job)

    assert outcome == EpisodeOutcome.COMPLETED
    assert job.status == JobStatus.COMPLETED
    assert job.attempt == 2
    assert client.calls == 3


@pytest.mark.asyncio
async def test_always_failing_stops_at_max_retries(make_runner, make_job, scripted):
    client = scripted([TransformError("down")] * 10)
    job = make_job()

    outcome = await make_runner(client, max_retries=3).submit(job)

    assert outcome == EpisodeOutcome.FAILED
    assert job.status == JobStatus.FAILED
    assert client.calls == 3
    assert job.result is None
    assert "Max retries exceeded after 3 attempts" in job.error_message

    await asyncio.sleep(0.01)
    assert client.calls == 3


@pytest.mark.asyncio
async def test_unexpected_exceptions_are_retried_like_transform_errors(make_runner, make_job, scripted):
    client = scripted([RuntimeError("segfault-ish"), b"ok"])
    job = make_job()

    assert await make_runner(client).submit(job) == EpisodeOutcome.COMPLETED
    assert client.calls == 2


@pytest.mark.asyncio
async def test_cancel_reverts_to_pending(make_runner, make_job, scripted):
    gate = asyncio.Event()
    client = scripted([gate])
    runner = make_runner(client)
    job = make_job()

    episode = asyncio.ensure_future(runner.submit(job))
    await asyncio.sleep(0.01)
    assert job.status == JobStatus.PROCESSING
    assert runner.cancel(job)

    assert await episode == EpisodeOutcome.CANCELLED
    assert job.status == JobStatus.PENDING
    assert job.result is None
    assert job.token is None
    assert not runner.cancel(job)


@pytest.mark.asyncio
async def test_cancel_during_backoff_aborts_retry(handles, options, make_job, scripted):
    client = scripted([TransformError("down")] * 5)
    runner = JobRunner(client, RetryPolicy(max_retries=5, base_delay=30), handles, options)
    job = make_job()

    episode = asyncio.ensure_future(runner.submit(job))
    await asyncio.sleep(0.01)
    runner.cancel(job)

    assert await asyncio.wait_for(episode, timeout=1) == EpisodeOutcome.CANCELLED
    assert client.calls == 1
    assert job.status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_cancelled_caller_settles_episode_to_pending(make_runner, make_job, scripted):
    client = scripted([asyncio.Event(), b"later"])
    runner = make_runner(client)
    job = make_job()
    active_before = REGISTRY.get_sample_value("cutout_active_jobs")

    episode = asyncio.ensure_future(runner.submit(job))
    await asyncio.sleep(0.01)
    episode.cancel()
    with pytest.raises(asyncio.CancelledError):
        await episode

    assert job.status == JobStatus.PENDING
    assert job.token is None
    assert job.last_outcome == EpisodeOutcome.CANCELLED
    assert REGISTRY.get_sample_value("cutout_active_jobs") == active_before

    assert await runner.submit(job) == EpisodeOutcome.COMPLETED
    assert job.result.data == b"later"


@pytest.mark.asyncio
async def test_cancelled_caller_during_backoff_settles_episode(handles, options, make_job, scripted):
    client = scripted([TransformError("down")] * 5)
    runner = JobRunner(client, RetryPolicy(max_retries=5, base_delay=30), handles, options)
    job = make_job()

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(runner.submit(job), timeout=0.05)

    assert job.status == JobStatus.PENDING
    assert client.calls == 1
    assert not runner.cancel(job)


@pytest.mark.asyncio
async def test_resubmit_supersedes_running_episode(make_runner, make_job, scripted):
    stale_gate = asyncio.Event()
    client = scripted([stale_gate, b"fresh"], honor_cancel=False)
    runner = make_runner(client)
    job = make_job()

    first = asyncio.ensure_future(runner.submit(job))
    await asyncio.sleep(0.01)
    second = asyncio.ensure_future(runner.submit(job))
    assert await second == EpisodeOutcome.COMPLETED

    # The stale call finishes late and must not touch the job
    stale_gate.set()
    assert await first == EpisodeOutcome.SUPERSEDED
    assert job.result.data == b"fresh"
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_resubmit_replaces_result_and_releases_old(make_runner, make_job, scripted, handles):
    client = scripted([b"first", b"second"])
    runner = make_runner(client)
    job = make_job()

    await runner.submit(job)
    first = job.result
    await runner.submit(job)

    assert first.released
    assert job.result.data == b"second"
    assert handles.is_live(job.result)


@pytest.mark.asyncio
async def test_failed_retry_keeps_previous_result(make_runner, make_job, scripted):
    client = scripted([b"good", TransformError("x"), TransformError("x"), TransformError("x")])
    runner = make_runner(client)
    job = make_job()

    await runner.submit(job)
    kept = job.result
    outcome = await runner.submit(job)

    assert outcome == EpisodeOutcome.FAILED
    assert job.result is kept
    assert not kept.released
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_emits_status_and_progress_events(make_runner, make_job, scripted):
    events = []
    job = make_job()

    await make_runner(scripted([b"ok"]), events=events).submit(job)

    statuses = [e.status for e in events]
    assert statuses[0] == JobStatus.PROCESSING
    assert statuses[-1] == JobStatus.COMPLETED
    progress = [e.progress for e in events]
    assert progress == sorted(progress)
    assert 0.5 in progress
