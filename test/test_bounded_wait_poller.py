import asyncio

import pytest

from skill_drill_client.bounded_wait_poller import BoundedWaitPoller
from skill_drill_client.errors import TransientNetworkError


class Counter:
    def __init__(self):
        self.count = 0
        self.fired_at = []

    def __call__(self):
        self.count += 1
        self.fired_at.append(asyncio.get_running_loop().time())


@pytest.mark.asyncio
async def test_job_completion_beats_deadline(fake_api, make_job, eventually):
    """Scaled down: 0.5s ceiling, scoring done at 0.3s."""
    loop = asyncio.get_running_loop()
    started = loop.time()

    def status_now():
        state = "completed" if loop.time() - started >= 0.3 else "running"
        return make_job(state)

    fake_api.job_scripts["job-1"] = [status_now]
    on_complete = Counter()
    poller = BoundedWaitPoller(
        fake_api, on_complete, max_wait_time=0.5, polling_interval=0.02
    )

    poller.start_polling("job-1")
    await eventually(lambda: on_complete.count)
    elapsed = on_complete.fired_at[0] - started

    assert 0.29 <= elapsed < 0.45
    assert poller.completed_by == "job"
    assert poller.scoring_completed
    assert not poller.is_polling

    calls = fake_api.calls["get_job_status"]
    await asyncio.sleep(0.4)
    assert on_complete.count == 1
    assert fake_api.calls["get_job_status"] == calls


@pytest.mark.asyncio
async def test_deadline_wins_when_scoring_is_slow(fake_api, make_job, eventually):
    fake_api.job_scripts["job-1"] = [make_job("running")]
    on_complete = Counter()
    poller = BoundedWaitPoller(
        fake_api, on_complete, max_wait_time=0.1, polling_interval=0.02
    )

    poller.start_polling("job-1")
    await eventually(lambda: on_complete.count)
    calls = fake_api.calls["get_job_status"]
    await asyncio.sleep(0.1)

    assert on_complete.count == 1
    assert poller.completed_by == "deadline"
    assert not poller.scoring_completed
    assert fake_api.calls["get_job_status"] <= calls + 1


@pytest.mark.asyncio
async def test_network_errors_never_complete_early(fake_api, eventually):
    fake_api.job_scripts["job-1"] = [TransientNetworkError("Network error")]
    on_complete = Counter()
    poller = BoundedWaitPoller(
        fake_api, on_complete, max_wait_time=0.15, polling_interval=0.01
    )
    started = asyncio.get_running_loop().time()

    poller.start_polling("job-1")
    await eventually(lambda: on_complete.count)

    assert on_complete.fired_at[0] - started >= 0.14
    assert fake_api.calls["get_job_status"] > 3
    assert poller.completed_by == "deadline"


@pytest.mark.asyncio
async def test_simultaneous_finish_fires_once(fake_api, make_job):
    # The status response lands at the same moment as the deadline
    fake_api.latency = 0.05
    fake_api.job_scripts["job-1"] = [make_job("completed")]
    on_complete = Counter()
    poller = BoundedWaitPoller(
        fake_api, on_complete, max_wait_time=0.05, polling_interval=0.01
    )

    poller.start_polling("job-1")
    await asyncio.sleep(0.2)

    assert on_complete.count == 1
    assert poller.completed_by in ("job", "deadline")


@pytest.mark.asyncio
async def test_async_listener_is_awaited(fake_api, make_job, eventually):
    fake_api.job_scripts["job-1"] = [make_job("completed")]
    seen = []

    async def on_complete():
        await asyncio.sleep(0)
        seen.append("done")

    poller = BoundedWaitPoller(fake_api, on_complete, max_wait_time=1.0)
    poller.start_polling("job-1")

    await eventually(lambda: seen)
    assert seen == ["done"]


@pytest.mark.asyncio
async def test_cancel_prevents_completion(fake_api, make_job):
    fake_api.job_scripts["job-1"] = [make_job("running")]
    on_complete = Counter()
    poller = BoundedWaitPoller(
        fake_api, on_complete, max_wait_time=0.05, polling_interval=0.01
    )

    poller.start_polling("job-1")
    await asyncio.sleep(0.02)
    poller.cancel_polling()
    calls = fake_api.calls["get_job_status"]
    await asyncio.sleep(0.1)

    assert on_complete.count == 0
    assert not poller.is_polling
    assert fake_api.calls["get_job_status"] <= calls + 1


@pytest.mark.asyncio
async def test_missing_job_id_does_nothing(fake_api):
    on_complete = Counter()
    poller = BoundedWaitPoller(fake_api, on_complete, max_wait_time=0.01)

    poller.start_polling("")
    await asyncio.sleep(0.05)

    assert on_complete.count == 0
    assert not poller.is_polling
    assert fake_api.calls["get_job_status"] == 0


@pytest.mark.asyncio
async def test_cancel_right_after_deadline_suppresses_completion(fake_api, make_job):
    """The deadline won, but cancel lands before its listener task runs."""
    fake_api.job_scripts["job-1"] = [make_job("running")]
    on_complete = Counter()
    poller = BoundedWaitPoller(
        fake_api, on_complete, max_wait_time=1.0, polling_interval=0.5
    )

    poller.start_polling("job-1")
    poller._on_deadline(poller._episode)
    assert poller.completed_by == "deadline"
    poller.cancel_polling()
    await asyncio.sleep(0.05)

    assert on_complete.count == 0


@pytest.mark.asyncio
async def test_background_tasks_are_held_per_poller(fake_api, make_job, eventually):
    fake_api.job_scripts["job-1"] = [make_job("completed")]
    on_complete = Counter()
    first = BoundedWaitPoller(fake_api, on_complete, max_wait_time=1.0)
    second = BoundedWaitPoller(fake_api, on_complete, max_wait_time=1.0)

    first.start_polling("job-1")

    assert len(first._tasks) == 1
    assert second._tasks == set()
    await eventually(lambda: on_complete.count)
    await eventually(lambda: not first._tasks)
