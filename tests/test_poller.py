"""Tests for the change feed poller."""

import asyncio

import pytest

from scriptwatch.adapters.base import ProtocolError, TransportError
from scriptwatch.daemon.poller import ChangePoller, PollerStartupError, PollerState
from scriptwatch.daemon.work_queue import InMemoryJobQueue, JobStatus
from scriptwatch.monitoring import MetricsCollector

from conftest import FakeRegistryClient, batch


class SleepRecorder:
    """Records requested sleeps and stops the poller after `limit` of them."""

    def __init__(self, limit: int = 1) -> None:
        self.delays: list[float] = []
        self.limit = limit
        self.poller: ChangePoller | None = None

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if len(self.delays) >= self.limit:
            self.poller.stop()


def make_poller(client, queue=None, sleep_limit=1, **kwargs):
    recorder = SleepRecorder(sleep_limit)
    poller = ChangePoller(client, queue or InMemoryJobQueue(), sleep=recorder, **kwargs)
    recorder.poller = poller
    return poller, recorder


@pytest.mark.asyncio
async def test_initialize_uses_feed_head():
    poller, _ = make_poller(FakeRegistryClient(head="100-xyz"))

    assert await poller.initialize() == "100-xyz"
    assert poller.cursor == "100-xyz"
    assert poller.state == PollerState.POLLING


@pytest.mark.asyncio
async def test_initialize_with_explicit_cursor():
    client = FakeRegistryClient(head_error=TransportError("down"))
    poller, _ = make_poller(client)

    assert await poller.initialize(since=42) == 42
    assert poller.state == PollerState.POLLING


@pytest.mark.asyncio
async def test_initialize_failure_is_fatal():
    poller, _ = make_poller(FakeRegistryClient(head_error=TransportError("down")))

    with pytest.raises(PollerStartupError):
        await poller.initialize()
    assert poller.state == PollerState.STOPPED


@pytest.mark.asyncio
async def test_poll_once_submits_jobs_and_advances():
    queue = InMemoryJobQueue()
    client = FakeRegistryClient(
        head=10,
        batches=[batch(["left-pad", "_design/scratch", "@scope/pkg", "left-pad"], 14)],
    )
    poller, _ = make_poller(client, queue)
    await poller.initialize()

    result = await poller.poll_once()

    assert len(result.rows) == 4
    assert poller.cursor == 14
    assert client.cursors_requested == [10]
    assert queue.get("left-pad").status == JobStatus.WAITING
    assert queue.get("@scope/pkg") is not None
    assert queue.get("_design/scratch") is None
    # The repeated row is a no-op while the first job is still waiting
    assert queue.stats().submitted == 2
    assert queue.stats().duplicates == 1


@pytest.mark.asyncio
async def test_poll_once_requires_initialize():
    poller, _ = make_poller(FakeRegistryClient())
    with pytest.raises(RuntimeError):
        await poller.poll_once()


@pytest.mark.asyncio
async def test_empty_batch_advances_cursor_and_sleeps():
    queue = InMemoryJobQueue()
    client = FakeRegistryClient(head="5", batches=[batch([], "9")])
    poller, recorder = make_poller(client, queue, poll_interval=1.5)

    await poller.initialize()
    await poller.run()

    assert poller.cursor == "9"
    assert recorder.delays == [1.5]
    assert queue.stats().submitted == 0
    assert poller.state == PollerState.STOPPED


@pytest.mark.asyncio
async def test_busy_feed_does_not_sleep():
    client = FakeRegistryClient(
        head=0,
        batches=[batch(["a"], 1), batch(["b"], 2), batch([], 2)],
    )
    poller, recorder = make_poller(client)

    await poller.run()

    assert client.cursors_requested == [0, 1, 2]
    assert recorder.delays == [poller.poll_interval]


@pytest.mark.asyncio
async def test_cursor_never_moves_on_error():
    client = FakeRegistryClient(
        head="1",
        batches=[TransportError("boom"), ProtocolError("bad"), batch(["x"], "2"), batch([], "2")],
    )
    poller, recorder = make_poller(client, sleep_limit=3)

    await poller.run()

    assert client.cursors_requested == ["1", "1", "1", "2"]
    assert poller.cursor == "2"
    assert recorder.delays == [1.0, 2.0, poller.poll_interval]
    assert poller.consecutive_errors == 0


@pytest.mark.asyncio
async def test_backoff_doubles_and_caps():
    errors = [TransportError("down") for _ in range(7)]
    client = FakeRegistryClient(head=0, batches=errors)
    poller, recorder = make_poller(client, sleep_limit=7)

    await poller.run()

    assert recorder.delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    assert poller.consecutive_errors == 7


@pytest.mark.asyncio
async def test_success_resets_backoff():
    client = FakeRegistryClient(
        head=0,
        batches=[TransportError("a"), TransportError("b"), batch(["x"], 1), TransportError("c")],
    )
    poller, recorder = make_poller(client, sleep_limit=3)

    await poller.run()

    assert recorder.delays == [1.0, 2.0, 1.0]


def test_backoff_delay_custom_bounds():
    poller = ChangePoller(FakeRegistryClient(), InMemoryJobQueue(), backoff_initial=0.5, backoff_max=3.0)

    assert [poller.backoff_delay(k) for k in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_closed_queue_stops_poller():
    queue = InMemoryJobQueue()
    await queue.close()
    client = FakeRegistryClient(head=0, batches=[batch(["a"], 1)])
    poller, recorder = make_poller(client, queue)

    await poller.run()

    assert poller.state == PollerState.STOPPED
    assert recorder.delays == []


@pytest.mark.asyncio
async def test_stop_interrupts_idle_sleep():
    client = FakeRegistryClient(head=0)
    poller = ChangePoller(client, InMemoryJobQueue(), poll_interval=60.0)
    await poller.initialize()

    task = asyncio.create_task(poller.run())
    await asyncio.sleep(0.05)
    poller.stop()
    await asyncio.wait_for(task, timeout=2.0)

    assert poller.state == PollerState.STOPPED


@pytest.mark.asyncio
async def test_metrics_follow_the_feed():
    metrics = MetricsCollector()
    client = FakeRegistryClient(
        head=0,
        batches=[TransportError("flaky"), batch(["a", "b"], 2), batch([], 2)],
    )
    poller, _ = make_poller(client, metrics=metrics, sleep_limit=2)

    await poller.run()
    snapshot = metrics.get_metrics()

    assert snapshot.cursor == "2"
    assert snapshot.rows_seen == 2
    assert snapshot.jobs_submitted == 2
    assert snapshot.batches_polled == 2
    assert snapshot.poll_errors == 1
    assert snapshot.consecutive_poll_errors == 0
    assert snapshot.recent_errors[0].error_type == "TransportError"
