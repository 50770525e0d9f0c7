"""Functional tests for the connectivity monitor state machine."""

from __future__ import annotations

import anyio
import pytest

from nomadsync.errors import StorageError
from nomadsync.logic.connectivity import ConnectivityMonitor, ConnectivityState, HttpReachabilityProbe
from nomadsync.logic.events import CONNECTIVITY_CHANGED, EventBus
from nomadsync.logic.remote_client import RemoteSyncEndpoint
from nomadsync.logic.sync_processor import SyncProcessor
from nomadsync.models.sync_types import SyncSummary

pytestmark = pytest.mark.anyio


class CountingTrigger:
    def __init__(self, delay: float = 0.0, busy_first: bool = False) -> None:
        self.calls = 0
        self.delay = delay
        self.busy_first = busy_first

    async def __call__(self) -> SyncSummary:
        self.calls += 1
        if self.delay:
            await anyio.sleep(self.delay)
        if self.busy_first and self.calls == 1:
            return SyncSummary(busy=True)
        return SyncSummary()


async def test_initial_state_follows_platform_signal():
    assert ConnectivityMonitor(CountingTrigger(), initially_online=True).state is ConnectivityState.ONLINE
    assert ConnectivityMonitor(CountingTrigger(), initially_online=False).state is ConnectivityState.OFFLINE


async def test_offline_to_online_triggers_exactly_one_run():
    trigger = CountingTrigger()
    monitor = ConnectivityMonitor(trigger, initially_online=False)

    await monitor.set_reachable(True)
    # Repeated "still online" signals are not transitions
    await monitor.set_reachable(True)
    await monitor.set_reachable(True)

    assert trigger.calls == 1
    assert monitor.state is ConnectivityState.ONLINE


async def test_online_to_offline_does_not_trigger():
    trigger = CountingTrigger()
    monitor = ConnectivityMonitor(trigger, initially_online=True)

    await monitor.set_reachable(False)

    assert trigger.calls == 0
    assert monitor.state is ConnectivityState.OFFLINE


async def test_transitions_go_through_single_dispatch_point():
    events = EventBus()
    monitor = ConnectivityMonitor(CountingTrigger(), initially_online=False, events=events)
    seen = []
    monitor.subscribe(lambda old, new: seen.append((old.value, new.value)))

    await monitor.set_reachable(True)
    await monitor.set_reachable(False)

    assert seen == [("offline", "online"), ("online", "offline")]
    changed = [e["payload"] for e in events.buffered() if e["type"] == CONNECTIVITY_CHANGED]
    assert changed == [{"from": "offline", "to": "online"}, {"from": "online", "to": "offline"}]


async def test_failing_subscriber_does_not_block_transition():
    trigger = CountingTrigger()
    monitor = ConnectivityMonitor(trigger, initially_online=False)

    def broken(old, new):
        raise RuntimeError("ui gone")

    monitor.subscribe(broken)
    await monitor.set_reachable(True)

    assert trigger.calls == 1


async def test_flaps_during_active_run_collapse_into_one_rerun():
    trigger = CountingTrigger(delay=0.05)
    monitor = ConnectivityMonitor(trigger, initially_online=False)

    async with anyio.create_task_group() as tg:
        tg.start_soon(monitor.set_reachable, True)
        await anyio.sleep(0.01)
        for _ in range(3):
            await monitor.set_reachable(False)
            await monitor.set_reachable(True)

    # The reconnect run plus exactly one follow-up for the flaps
    assert trigger.calls == 2


async def test_flap_ending_offline_does_not_rerun():
    trigger = CountingTrigger(delay=0.05)
    monitor = ConnectivityMonitor(trigger, initially_online=False)

    async with anyio.create_task_group() as tg:
        tg.start_soon(monitor.set_reachable, True)
        await anyio.sleep(0.01)
        await monitor.set_reachable(False)
        await monitor.set_reachable(True)
        await monitor.set_reachable(False)

    assert trigger.calls == 1
    assert monitor.state is ConnectivityState.OFFLINE


async def test_manual_trigger_while_offline_is_skipped():
    trigger = CountingTrigger()
    monitor = ConnectivityMonitor(trigger, initially_online=False)

    assert await monitor.trigger_sync() is None
    assert trigger.calls == 0


async def test_periodic_tick_fires_while_online():
    trigger = CountingTrigger()
    monitor = ConnectivityMonitor(trigger, initially_online=True, interval_seconds=0.02)

    await monitor.tick(True)
    await monitor.tick(True)
    assert trigger.calls == 1
    await anyio.sleep(0.03)
    await monitor.tick(True)

    assert trigger.calls == 2


async def test_periodic_tick_disabled_with_zero_interval():
    trigger = CountingTrigger()
    monitor = ConnectivityMonitor(trigger, initially_online=True, interval_seconds=0)

    await monitor.tick(True)
    await monitor.tick(True)

    assert trigger.calls == 0


async def test_busy_refusal_is_retried_on_next_tick():
    trigger = CountingTrigger(busy_first=True)
    monitor = ConnectivityMonitor(trigger, initially_online=False, interval_seconds=0)

    await monitor.tick(True)
    assert trigger.calls == 1
    await monitor.tick(True)

    assert trigger.calls == 2


async def test_reconnect_drains_queue_through_processor(store, stub_endpoint, make_response):
    await store.save_response(make_response(1))
    processor = SyncProcessor(store)
    monitor = ConnectivityMonitor(
        lambda: processor.process_queue(stub_endpoint), initially_online=False
    )

    await monitor.set_reachable(True)

    assert stub_endpoint.calls == ["r1"]
    assert monitor.last_result.succeeded == 1
    assert (await store.get_stats()).sync_queue == 0


async def test_run_loop_uses_probe_and_stops_on_cancel():
    trigger = CountingTrigger()
    monitor = ConnectivityMonitor(trigger, initially_online=False)
    answers = iter([False, True, True, False])

    async def probe() -> bool:
        return next(answers, False)

    with anyio.move_on_after(0.2):
        await monitor.run(probe, poll_seconds=0.01)

    assert trigger.calls == 1
    assert monitor.state is ConnectivityState.OFFLINE


async def test_probe_exception_counts_as_unreachable():
    monitor = ConnectivityMonitor(CountingTrigger(), initially_online=True)

    async def probe() -> bool:
        raise OSError("no route to host")

    with anyio.move_on_after(0.05):
        await monitor.run(probe, poll_seconds=0.01)

    assert monitor.state is ConnectivityState.OFFLINE


async def test_http_probe_reads_health_endpoint():
    import httpx

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/health"
        return httpx.Response(200, json={"status": "ok", "db": True})

    async with RemoteSyncEndpoint("http://nomadsync.test", transport=httpx.MockTransport(handler)) as endpoint:
        assert await HttpReachabilityProbe(endpoint)() is True


async def test_http_probe_unreachable_on_transport_error():
    import httpx

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with RemoteSyncEndpoint("http://nomadsync.test", transport=httpx.MockTransport(handler)) as endpoint:
        assert await HttpReachabilityProbe(endpoint)() is False


class FailingOnceTrigger(CountingTrigger):
    async def __call__(self) -> SyncSummary:
        self.calls += 1
        if self.calls == 1:
            raise StorageError("list_queue failed: disk I/O error")
        return SyncSummary()


async def test_trigger_error_does_not_escape_reconnect():
    trigger = FailingOnceTrigger()
    monitor = ConnectivityMonitor(trigger, initially_online=False)

    await monitor.set_reachable(True)

    assert trigger.calls == 1
    assert monitor.online is True
    assert monitor.last_result is None


async def test_run_loop_survives_trigger_error_and_retries():
    trigger = FailingOnceTrigger()
    monitor = ConnectivityMonitor(trigger, initially_online=False)

    async def reachable() -> bool:
        return True

    with anyio.move_on_after(0.2):
        await monitor.run(reachable, poll_seconds=0.01)

    # The failed reconnect run is retried on a later tick
    assert trigger.calls >= 2
    assert monitor.last_result == SyncSummary()


async def test_run_loop_survives_storage_error_in_processor(store, stub_endpoint, make_response, monkeypatch):
    await store.save_response(make_response(1))
    original = store.list_queue
    calls = {"n": 0}

    async def flaky_list_queue():
        calls["n"] += 1
        if calls["n"] == 1:
            raise StorageError("list_queue failed: disk I/O error")
        return await original()

    monkeypatch.setattr(store, "list_queue", flaky_list_queue)
    processor = SyncProcessor(store)
    monitor = ConnectivityMonitor(lambda: processor.process_queue(stub_endpoint), initially_online=False)

    async def reachable() -> bool:
        return True

    with anyio.move_on_after(0.2):
        await monitor.run(reachable, poll_seconds=0.01)

    assert calls["n"] >= 2
    assert stub_endpoint.calls == ["r1"]
    assert (await store.get_response("r1")).synced is True


async def test_set_reachable_returns_after_triggered_run_completes():
    trigger = CountingTrigger(delay=0.02)
    monitor = ConnectivityMonitor(trigger, initially_online=False)

    await monitor.set_reachable(True)

    assert monitor.last_result == SyncSummary()
    assert monitor.runs_triggered == 1
