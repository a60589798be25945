from __future__ import annotations

import asyncio
import json

import httpx
import pytest
import structlog
from conftest import FakeController, exited, running

from agentforge_monitor.alerts import AlertDispatcher
from agentforge_monitor.config import MonitorConfig, ResourceThresholds
from agentforge_monitor.errors import AdapterError
from agentforge_monitor.history import HistoryStore
from agentforge_monitor.models import HealthState, RemediationStatus
from agentforge_monitor.scheduler import MonitorScheduler, SchedulerState


def _config(**overrides) -> MonitorConfig:
    data = {"resources": ResourceThresholds(enabled=False), "probe_interval_seconds": 3600}
    data.update(overrides)
    return MonitorConfig(**data)


class _RecordingDispatcher(AlertDispatcher):
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(200)

        super().__init__("https://hooks.example/alert", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    def messages(self) -> list[str]:
        return [json.loads(r.content)["content"] for r in self.requests]


@pytest.mark.asyncio
async def test_end_to_end_cycle_heals_records_and_alerts(controller: FakeController, tmp_path) -> None:
    controller.stacks["alpha"] = [running("c1", HealthState.HEALTHY), exited("c2")]
    store = HistoryStore(tmp_path / "health.json", capacity=10)
    dispatcher = _RecordingDispatcher()
    monitor = MonitorScheduler(_config(auto_restart=True), controller, store, dispatcher=dispatcher)

    entry = await monitor.run_cycle()

    assert entry is not None
    assert entry.reports[0].issues == ["c2 is exited"]
    assert entry.reports[0].healthy is False
    assert entry.outcome_for("alpha").status == RemediationStatus.HEALED
    assert controller.restart_calls == ["alpha"]

    assert len(store.recent()) == 1
    persisted = HistoryStore(tmp_path / "health.json", capacity=10)
    assert persisted.load() == 1
    assert persisted.recent(1)[0].outcome_for("alpha").status == RemediationStatus.HEALED

    messages = dispatcher.messages()
    assert len(messages) == 1
    assert "alpha: c2 is exited (auto-restarted)" in messages[0]

    # Next cycle the stack is healthy again and nothing is sent.
    entry = await monitor.run_cycle()
    assert entry is not None
    assert entry.outcome_for("alpha").status == RemediationStatus.HEALTHY
    assert len(dispatcher.messages()) == 1
    assert controller.restart_calls == ["alpha"]
    await dispatcher.client.aclose()


@pytest.mark.asyncio
async def test_outcomes_are_ordered_and_faults_isolated(controller: FakeController) -> None:
    controller.stacks["zeta"] = [running("z1")]
    controller.stacks["alpha"] = AdapterError("compose ps timed out after 15s", timed_out=True)
    controller.stacks["mid"] = [running("m1")]

    def explode(stack_key: str) -> None:
        if stack_key == "mid":
            raise RuntimeError("unexpected adapter bug")

    controller.on_list = explode
    monitor = MonitorScheduler(_config(probe_concurrency=3), controller, HistoryStore(None, capacity=5))

    entry = await monitor.run_cycle()

    assert entry is not None
    assert [o.stack_key for o in entry.outcomes] == ["alpha", "mid", "zeta"]
    assert [r.stack_key for r in entry.reports] == ["alpha", "mid", "zeta"]
    assert entry.outcome_for("alpha").status == RemediationStatus.PROBE_ERROR
    assert entry.outcome_for("mid").status == RemediationStatus.PROBE_ERROR
    assert "unexpected adapter bug" in entry.outcome_for("mid").issues[0]
    assert entry.outcome_for("zeta").status == RemediationStatus.HEALTHY
    assert controller.restart_calls == []


@pytest.mark.asyncio
async def test_auto_restart_disabled_never_restarts(controller: FakeController) -> None:
    controller.stacks["alpha"] = [exited("c1")]
    monitor = MonitorScheduler(_config(auto_restart=False), controller, HistoryStore(None, capacity=5))
    for _ in range(3):
        entry = await monitor.run_cycle()
        assert entry is not None
        assert entry.outcome_for("alpha").status == RemediationStatus.UNHEALTHY
    assert controller.restart_calls == []


@pytest.mark.asyncio
async def test_failed_restart_is_retried_on_next_cycle(controller: FakeController) -> None:
    controller.stacks["alpha"] = [exited("c1")]
    controller.restart_errors["alpha"] = AdapterError("compose up failed")
    monitor = MonitorScheduler(_config(auto_restart=True), controller, HistoryStore(None, capacity=5))

    entry = await monitor.run_cycle()
    assert entry.outcome_for("alpha").status == RemediationStatus.REMEDIATION_FAILED

    controller.restart_errors.clear()
    entry = await monitor.run_cycle()
    assert entry.outcome_for("alpha").status == RemediationStatus.HEALED
    assert controller.restart_calls == ["alpha", "alpha"]


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(controller: FakeController) -> None:
    controller.stacks["alpha"] = [running("c1")]
    controller.list_delay_seconds = 0.3
    store = HistoryStore(None, capacity=5)
    monitor = MonitorScheduler(_config(), controller, store)

    first = asyncio.create_task(monitor.run_cycle())
    assert await asyncio.to_thread(controller.list_started.wait, 5.0)

    second = await monitor.run_cycle()
    assert second is None
    assert monitor.cycles_skipped == 1

    entry = await first
    assert entry is not None
    assert len(store.recent()) == 1
    assert controller.list_calls == ["alpha"]


@pytest.mark.asyncio
async def test_shutdown_mid_cycle_drops_partial_entry(controller: FakeController) -> None:
    controller.stacks["alpha"] = [exited("a1")]
    controller.stacks["beta"] = [running("b1")]
    store = HistoryStore(None, capacity=5)
    dispatcher = _RecordingDispatcher()
    monitor = MonitorScheduler(_config(probe_concurrency=1), controller, store, dispatcher=dispatcher)
    loop = asyncio.get_running_loop()

    def stop_during_first(stack_key: str) -> None:
        if stack_key == "alpha":
            loop.call_soon_threadsafe(monitor.request_stop)

    controller.on_list = stop_during_first

    entry = await monitor.run_cycle()

    assert entry is None
    assert store.recent() == []
    assert dispatcher.requests == []
    assert controller.list_calls == ["alpha"]
    await dispatcher.client.aclose()


@pytest.mark.asyncio
async def test_no_deployed_stacks_records_nothing(controller: FakeController) -> None:
    store = HistoryStore(None, capacity=5)
    monitor = MonitorScheduler(_config(), controller, store)
    assert await monitor.run_cycle() is None
    assert store.recent() == []


@pytest.mark.asyncio
async def test_persistence_failure_does_not_abort_cycle(controller: FakeController, tmp_path) -> None:
    controller.stacks["alpha"] = [exited("c1")]
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    dispatcher = _RecordingDispatcher()
    monitor = MonitorScheduler(
        _config(auto_restart=False), controller, HistoryStore(blocker / "health.json", capacity=5), dispatcher=dispatcher
    )

    entry = await monitor.run_cycle()

    assert entry is not None
    assert monitor.history_write_fail_streak == 1
    assert len(dispatcher.requests) == 1
    await dispatcher.client.aclose()


@pytest.mark.asyncio
async def test_check_stack_on_demand_updates_latest_without_history(controller: FakeController) -> None:
    controller.stacks["alpha"] = [exited("c1")]
    store = HistoryStore(None, capacity=5)
    monitor = MonitorScheduler(_config(auto_restart=True), controller, store)

    outcome = await monitor.check_stack("alpha")

    assert outcome.status == RemediationStatus.HEALED
    assert store.recent() == []
    latest = monitor.latest_status("alpha")
    assert latest is not None and latest.outcome.status == RemediationStatus.HEALED

    outcome = await monitor.check_stack("ghost")
    assert outcome.status == RemediationStatus.NO_CONTAINERS


@pytest.mark.asyncio
async def test_run_performs_immediate_cycle_and_stops_cleanly(controller: FakeController) -> None:
    controller.stacks["alpha"] = [running("c1")]
    store = HistoryStore(None, capacity=5)
    monitor = MonitorScheduler(_config(probe_interval_seconds=3600), controller, store)
    stop = asyncio.Event()

    task = asyncio.create_task(monitor.run(stop))
    for _ in range(200):
        if store.recent():
            break
        await asyncio.sleep(0.025)
    assert monitor.state == SchedulerState.RUNNING
    assert len(store.recent()) == 1

    stop.set()
    await asyncio.wait_for(task, timeout=5.0)
    assert monitor.state == SchedulerState.STOPPED
    assert len(store.recent()) == 1

    with pytest.raises(RuntimeError):
        await monitor.run(stop)


@pytest.mark.asyncio
async def test_check_during_cycle_joins_in_flight_restart(controller: FakeController) -> None:
    controller.stacks["alpha"] = [exited("c1")]
    controller.list_delay_seconds = 0.3
    store = HistoryStore(None, capacity=5)
    monitor = MonitorScheduler(_config(auto_restart=True), controller, store)

    cycle = asyncio.create_task(monitor.run_cycle())
    assert await asyncio.to_thread(controller.list_started.wait, 5.0)

    outcome = await monitor.check_stack("alpha")
    entry = await cycle

    assert controller.restart_calls == ["alpha"]
    assert controller.list_calls == ["alpha"]
    assert outcome.status == RemediationStatus.HEALED
    assert entry is not None and entry.outcome_for("alpha") == outcome

    # Once the cycle is done, a new check probes again.
    controller.list_delay_seconds = 0.0
    outcome = await monitor.check_stack("alpha")
    assert outcome.status == RemediationStatus.HEALTHY
    assert controller.list_calls == ["alpha", "alpha"]


@pytest.mark.asyncio
async def test_removed_stack_leaves_both_latest_views(controller: FakeController) -> None:
    controller.stacks["alpha"] = [running("a1")]
    controller.stacks["beta"] = [running("b1")]
    store = HistoryStore(None, capacity=5)
    monitor = MonitorScheduler(_config(), controller, store)

    await monitor.run_cycle()
    assert monitor.latest_status("beta") is not None

    del controller.stacks["beta"]
    await monitor.run_cycle()

    assert [s.stack_key for s in monitor.latest_statuses()] == ["alpha"]
    assert monitor.latest_status("beta") is None
    assert store.latest("beta") is not None


def test_latest_views_fall_back_to_persisted_cycle(controller: FakeController, tmp_path) -> None:
    controller.stacks["alpha"] = [running("a1")]
    path = tmp_path / "health.json"
    asyncio.run(MonitorScheduler(_config(), controller, HistoryStore(path, capacity=5)).run_cycle())

    store = HistoryStore(path, capacity=5)
    store.load()
    restarted = MonitorScheduler(_config(), controller, store)

    assert [s.stack_key for s in restarted.latest_statuses()] == ["alpha"]
    assert restarted.latest_status("alpha").outcome.status == RemediationStatus.HEALTHY
    assert restarted.latest_status("beta") is None


@pytest.mark.asyncio
async def test_per_stack_log_events_carry_the_stack_key(controller: FakeController) -> None:
    controller.stacks["alpha"] = [exited("c1")]
    monitor = MonitorScheduler(_config(auto_restart=True), controller, HistoryStore(None, capacity=5))

    with structlog.testing.capture_logs() as logs:
        await monitor.run_cycle()

    by_event = {e["event"]: e for e in logs}
    assert by_event["Stack unhealthy"]["stack_key"] == "alpha"
    assert by_event["Attempting auto-restart"]["stack_key"] == "alpha"
    assert all("stack" not in e for e in logs)
