"""Periodic discover -> probe -> remediate -> record -> alert cycles."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .alerts import AlertDispatcher
from .compose import StackController
from .config import MonitorConfig
from .errors import PersistenceError
from .history import HistoryStore
from .models import (
    PROBE_ERROR_PREFIX,
    HealthReport,
    HistoryEntry,
    RemediationOutcome,
    RemediationStatus,
    StackKey,
    StackStatus,
    utcnow,
)
from .policy import apply_policy
from .prober import probe_stack, restart_counts
from .resources import ResourceSampler


logger = structlog.get_logger(__name__)

CYCLE_JOB_ID = "monitor-cycle"


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


def _fault_status(stack_key: StackKey, exc: BaseException) -> StackStatus:
    cause = f"{type(exc).__name__}: {exc}"
    report = HealthReport.build(stack_key=stack_key, containers=[], issues=[f"{PROBE_ERROR_PREFIX}{cause}"], error=cause)
    outcome = RemediationOutcome(
        stack_key=stack_key,
        timestamp=report.timestamp,
        status=RemediationStatus.PROBE_ERROR,
        issues=list(report.issues),
        error=cause,
    )
    return StackStatus(report=report, outcome=outcome)


class MonitorScheduler:
    """Owns the monitoring loop. Cycles never overlap; a tick that lands on a running cycle is skipped."""

    def __init__(
        self,
        config: MonitorConfig,
        controller: StackController,
        store: HistoryStore,
        dispatcher: AlertDispatcher | None = None,
        sampler: ResourceSampler | None = None,
    ) -> None:
        self.config = config
        self.controller = controller
        self.store = store
        self.dispatcher = dispatcher or AlertDispatcher(None)
        self.sampler = sampler
        self.state = SchedulerState.IDLE
        self.cycles_completed = 0
        self.cycles_skipped = 0
        self.history_write_fail_streak = 0
        self._stop = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._latest: dict[StackKey, StackStatus] = {}
        self._inflight: dict[StackKey, asyncio.Task[StackStatus]] = {}
        self._restart_counts: dict[StackKey, dict[str, int]] = {}

    # ------------------------------
    # Queries
    # ------------------------------
    def latest_status(self, stack_key: StackKey) -> StackStatus | None:
        if self._latest:
            return self._latest.get(stack_key)
        # Nothing processed since startup; serve the last persisted cycle.
        newest = self.store.recent(1)
        if not newest or newest[0].outcome_for(stack_key) is None:
            return None
        return self.store.latest(stack_key)

    def latest_statuses(self) -> list[StackStatus]:
        if self._latest:
            return [self._latest[k] for k in sorted(self._latest)]
        statuses: list[StackStatus] = []
        for entry in self.store.recent(1):
            for report in entry.reports:
                outcome = entry.outcome_for(report.stack_key)
                if outcome is not None:
                    statuses.append(StackStatus(report=report, outcome=outcome))
        return sorted(statuses, key=lambda s: s.stack_key)

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    # ------------------------------
    # Per-stack work (runs in a worker thread)
    # ------------------------------
    def _process_stack(self, stack_key: StackKey, auto_restart: bool) -> StackStatus:
        report = probe_stack(
            self.controller,
            stack_key,
            sampler=self.sampler,
            thresholds=self.config.resources,
            previous_restart_counts=self._restart_counts.get(stack_key),
            restart_loop_pattern=self.config.restart_loop_pattern,
        )
        if not report.healthy:
            logger.warning("Stack unhealthy", stack_key=stack_key, issues=report.issues)
        outcome = apply_policy(self.controller, report, auto_restart)
        return StackStatus(report=report, outcome=outcome)

    async def _process_isolated(self, stack_key: StackKey, auto_restart: bool) -> StackStatus:
        try:
            return await asyncio.to_thread(self._process_stack, stack_key, auto_restart)
        except Exception as exc:
            logger.exception("Stack check crashed", stack_key=stack_key)
            return _fault_status(stack_key, exc)

    async def _process_shared(self, stack_key: StackKey, auto_restart: bool) -> StackStatus:
        """Join in-flight work for the stack instead of probing (and restarting) it twice."""
        task = self._inflight.get(stack_key)
        if task is None:
            task = asyncio.ensure_future(self._process_isolated(stack_key, auto_restart))
            self._inflight[stack_key] = task

            def _done(finished: asyncio.Task[StackStatus]) -> None:
                if self._inflight.get(stack_key) is finished:
                    del self._inflight[stack_key]

            task.add_done_callback(_done)
        return await asyncio.shield(task)

    def _remember(self, status: StackStatus) -> None:
        self._latest[status.stack_key] = status
        counts = restart_counts(status.report)
        if counts:
            self._restart_counts[status.stack_key] = counts

    async def check_stack(self, stack_key: StackKey, *, auto_restart: bool | None = None) -> RemediationOutcome:
        """
        On-demand probe + policy for one stack. Not recorded as a history cycle.
        A check that lands while the stack is being processed returns that result.
        """
        enabled = self.config.auto_restart if auto_restart is None else bool(auto_restart)
        status = await self._process_shared(stack_key, enabled)
        self._remember(status)
        return status.outcome

    # ------------------------------
    # Cycles
    # ------------------------------
    async def run_cycle(self, *, auto_restart: bool | None = None, record: bool = True) -> HistoryEntry | None:
        """
        Returns the cycle's entry, or None when the cycle was skipped (overlap, no stacks)
        or dropped because shutdown was requested before every stack was processed.

        With record=False the entry is neither persisted nor alerted on.
        """
        if self._cycle_lock.locked():
            self.cycles_skipped += 1
            logger.warning("Previous cycle still running; skipping tick", skipped_total=self.cycles_skipped)
            return None

        async with self._cycle_lock:
            enabled = self.config.auto_restart if auto_restart is None else auto_restart
            return await self._run_cycle_locked(enabled, record)

    async def _run_cycle_locked(self, auto_restart: bool, record: bool) -> HistoryEntry | None:
        cycle_started = time.monotonic()
        try:
            keys = await asyncio.to_thread(self.controller.enumerate_deployed_stacks)
        except Exception:
            logger.exception("Failed to enumerate deployed stacks")
            return None
        if not keys:
            logger.info("No deployed stacks found")
            return None

        sem = asyncio.Semaphore(self.config.probe_concurrency)

        async def _one(stack_key: StackKey) -> StackStatus | None:
            async with sem:
                if self._stop.is_set():
                    return None
                return await self._process_shared(stack_key, auto_restart)

        results = await asyncio.gather(*(_one(k) for k in sorted(set(keys))))
        if any(r is None for r in results):
            logger.warning("Shutdown requested mid-cycle; dropping partial cycle")
            return None

        statuses = sorted((r for r in results if r is not None), key=lambda s: s.stack_key)
        # Stacks removed since the last cycle drop out of the latest view.
        self._latest = {k: v for k, v in self._latest.items() if k in keys}
        self._restart_counts = {k: v for k, v in self._restart_counts.items() if k in keys}
        for status in statuses:
            self._remember(status)

        entry = HistoryEntry(
            timestamp=utcnow(),
            reports=[s.report for s in statuses],
            outcomes=[s.outcome for s in statuses],
        )
        if record:
            self.store.append(entry)
            try:
                self.store.flush()
                self.history_write_fail_streak = 0
            except PersistenceError as exc:
                self.history_write_fail_streak += 1
                logger.warning("Failed to persist history", error=str(exc), fail_streak=self.history_write_fail_streak)

            await self.dispatcher.notify(entry.outcomes)

        self.cycles_completed += 1
        healthy = sum(1 for o in entry.outcomes if o.status == RemediationStatus.HEALTHY)
        logger.info(
            "Cycle complete",
            stacks=len(entry.outcomes),
            healthy=healthy,
            elapsed_seconds=round(time.monotonic() - cycle_started, 3),
        )
        return entry

    # ------------------------------
    # Lifecycle
    # ------------------------------
    def _build_scheduler(self) -> AsyncIOScheduler:
        scheduler = AsyncIOScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self.run_cycle,
            trigger=IntervalTrigger(seconds=self.config.probe_interval_seconds, timezone=timezone.utc),
            id=CYCLE_JOB_ID,
            name="Stack health cycle",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        return scheduler

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Run cycles until the stop event is set, then finish the in-flight cycle and stop."""
        if self.state != SchedulerState.IDLE:
            raise RuntimeError(f"scheduler cannot start from state {self.state.value}")
        if stop_event is not None:
            self._stop = stop_event

        logger.info(
            "Monitor started",
            interval_seconds=self.config.probe_interval_seconds,
            auto_restart=self.config.auto_restart,
            webhook="configured" if self.dispatcher.enabled else "not set",
            history=str(self.store.path) if self.store.persistent else "in-memory",
        )
        scheduler = self._build_scheduler()
        self.state = SchedulerState.RUNNING
        scheduler.start()
        try:
            await self._stop.wait()
        finally:
            self.state = SchedulerState.SHUTTING_DOWN
            scheduler.shutdown(wait=False)
            # Let an in-flight cycle finish (or drop) before reporting stopped.
            async with self._cycle_lock:
                pass
            self.state = SchedulerState.STOPPED
            logger.info("Monitor stopped", cycles_completed=self.cycles_completed, cycles_skipped=self.cycles_skipped)

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "cycles_completed": self.cycles_completed,
            "cycles_skipped": self.cycles_skipped,
            "history_entries": len(self.store),
            "history_write_fail_streak": self.history_write_fail_streak,
            "interval_seconds": self.config.probe_interval_seconds,
            "auto_restart": self.config.auto_restart,
        }
