from __future__ import annotations

import threading
import time
from typing import Callable

import pytest
import structlog

from agentforge_monitor.errors import AdapterError, NotDeployedError
from agentforge_monitor.models import ContainerObservation, HealthState, RunState
from agentforge_monitor.resources import ResourceSample


def running(name: str, health: HealthState = HealthState.NONE, restart_count: int | None = None) -> ContainerObservation:
    return ContainerObservation(
        name=name,
        run_state=RunState.RUNNING,
        health_state=health,
        status_text="Up 5 minutes",
        restart_count=restart_count,
    )


def exited(name: str) -> ContainerObservation:
    return ContainerObservation(name=name, run_state=RunState.EXITED, status_text="Exited (1) 2 minutes ago")


class FakeController:
    """In-memory stack controller. Safe to call from worker threads."""

    def __init__(self) -> None:
        self.stacks: dict[str, list[ContainerObservation] | Exception] = {}
        self.restart_errors: dict[str, Exception] = {}
        self.heal_on_restart = True
        self.list_delay_seconds = 0.0
        self.list_started = threading.Event()
        self.on_list: Callable[[str], None] | None = None
        self.restart_calls: list[str] = []
        self.list_calls: list[str] = []
        self.logs_by_stack: dict[str, str] = {}
        self._lock = threading.Lock()

    def enumerate_deployed_stacks(self) -> list[str]:
        with self._lock:
            return list(self.stacks)

    def is_deployed(self, stack_key: str) -> bool:
        with self._lock:
            return stack_key in self.stacks

    def list_containers(self, stack_key: str) -> list[ContainerObservation]:
        self.list_started.set()
        if self.on_list is not None:
            self.on_list(stack_key)
        if self.list_delay_seconds:
            time.sleep(self.list_delay_seconds)
        with self._lock:
            self.list_calls.append(stack_key)
            if stack_key not in self.stacks:
                raise NotDeployedError(stack_key)
            value = self.stacks[stack_key]
        if isinstance(value, Exception):
            raise value
        return list(value)

    def restart(self, stack_key: str) -> None:
        with self._lock:
            self.restart_calls.append(stack_key)
            error = self.restart_errors.get(stack_key)
            if error is not None:
                raise error
            current = self.stacks.get(stack_key)
            if self.heal_on_restart and isinstance(current, list):
                self.stacks[stack_key] = [running(c.name) for c in current]

    def logs(self, stack_key: str, tail: int = 100) -> str:
        if stack_key not in self.stacks:
            raise NotDeployedError(stack_key)
        value = self.stacks[stack_key]
        if isinstance(value, AdapterError):
            raise value
        return self.logs_by_stack.get(stack_key, "")


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def controller() -> FakeController:
    return FakeController()


class FakeSampler:
    def __init__(self, disk: float | None = None, mem: float | None = None, error: Exception | None = None) -> None:
        self.disk = disk
        self.mem = mem
        self.error = error

    def sample(self) -> ResourceSample:
        if self.error is not None:
            raise self.error
        return ResourceSample(disk_used_percent=self.disk, mem_used_percent=self.mem)
