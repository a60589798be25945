"""Stack controller backed by the docker compose CLI."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any, Protocol

import structlog

from .errors import AdapterError, NotDeployedError
from .models import ContainerObservation, HealthState, RunState, StackKey


logger = structlog.get_logger(__name__)

COMPOSE_FILE = "docker-compose.yml"
EXCLUDED_DIRS = {"backups"}

_RUN_STATES = {
    "running": RunState.RUNNING,
    "exited": RunState.EXITED,
    "restarting": RunState.RESTARTING,
}
_HEALTH_STATES = {
    "healthy": HealthState.HEALTHY,
    "unhealthy": HealthState.UNHEALTHY,
}


class StackController(Protocol):
    def enumerate_deployed_stacks(self) -> list[StackKey]: ...

    def is_deployed(self, stack_key: StackKey) -> bool: ...

    def list_containers(self, stack_key: StackKey) -> list[ContainerObservation]: ...

    def restart(self, stack_key: StackKey) -> None: ...

    def logs(self, stack_key: StackKey, tail: int = 100) -> str: ...


def _coerce_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_json_records(output: str) -> list[dict[str, Any]]:
    """Compose emits either one JSON array or one JSON object per line, depending on version."""
    text = (output or "").strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Failed to parse compose output", output=text[:200])
            return []
        return [r for r in data if isinstance(r, dict)]

    records: list[dict[str, Any]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Failed to parse compose record", line=line[:200])
            continue
        if isinstance(record, dict):
            records.append(record)
    return records


def observation_from_record(record: dict[str, Any], restart_count: int | None = None) -> ContainerObservation:
    name = str(record.get("Name") or record.get("Names") or record.get("ID") or "").strip() or "unknown"
    state = str(record.get("State") or "").strip().lower()
    health = str(record.get("Health") or "").strip().lower()
    return ContainerObservation(
        name=name,
        run_state=_RUN_STATES.get(state, RunState.UNKNOWN),
        health_state=_HEALTH_STATES.get(health, HealthState.NONE),
        status_text=str(record.get("Status") or state or "").strip(),
        restart_count=restart_count,
    )


def parse_compose_ps(output: str, restart_counts: dict[str, int] | None = None) -> list[ContainerObservation]:
    counts = restart_counts or {}
    observations = []
    for record in _parse_json_records(output):
        obs = observation_from_record(record)
        if obs.name in counts:
            obs = observation_from_record(record, restart_count=counts[obs.name])
        observations.append(obs)
    observations.sort(key=lambda o: o.name)
    return observations


def parse_inspect_restart_counts(output: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    for record in _parse_json_records(output):
        name = str(record.get("Name") or "").lstrip("/")
        count = _coerce_int(record.get("RestartCount"))
        if name and count is not None:
            counts[name] = count
    return counts


class ComposeController:
    """Runs `docker compose` inside each stack's directory under the data root."""

    def __init__(
        self,
        data_root: str | Path,
        *,
        query_timeout_seconds: float = 15.0,
        restart_timeout_seconds: float = 60.0,
        docker_binary: str = "docker",
    ) -> None:
        self.data_root = Path(data_root).expanduser()
        self.query_timeout_seconds = float(query_timeout_seconds)
        self.restart_timeout_seconds = float(restart_timeout_seconds)
        self.docker_binary = docker_binary

    def _stack_dir(self, stack_key: StackKey) -> Path:
        return self.data_root / stack_key

    def _run_command(self, command: list[str], *, cwd: Path, timeout: float, stack_key: StackKey) -> str:
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=True,
            )
        except subprocess.TimeoutExpired as exc:
            raise AdapterError(
                f"{' '.join(command[1:3])} timed out after {timeout:g}s", stack_key=stack_key, timed_out=True
            ) from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip().splitlines()
            message = detail[-1] if detail else f"exit status {exc.returncode}"
            raise AdapterError(message, stack_key=stack_key) from exc
        except OSError as exc:
            raise AdapterError(f"{type(exc).__name__}: {exc}", stack_key=stack_key) from exc
        return result.stdout

    def enumerate_deployed_stacks(self) -> list[StackKey]:
        if not self.data_root.is_dir():
            return []
        keys = []
        for entry in self.data_root.iterdir():
            if entry.name in EXCLUDED_DIRS or not entry.is_dir():
                continue
            if (entry / COMPOSE_FILE).is_file():
                keys.append(entry.name)
        return sorted(keys)

    def is_deployed(self, stack_key: StackKey) -> bool:
        key = str(stack_key or "")
        if not key or "/" in key or "\\" in key or key.startswith(".") or key in EXCLUDED_DIRS:
            return False
        return (self._stack_dir(key) / COMPOSE_FILE).is_file()

    def _restart_counts(self, stack_key: StackKey, names: list[str]) -> dict[str, int]:
        if not names:
            return {}
        try:
            output = self._run_command(
                [self.docker_binary, "inspect", *names],
                cwd=self._stack_dir(stack_key),
                timeout=self.query_timeout_seconds,
                stack_key=stack_key,
            )
        except AdapterError as exc:
            # Restart-loop detection falls back to the status text.
            logger.debug("docker inspect failed", stack_key=stack_key, error=str(exc))
            return {}
        return parse_inspect_restart_counts(output)

    def list_containers(self, stack_key: StackKey) -> list[ContainerObservation]:
        if not self.is_deployed(stack_key):
            raise NotDeployedError(stack_key)
        output = self._run_command(
            [self.docker_binary, "compose", "ps", "--all", "--format", "json"],
            cwd=self._stack_dir(stack_key),
            timeout=self.query_timeout_seconds,
            stack_key=stack_key,
        )
        observations = parse_compose_ps(output)
        counts = self._restart_counts(stack_key, [o.name for o in observations])
        if counts:
            observations = parse_compose_ps(output, restart_counts=counts)
        return observations

    def restart(self, stack_key: StackKey) -> None:
        if not self.is_deployed(stack_key):
            raise NotDeployedError(stack_key)
        # `up -d` also recreates containers that exited, unlike `compose restart`.
        self._run_command(
            [self.docker_binary, "compose", "up", "-d"],
            cwd=self._stack_dir(stack_key),
            timeout=self.restart_timeout_seconds,
            stack_key=stack_key,
        )
        logger.info("Stack restarted", stack_key=stack_key)

    def logs(self, stack_key: StackKey, tail: int = 100) -> str:
        if not self.is_deployed(stack_key):
            raise NotDeployedError(stack_key)
        return self._run_command(
            [self.docker_binary, "compose", "logs", "--no-color", f"--tail={max(1, int(tail))}"],
            cwd=self._stack_dir(stack_key),
            timeout=self.query_timeout_seconds,
            stack_key=stack_key,
        )
