from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


StackKey = str


class RunState(str, Enum):
    RUNNING = "running"
    EXITED = "exited"
    RESTARTING = "restarting"
    UNKNOWN = "unknown"


class HealthState(str, Enum):
    NONE = "none"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RemediationStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    HEALED = "healed"
    REMEDIATION_FAILED = "remediation_failed"
    NO_CONTAINERS = "no_containers"
    PROBE_ERROR = "probe_error"


NOT_DEPLOYED_ISSUE = "not deployed"
NO_CONTAINERS_ISSUE = "no containers"
PROBE_ERROR_PREFIX = "probe_error: "


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(x) for x in value if x is not None]


@dataclass(frozen=True)
class ContainerObservation:
    name: str
    run_state: RunState
    health_state: HealthState = HealthState.NONE
    status_text: str = ""
    # From `docker inspect` when available; None means the adapter has no structured signal.
    restart_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "run_state": self.run_state.value,
            "health_state": self.health_state.value,
            "status_text": self.status_text,
            "restart_count": self.restart_count,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ContainerObservation":
        restart_count = raw.get("restart_count")
        return cls(
            name=str(raw["name"]),
            run_state=RunState(str(raw.get("run_state") or "unknown")),
            health_state=HealthState(str(raw.get("health_state") or "none")),
            status_text=str(raw.get("status_text") or ""),
            restart_count=int(restart_count) if restart_count is not None else None,
        )


@dataclass(frozen=True)
class HealthReport:
    stack_key: StackKey
    timestamp: datetime
    containers: list[ContainerObservation]
    issues: list[str]
    healthy: bool
    # Soft resource warnings; never affect `healthy`.
    warnings: list[str] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def build(
        cls,
        *,
        stack_key: StackKey,
        containers: list[ContainerObservation],
        issues: list[str],
        warnings: list[str] | None = None,
        error: str | None = None,
        timestamp: datetime | None = None,
    ) -> "HealthReport":
        containers = list(containers)
        issues = list(issues)
        healthy = (
            bool(containers)
            and all(c.run_state == RunState.RUNNING for c in containers)
            and not any(c.health_state == HealthState.UNHEALTHY for c in containers)
            and not issues
        )
        return cls(
            stack_key=stack_key,
            timestamp=timestamp or utcnow(),
            containers=containers,
            issues=issues,
            healthy=healthy,
            warnings=list(warnings or []),
            error=error,
        )

    @property
    def probe_failed(self) -> bool:
        return self.error is not None

    @property
    def not_deployed(self) -> bool:
        return NOT_DEPLOYED_ISSUE in self.issues

    def to_dict(self) -> dict[str, Any]:
        return {
            "stack_key": self.stack_key,
            "timestamp": self.timestamp.isoformat(),
            "containers": [c.to_dict() for c in self.containers],
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "healthy": self.healthy,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "HealthReport":
        containers = [
            ContainerObservation.from_dict(c) for c in (raw.get("containers") or []) if isinstance(c, dict)
        ]
        error = raw.get("error")
        # Recompute rather than trust the stored flag.
        return cls.build(
            stack_key=str(raw["stack_key"]),
            containers=containers,
            issues=_str_list(raw.get("issues")),
            warnings=_str_list(raw.get("warnings")),
            error=str(error) if error is not None else None,
            timestamp=_parse_ts(raw.get("timestamp")),
        )


@dataclass(frozen=True)
class RemediationOutcome:
    stack_key: StackKey
    timestamp: datetime
    status: RemediationStatus
    issues: list[str]
    restarted: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == RemediationStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "stack_key": self.stack_key,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
            "issues": list(self.issues),
            "restarted": self.restarted,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "RemediationOutcome":
        error = raw.get("error")
        return cls(
            stack_key=str(raw["stack_key"]),
            timestamp=_parse_ts(raw.get("timestamp")),
            status=RemediationStatus(str(raw["status"])),
            issues=_str_list(raw.get("issues")),
            restarted=bool(raw.get("restarted", False)),
            error=str(error) if error is not None else None,
        )


@dataclass(frozen=True)
class StackStatus:
    report: HealthReport
    outcome: RemediationOutcome

    @property
    def stack_key(self) -> StackKey:
        return self.report.stack_key


@dataclass(frozen=True)
class HistoryEntry:
    """One scheduler cycle across all stacks, ordered by stack key."""

    timestamp: datetime
    reports: list[HealthReport]
    outcomes: list[RemediationOutcome] = field(default_factory=list)

    def outcome_for(self, stack_key: StackKey) -> RemediationOutcome | None:
        for outcome in self.outcomes:
            if outcome.stack_key == stack_key:
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "reports": [r.to_dict() for r in self.reports],
            "outcomes": [o.to_dict() for o in self.outcomes],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "HistoryEntry":
        return cls(
            timestamp=_parse_ts(raw.get("timestamp")),
            reports=[HealthReport.from_dict(r) for r in (raw.get("reports") or []) if isinstance(r, dict)],
            outcomes=[
                RemediationOutcome.from_dict(o) for o in (raw.get("outcomes") or []) if isinstance(o, dict)
            ],
        )
