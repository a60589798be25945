"""Reduce raw container state for one stack into a HealthReport."""

from __future__ import annotations

import re
from datetime import datetime

import structlog

from .compose import StackController
from .config import ResourceThresholds
from .errors import AdapterError, NotDeployedError
from .models import (
    NO_CONTAINERS_ISSUE,
    NOT_DEPLOYED_ISSUE,
    PROBE_ERROR_PREFIX,
    ContainerObservation,
    HealthReport,
    HealthState,
    RunState,
    StackKey,
)
from .resources import ResourceSampler, evaluate_resources


logger = structlog.get_logger(__name__)

DEFAULT_RESTART_LOOP_PATTERN = re.compile(r"restarting", re.IGNORECASE)


def _compile_pattern(pattern: str | re.Pattern[str] | None) -> re.Pattern[str]:
    if pattern is None:
        return DEFAULT_RESTART_LOOP_PATTERN
    if isinstance(pattern, re.Pattern):
        return pattern
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        # Treat invalid regex as a literal substring match.
        return re.compile(re.escape(pattern), re.IGNORECASE)


def restart_counts(report: HealthReport) -> dict[str, int]:
    return {c.name: c.restart_count for c in report.containers if c.restart_count is not None}


def _in_restart_loop(
    container: ContainerObservation,
    previous_restart_counts: dict[str, int],
    pattern: re.Pattern[str],
) -> bool:
    if container.restart_count is not None:
        prev = previous_restart_counts.get(container.name)
        return prev is not None and container.restart_count > prev
    return bool(container.status_text and pattern.search(container.status_text))


def container_issues(
    container: ContainerObservation,
    *,
    previous_restart_counts: dict[str, int] | None = None,
    restart_loop_pattern: str | re.Pattern[str] | None = None,
) -> list[str]:
    issues = []
    if container.run_state != RunState.RUNNING:
        issues.append(f"{container.name} is {container.run_state.value}")
    if _in_restart_loop(container, previous_restart_counts or {}, _compile_pattern(restart_loop_pattern)):
        issues.append(f"{container.name} restart loop")
    if container.health_state == HealthState.UNHEALTHY:
        issues.append(f"{container.name} health check failing")
    return issues


def probe_stack(
    controller: StackController,
    stack_key: StackKey,
    *,
    sampler: ResourceSampler | None = None,
    thresholds: ResourceThresholds | None = None,
    previous_restart_counts: dict[str, int] | None = None,
    restart_loop_pattern: str | re.Pattern[str] | None = None,
    now: datetime | None = None,
) -> HealthReport:
    """
    Probe one stack. Business conditions (not deployed, no containers, adapter failure)
    are encoded in the report's issues; nothing is raised for them.
    """
    try:
        if not controller.is_deployed(stack_key):
            return HealthReport.build(stack_key=stack_key, containers=[], issues=[NOT_DEPLOYED_ISSUE], timestamp=now)
        containers = controller.list_containers(stack_key)
    except NotDeployedError:
        return HealthReport.build(stack_key=stack_key, containers=[], issues=[NOT_DEPLOYED_ISSUE], timestamp=now)
    except AdapterError as exc:
        logger.warning("Probe failed", stack_key=stack_key, error=str(exc), timed_out=exc.timed_out)
        return HealthReport.build(
            stack_key=stack_key,
            containers=[],
            issues=[f"{PROBE_ERROR_PREFIX}{exc}"],
            error=str(exc),
            timestamp=now,
        )

    if not containers:
        return HealthReport.build(stack_key=stack_key, containers=[], issues=[NO_CONTAINERS_ISSUE], timestamp=now)

    pattern = _compile_pattern(restart_loop_pattern)
    issues: list[str] = []
    for container in containers:
        issues.extend(
            container_issues(container, previous_restart_counts=previous_restart_counts, restart_loop_pattern=pattern)
        )

    warnings: list[str] = []
    if sampler is not None:
        try:
            sample = sampler.sample()
        except Exception as exc:
            logger.debug("Resource sampling failed", stack_key=stack_key, error=str(exc))
        else:
            resource_issues, warnings = evaluate_resources(sample, thresholds or ResourceThresholds())
            issues.extend(resource_issues)

    return HealthReport.build(stack_key=stack_key, containers=containers, issues=issues, warnings=warnings, timestamp=now)
