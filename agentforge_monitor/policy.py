"""Decide whether to restart a stack based on its latest HealthReport."""

from __future__ import annotations

from datetime import datetime

import structlog

from .compose import StackController
from .errors import AdapterError
from .models import HealthReport, RemediationOutcome, RemediationStatus, utcnow


logger = structlog.get_logger(__name__)


def classify_report(report: HealthReport) -> RemediationStatus:
    if report.healthy:
        return RemediationStatus.HEALTHY
    if report.probe_failed:
        return RemediationStatus.PROBE_ERROR
    if not report.containers:
        return RemediationStatus.NO_CONTAINERS
    return RemediationStatus.UNHEALTHY


def apply_policy(
    controller: StackController,
    report: HealthReport,
    auto_restart_enabled: bool,
    *,
    now: datetime | None = None,
) -> RemediationOutcome:
    """
    At most one restart attempt per call. Probe errors and stacks without containers
    are never restarted; a still-unhealthy stack is retried on the next cycle.
    """
    ts = now or utcnow()
    status = classify_report(report)
    if status != RemediationStatus.UNHEALTHY or not auto_restart_enabled:
        return RemediationOutcome(
            stack_key=report.stack_key,
            timestamp=ts,
            status=status,
            issues=list(report.issues),
            error=report.error,
        )

    logger.info("Attempting auto-restart", stack_key=report.stack_key, issues=report.issues)
    try:
        controller.restart(report.stack_key)
    except AdapterError as exc:
        logger.error("Auto-restart failed", stack_key=report.stack_key, error=str(exc))
        return RemediationOutcome(
            stack_key=report.stack_key,
            timestamp=ts,
            status=RemediationStatus.REMEDIATION_FAILED,
            issues=list(report.issues),
            restarted=False,
            error=str(exc),
        )

    logger.info("Auto-restart successful", stack_key=report.stack_key)
    return RemediationOutcome(
        stack_key=report.stack_key,
        timestamp=ts,
        status=RemediationStatus.HEALED,
        issues=list(report.issues),
        restarted=True,
    )
