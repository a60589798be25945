"""Batched webhook alerts for stacks that are not healthy."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

import httpx
import structlog

from .errors import DeliveryError
from .models import RemediationOutcome, RemediationStatus, utcnow


logger = structlog.get_logger(__name__)

WEBHOOK_MAX_MESSAGE_LEN = 1900

_ACTIONS: dict[RemediationStatus, tuple[str, str]] = {
    RemediationStatus.HEALED: ("🔄", "auto-restarted"),
    RemediationStatus.REMEDIATION_FAILED: ("❌", "auto-restart failed"),
    RemediationStatus.UNHEALTHY: ("🚨", "needs attention"),
    RemediationStatus.NO_CONTAINERS: ("⚠️", "no containers"),
    RemediationStatus.PROBE_ERROR: ("❓", "probe failed"),
}


def problem_outcomes(outcomes: Iterable[RemediationOutcome]) -> list[RemediationOutcome]:
    return [o for o in outcomes if o.status != RemediationStatus.HEALTHY]


def format_outcome_line(outcome: RemediationOutcome) -> str:
    icon, action = _ACTIONS.get(outcome.status, ("🚨", outcome.status.value))
    detail = ", ".join(outcome.issues) if outcome.issues else outcome.status.value
    return f"{icon} {outcome.stack_key}: {detail} ({action})"


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    cut = text.rfind("\n", 0, max_len - 2)
    if cut < max_len * 0.6:
        cut = max_len - 2
    return text[:cut].rstrip() + "\n…"


def build_alert_message(
    outcomes: Iterable[RemediationOutcome],
    *,
    now: datetime | None = None,
    max_len: int = WEBHOOK_MAX_MESSAGE_LEN,
) -> str | None:
    problems = sorted(problem_outcomes(outcomes), key=lambda o: o.stack_key)
    if not problems:
        return None
    lines = [format_outcome_line(o) for o in problems]
    ts = (now or utcnow()).isoformat(timespec="seconds")
    text = "🏥 AgentForge Monitor Alert\n\n" + "\n".join(lines) + f"\n\n_{ts}_"
    return _truncate(text, max_len)


class AlertDispatcher:
    """Posts one message per cycle to a webhook. Delivery failures are logged, never raised."""

    def __init__(
        self,
        webhook_url: str | None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.webhook_url = (webhook_url or "").strip() or None
        self.client = client
        self.timeout_seconds = float(timeout_seconds)

    @property
    def enabled(self) -> bool:
        return self.webhook_url is not None

    async def _post(self, client: httpx.AsyncClient, text: str) -> None:
        try:
            resp = await client.post(self.webhook_url, json={"content": text}, timeout=self.timeout_seconds)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc
        if not resp.is_success:
            raise DeliveryError(f"webhook returned HTTP {resp.status_code}", status_code=resp.status_code)

    async def deliver(self, text: str) -> None:
        if self.client is not None:
            await self._post(self.client, text)
            return
        async with httpx.AsyncClient() as client:
            await self._post(client, text)

    async def notify(self, outcomes: Iterable[RemediationOutcome]) -> bool:
        """Returns True only when a message was delivered."""
        if not self.enabled:
            return False
        outcomes = list(outcomes)
        text = build_alert_message(outcomes)
        if text is None:
            return False

        try:
            await self.deliver(text)
        except DeliveryError as exc:
            logger.warning("Webhook alert failed", error=str(exc), status_code=exc.status_code)
            return False
        logger.info("Webhook alert sent", stacks=len(problem_outcomes(outcomes)))
        return True
