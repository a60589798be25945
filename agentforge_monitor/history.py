from __future__ import annotations

import json
from collections import deque
from pathlib import Path
from typing import Any, Iterable

import structlog

from .errors import PersistenceError
from .models import HistoryEntry, StackKey, StackStatus


logger = structlog.get_logger(__name__)

DEFAULT_CAPACITY = 100


def coerce_history(raw: Any) -> list[HistoryEntry]:
    """
    Best-effort decode for history loaded from disk.
    Skips invalid entries to be robust to partial writes or older formats.
    """
    if isinstance(raw, dict):
        raw = raw.get("entries")
    if not isinstance(raw, list):
        return []

    entries: list[HistoryEntry] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            entries.append(HistoryEntry.from_dict(item))
        except (KeyError, TypeError, ValueError):
            continue
    entries.sort(key=lambda e: e.timestamp)
    return entries


def write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)


class HistoryStore:
    """
    Size-bounded, chronological log of cycles. Oldest entries are evicted first.

    The backing file is owned by a single monitor process; concurrent writers against
    the same file are not serialized.
    """

    def __init__(self, path: str | Path | None, capacity: int = DEFAULT_CAPACITY) -> None:
        if int(capacity) < 1:
            raise ValueError("capacity must be >= 1")
        self.path = Path(path).expanduser() if path is not None else None
        self.capacity = int(capacity)
        self._entries: deque[HistoryEntry] = deque(maxlen=self.capacity)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def persistent(self) -> bool:
        return self.path is not None

    def append(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)

    def extend(self, entries: Iterable[HistoryEntry]) -> None:
        for entry in entries:
            self.append(entry)

    def recent(self, n: int | None = None) -> list[HistoryEntry]:
        """Newest last."""
        items = list(self._entries)
        if n is None:
            return items
        n = max(0, int(n))
        return items[-n:] if n else []

    def latest(self, stack_key: StackKey) -> StackStatus | None:
        for entry in reversed(self._entries):
            outcome = entry.outcome_for(stack_key)
            if outcome is None:
                continue
            for report in entry.reports:
                if report.stack_key == stack_key:
                    return StackStatus(report=report, outcome=outcome)
        return None

    def ensure_writable(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            probe = self.path.with_name(f"{self.path.name}.probe")
            probe.write_text("", encoding="utf-8")
            probe.unlink()
        except OSError as exc:
            raise PersistenceError(f"history location {self.path} is not writable: {exc}") from exc

    def load(self) -> int:
        """Replace in-memory entries with the persisted ones. Unreadable files load as empty."""
        self._entries.clear()
        if self.path is None or not self.path.exists():
            return 0
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("History file unreadable, starting empty", path=str(self.path), error=str(exc))
            return 0
        entries = coerce_history(raw)
        self.extend(entries)
        logger.info("History loaded", path=str(self.path), entries=len(self._entries))
        return len(self._entries)

    def flush(self) -> None:
        if self.path is None:
            return
        payload = [entry.to_dict() for entry in self._entries]
        try:
            write_json_atomic(self.path, payload)
        except OSError as exc:
            raise PersistenceError(f"failed to write history {self.path}: {exc}") from exc
