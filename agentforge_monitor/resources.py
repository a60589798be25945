from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import ResourceThresholds


@dataclass(frozen=True)
class ResourceSample:
    disk_used_percent: float | None
    mem_used_percent: float | None


class ResourceSampler(Protocol):
    def sample(self) -> ResourceSample: ...


def read_linux_meminfo_kb(path: Path = Path("/proc/meminfo")) -> dict[str, int]:
    """
    Best-effort host memory snapshot (Linux only).
    On macOS/Windows, returns {}.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return {}

    values: dict[str, int] = {}
    for line in raw.splitlines():
        if ":" not in line:
            continue
        key, rest = line.split(":", 1)
        parts = rest.strip().split()
        if not parts:
            continue
        try:
            values[key.strip()] = int(parts[0])
        except ValueError:
            continue
    return values


def mem_used_percent(meminfo: dict[str, int]) -> float | None:
    total = meminfo.get("MemTotal")
    avail = meminfo.get("MemAvailable")
    if not total or total <= 0 or avail is None:
        return None
    return round((1.0 - (avail / float(total))) * 100.0, 3)


def disk_used_percent(path: str) -> float | None:
    try:
        total, used, _free = shutil.disk_usage(path)
    except OSError:
        return None
    if total <= 0:
        return None
    return round((used / float(total)) * 100.0, 3)


class HostResourceSampler:
    def __init__(self, disk_path: str = "/", meminfo_path: Path = Path("/proc/meminfo")) -> None:
        self.disk_path = disk_path
        self.meminfo_path = meminfo_path

    def sample(self) -> ResourceSample:
        return ResourceSample(
            disk_used_percent=disk_used_percent(self.disk_path),
            mem_used_percent=mem_used_percent(read_linux_meminfo_kb(self.meminfo_path)),
        )


def _format_percent(value: float) -> str:
    return f"{float(value):.0f}%"


def evaluate_resources(sample: ResourceSample, thresholds: ResourceThresholds) -> tuple[list[str], list[str]]:
    """
    Returns (issues, warnings). Issues come from hard thresholds and make a stack unhealthy;
    warnings come from soft thresholds and are informational.
    """
    issues: list[str] = []
    warnings: list[str] = []

    disk = sample.disk_used_percent
    if disk is not None:
        if thresholds.disk_hard_percent is not None and disk > thresholds.disk_hard_percent:
            issues.append(f"Disk usage critical: {_format_percent(disk)}")
        elif thresholds.disk_soft_percent is not None and disk > thresholds.disk_soft_percent:
            warnings.append(f"Disk usage warning: {_format_percent(disk)}")

    mem = sample.mem_used_percent
    if mem is not None:
        if thresholds.mem_hard_percent is not None and mem > thresholds.mem_hard_percent:
            issues.append(f"Memory usage critical: {_format_percent(mem)}")
        elif thresholds.mem_soft_percent is not None and mem > thresholds.mem_soft_percent:
            warnings.append(f"Memory usage warning: {_format_percent(mem)}")

    return issues, warnings
