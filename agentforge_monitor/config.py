"""Configuration management for the stack monitor."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


DEFAULT_DATA_ROOT = Path.home() / ".agentforge"


class ResourceThresholds(BaseModel):
    """Host resource limits folded into every health report."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True, description="Sample host disk/memory on each probe")
    disk_path: str = Field(default="/", description="Filesystem to sample for disk usage")
    disk_hard_percent: Optional[float] = Field(default=90.0, description="Disk usage that marks stacks unhealthy")
    disk_soft_percent: Optional[float] = Field(default=80.0, description="Disk usage that adds a warning")
    mem_hard_percent: Optional[float] = Field(default=90.0, description="Memory usage that marks stacks unhealthy")
    mem_soft_percent: Optional[float] = Field(default=None, description="Memory usage that adds a warning")


class MonitorConfig(BaseModel):
    """Process-wide monitor configuration, fixed at startup."""

    model_config = ConfigDict(frozen=True)

    # Scheduling
    probe_interval_seconds: int = Field(default=60, ge=1, description="Seconds between cycles")
    probe_concurrency: int = Field(default=4, ge=1, description="Stacks probed in parallel per cycle")

    # Remediation
    auto_restart: bool = Field(default=True, description="Restart unhealthy stacks automatically")

    # Alerting
    webhook_url: Optional[str] = Field(default=None, description="Webhook that receives batched alerts")
    webhook_timeout_seconds: float = Field(default=10.0, gt=0, description="Webhook request timeout")

    # Stack controller
    data_root: str = Field(default=str(DEFAULT_DATA_ROOT), description="Directory holding one folder per stack")
    adapter_timeout_seconds: float = Field(default=15.0, gt=0, description="Timeout for compose queries")
    restart_timeout_seconds: float = Field(default=60.0, gt=0, description="Timeout for compose restarts")
    restart_loop_pattern: str = Field(default="restarting", description="Status text regex for restart loops")

    # History
    history_path: Optional[str] = Field(default=None, description="History file (default: <data_root>/health.json)")
    history_capacity: int = Field(default=100, ge=1, description="Cycles kept in history")
    history_strict: bool = Field(default=True, description="Exit if the history file is unusable at startup")

    # Host resources
    resources: ResourceThresholds = Field(default_factory=ResourceThresholds)

    # Status API
    api_host: str = Field(default="127.0.0.1", description="Status API bind address")
    api_port: Optional[int] = Field(default=None, description="Status API port (disabled when unset)")

    # Static agent metadata
    display_names: dict[str, str] = Field(default_factory=dict, description="Stack key -> display name")

    log_level: str = Field(default="INFO", description="Logging level")

    def resolved_history_path(self) -> Path:
        if self.history_path:
            return Path(self.history_path).expanduser()
        return Path(self.data_root).expanduser() / "health.json"

    def display_name(self, stack_key: str) -> str:
        return self.display_names.get(stack_key) or stack_key


def _env_bool(raw: str) -> bool:
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"Invalid boolean value: {raw!r}")


_ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "MONITOR_INTERVAL": ("probe_interval_seconds", int),
    "AGENTFORGE_AUTO_RESTART": ("auto_restart", _env_bool),
    "AGENTFORGE_WEBHOOK": ("webhook_url", str),
    "AGENTFORGE_DATA_ROOT": ("data_root", str),
    "AGENTFORGE_HISTORY_PATH": ("history_path", str),
    "AGENTFORGE_HISTORY_CAPACITY": ("history_capacity", int),
    "AGENTFORGE_API_PORT": ("api_port", int),
    "LOG_LEVEL": ("log_level", str),
}


def load_config(config_path: Optional[str] = None, environ: Optional[dict[str, str]] = None) -> MonitorConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = env.get("AGENTFORGE_MONITOR_CONFIG")

    config_data: dict[str, Any] = {}
    if config_path and os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Config YAML must be a mapping")
        config_data.update(loaded)

    for env_name, (key, convert) in _ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None or not str(value).strip():
            continue
        config_data[key] = convert(str(value).strip())

    return MonitorConfig(**config_data)
