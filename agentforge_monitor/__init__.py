"""Health evaluation and auto-remediation for AgentForge agent stacks."""

from .alerts import AlertDispatcher
from .compose import ComposeController, StackController
from .config import MonitorConfig, load_config
from .history import HistoryStore
from .policy import apply_policy
from .prober import probe_stack
from .scheduler import MonitorScheduler

__all__ = [
    "AlertDispatcher",
    "ComposeController",
    "HistoryStore",
    "MonitorConfig",
    "MonitorScheduler",
    "StackController",
    "apply_policy",
    "load_config",
    "probe_stack",
]
