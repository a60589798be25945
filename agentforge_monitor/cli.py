from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import TextIO

import structlog
import uvicorn
import yaml
from pydantic import ValidationError

from .alerts import AlertDispatcher
from .api import create_app
from .compose import ComposeController
from .config import MonitorConfig, load_config
from .errors import PersistenceError
from .history import HistoryStore
from .models import RemediationStatus, RunState, StackStatus
from .resources import HostResourceSampler
from .scheduler import MonitorScheduler


logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_UNHEALTHY = 1
EXIT_FATAL = 2


def configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # Webhook URLs embed secrets; keep request lines out of the logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def open_history(config: MonitorConfig) -> HistoryStore:
    """Raises PersistenceError when the history location is unusable and history is strict."""
    store = HistoryStore(config.resolved_history_path(), capacity=config.history_capacity)
    try:
        store.ensure_writable()
    except PersistenceError as exc:
        if config.history_strict:
            raise
        logger.warning("History disabled; running with in-memory history only", error=str(exc))
        store = HistoryStore(None, capacity=config.history_capacity)
    store.load()
    return store


def build_monitor(config: MonitorConfig, store: HistoryStore) -> MonitorScheduler:
    controller = ComposeController(
        config.data_root,
        query_timeout_seconds=config.adapter_timeout_seconds,
        restart_timeout_seconds=config.restart_timeout_seconds,
    )
    dispatcher = AlertDispatcher(config.webhook_url, timeout_seconds=config.webhook_timeout_seconds)
    sampler = HostResourceSampler(config.resources.disk_path) if config.resources.enabled else None
    return MonitorScheduler(config, controller, store, dispatcher=dispatcher, sampler=sampler)


def print_summary(monitor: MonitorScheduler, statuses: list[StackStatus], out: TextIO | None = None) -> bool:
    """Human-readable per-stack summary. Returns True if every stack is healthy."""
    if out is None:
        out = sys.stdout
    all_healthy = True
    out.write("\n🏥 AgentForge Health Check\n\n" + "─" * 50 + "\n")
    for status in statuses:
        report = status.report
        icon = "✅" if status.outcome.status == RemediationStatus.HEALTHY else "❌"
        out.write(f"{icon} {monitor.config.display_name(report.stack_key)} ({report.stack_key}) — {status.outcome.status.value}\n")
        for c in report.containers:
            c_icon = "  🟢" if c.run_state == RunState.RUNNING else "  🔴"
            out.write(f"{c_icon} {c.name} — {c.run_state.value}\n")
        for issue in report.issues:
            out.write(f"  ⚠️  {issue}\n")
        for warning in report.warnings:
            out.write(f"  ℹ️  {warning}\n")
        if not status.outcome.ok:
            all_healthy = False
        out.write("\n")
    out.write("─" * 50 + "\n")
    if all_healthy:
        out.write("✅ All agents healthy!\n\n")
    else:
        out.write("⚠️  Some agents have issues. Check the compose logs for details.\n\n")
    return all_healthy


async def _serve_api(monitor: MonitorScheduler, stop: asyncio.Event) -> None:
    config = monitor.config
    server = uvicorn.Server(
        uvicorn.Config(create_app(monitor), host=config.api_host, port=int(config.api_port), log_level="warning")
    )

    async def _watch_stop() -> None:
        await stop.wait()
        server.should_exit = True

    watcher = asyncio.create_task(_watch_stop())
    try:
        await server.serve()
    finally:
        # The API going down (e.g. it captured the signal) stops the monitor too.
        stop.set()
        await watcher


async def run_daemon(monitor: MonitorScheduler, *, once: bool = False) -> int:
    if once:
        await monitor.run_cycle()
        return EXIT_OK

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    tasks = [monitor.run(stop)]
    if monitor.config.api_port:
        tasks.append(_serve_api(monitor, stop))
    await asyncio.gather(*tasks)
    return EXIT_OK


async def run_check(monitor: MonitorScheduler, stack_key: str | None, *, heal: bool) -> int:
    if stack_key:
        await monitor.check_stack(stack_key, auto_restart=heal)
        status = monitor.latest_status(stack_key)
        statuses = [status] if status is not None else []
    else:
        entry = await monitor.run_cycle(auto_restart=heal, record=False)
        if entry is None:
            print("No deployed agents found.\n")
            return EXIT_OK
        statuses = monitor.latest_statuses()
    return EXIT_OK if print_summary(monitor, statuses) else EXIT_UNHEALTHY


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agentforge-monitor", description="AgentForge stack health monitor")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $AGENTFORGE_MONITOR_CONFIG)")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Run the monitoring daemon")
    run_p.add_argument("--once", action="store_true", help="Run one cycle and exit")

    check_p = sub.add_parser(
        "check", help="Check stack health once and print a summary (no history entry, no webhook alert)"
    )
    check_p.add_argument("stack", nargs="?", help="Stack key (default: all deployed stacks)")
    check_p.add_argument("--heal", action="store_true", help="Restart unhealthy stacks")

    hist_p = sub.add_parser("history", help="Print recent history entries as JSON")
    hist_p.add_argument("-n", type=int, default=10, help="Number of entries")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
    except (ValueError, ValidationError, yaml.YAMLError) as exc:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid configuration", error=str(exc))
        return EXIT_FATAL
    configure_logging(args.log_level or config.log_level)

    try:
        store = open_history(config)
    except PersistenceError as exc:
        logger.error("Cannot use history location; refusing to start", error=str(exc))
        return EXIT_FATAL

    if args.command == "history":
        print(json.dumps([e.to_dict() for e in store.recent(args.n)], ensure_ascii=False, indent=2))
        return EXIT_OK

    monitor = build_monitor(config, store)
    if args.command == "check":
        return asyncio.run(run_check(monitor, args.stack, heal=bool(args.heal)))
    return asyncio.run(run_daemon(monitor, once=bool(getattr(args, "once", False))))


if __name__ == "__main__":
    raise SystemExit(main())
