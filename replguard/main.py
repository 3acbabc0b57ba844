"""
ReplGuard — Command Line Entry Point

    replguard audit               [--nodes dc01,dc02 | --site HQ] [--fast]
    replguard repair              [--policy moderate] [--dry-run]
    replguard verify              [--previous-report reports/....json]
    replguard audit-repair-verify [--policy aggressive --verify-wait 60]

Logs go to stderr; the run headline is printed to stdout as JSON. The
exit code is the run outcome: 0 healthy or fully repaired, 2 issues
remain, 3 one or more nodes unreachable, 4 unexpected internal error.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from typing import Any

import orjson
import structlog

from replguard.clients.cache_store import JsonFileCacheStore
from replguard.clients.history import RunHistoryStore
from replguard.clients.http_agent import HttpRepairActuator, HttpReplicationDataSource
from replguard.clients.reporters import CsvReporter, JsonReporter, latest_report
from replguard.clients.topology import InventoryTopologyResolver
from replguard.clients.webhook import WebhookNotifier
from replguard.config import PolicyTier, ReplGuardConfig, load_config
from replguard.core.errors import ReplGuardError
from replguard.primitives.fleet import ScopeSelector
from replguard.systems.delta.cache import DeltaCache
from replguard.systems.orchestrator.service import RunOrchestrator
from replguard.systems.orchestrator.types import RunMode, RunOutcome
from replguard.telemetry.logging import setup_logging

logger = structlog.get_logger("replguard.main")

_REPORTERS = {"json": JsonReporter, "csv": CsvReporter}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replguard",
        description="Monitor and heal a replicated directory fleet",
    )
    parser.add_argument("mode", choices=[m.value for m in RunMode])
    parser.add_argument(
        "--config",
        default=os.getenv("REPLGUARD_CONFIG_PATH"),
        help="Path to YAML config file (default: REPLGUARD_CONFIG_PATH env var)",
    )
    parser.add_argument("--inventory", help="Path to the YAML node inventory")

    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--nodes", help="Comma-separated node names")
    scope.add_argument("--site", help="Every node in one site")

    parser.add_argument("--fast", action="store_true", help="Use the fast concurrency profile")
    parser.add_argument("--throttle", type=int, help="Maximum nodes processed at once")
    parser.add_argument("--delta-threshold", type=int, metavar="MINUTES",
                        help="Skip nodes healthy within this many minutes")
    parser.add_argument("--force-full", action="store_true", help="Ignore the delta cache")

    parser.add_argument("--policy", choices=[p.value for p in PolicyTier])
    parser.add_argument("--dry-run", action="store_true", help="Preview remedies without applying")
    parser.add_argument("--no-rollback", action="store_true", help="Do not restore state on failure")
    parser.add_argument("--verify-wait", type=float, metavar="SECONDS",
                        help="Wait before re-checking a repaired node")

    parser.add_argument("--previous-report", help="JSON report whose issues verify re-checks")
    parser.add_argument("--output-dir", help="Directory for reports")
    parser.add_argument("--timeout", type=float, metavar="SECONDS", help="Overall run timeout")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser


def config_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Translate command-line flags into a nested config override."""
    overrides: dict[str, Any] = {}

    def put(section: str, key: str, value: Any) -> None:
        overrides.setdefault(section, {})[key] = value

    if args.inventory:
        overrides["inventory_path"] = args.inventory
    if args.delta_threshold is not None:
        put("delta", "threshold_minutes", args.delta_threshold)
    if args.policy:
        put("healing", "policy", args.policy)
    if args.dry_run:
        put("healing", "dry_run", True)
    if args.no_rollback:
        put("healing", "rollback_enabled", False)
    if args.verify_wait is not None:
        put("healing", "verify_wait_s", args.verify_wait)
    if args.output_dir:
        put("reporting", "output_dir", args.output_dir)
    if args.timeout is not None:
        put("run", "timeout_s", args.timeout)
    if args.log_level:
        put("logging", "level", args.log_level)
    return overrides


def scope_from_args(args: argparse.Namespace) -> ScopeSelector:
    if args.nodes:
        return ScopeSelector.explicit([n.strip() for n in args.nodes.split(",") if n.strip()])
    if args.site:
        return ScopeSelector.for_site(args.site)
    return ScopeSelector.fleet()


def throttle_from_args(args: argparse.Namespace, config: ReplGuardConfig) -> int:
    if args.throttle:
        return args.throttle
    if args.fast:
        return config.collector.fast_throttle
    return config.collector.throttle


async def run(args: argparse.Namespace) -> int:
    config = load_config(args.config, config_overrides(args))
    setup_logging(config.logging)
    mode = RunMode(args.mode)

    previous = None
    if mode == RunMode.VERIFY:
        path = args.previous_report or latest_report(config.reporting.output_dir)
        if path is None:
            logger.error("no_previous_report", output_dir=config.reporting.output_dir)
            return int(RunOutcome.INTERNAL_ERROR)
        try:
            previous = JsonReporter.load_issues(path)
        except ReplGuardError as exc:
            logger.error("previous_report_unreadable", error=str(exc))
            return int(RunOutcome.INTERNAL_ERROR)
        logger.info("verifying_previous_report", path=str(path), issues=len(previous))

    source = HttpReplicationDataSource(
        config.source.base_url_template,
        token=config.source.token,
        verify_tls=config.source.verify_tls,
        timeout_s=config.collector.call_timeout_s,
    )
    actuator = HttpRepairActuator(
        config.source.base_url_template,
        token=config.source.token,
        verify_tls=config.source.verify_tls,
        timeout_s=config.collector.call_timeout_s,
    )
    notifier = WebhookNotifier(
        config.notify.webhook_urls,
        timeout_s=config.run.publish_timeout_s,
    )

    reporters = []
    for fmt in config.reporting.formats:
        reporter_cls = _REPORTERS.get(fmt.lower())
        if reporter_cls is None:
            logger.warning("unknown_report_format", format=fmt)
            continue
        reporters.append(reporter_cls(config.reporting.output_dir))

    history = RunHistoryStore(config.reporting.history_path)
    orchestrator = RunOrchestrator(
        config,
        InventoryTopologyResolver(config.inventory_path),
        source,
        actuator,
        cache=DeltaCache(
            JsonFileCacheStore(config.delta.cache_path),
            retention_days=config.delta.retention_days,
        ),
        reporters=reporters,
        notifiers=[notifier] if config.notify.webhook_urls else [],
        history=history,
        throttle=throttle_from_args(args, config),
        force_full=args.force_full,
    )

    def _signal_handler() -> None:
        logger.warning("shutdown_signal_received")
        orchestrator.cancel("operator_abort")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows has no add_signal_handler
            signal.signal(sig, lambda s, f: _signal_handler())

    try:
        summary = await orchestrator.run(mode, scope_from_args(args), previous)
    finally:
        await source.close()
        await actuator.close()
        await notifier.close()

    sys.stdout.write(orjson.dumps(summary.headline(), option=orjson.OPT_INDENT_2).decode() + "\n")
    return int(summary.outcome)


def cli(argv: list[str] | None = None) -> None:
    """Console-script entry point."""
    args = build_parser().parse_args(argv)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    cli()
