from __future__ import annotations

import argparse
import json
import logging
import os
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, is_dataclass
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from stakesync.config import Settings
from stakesync.domain.errors import ConfigurationError, SyncError
from stakesync.domain.models import Network
from stakesync.logging_utils import setup_logging
from stakesync.observability import configure_instrumentation, flush_instrumentation
from stakesync.security.redaction import sanitize_text
from stakesync.services.sync_orchestrator import SyncMode, SyncStatus
from stakesync.services.sync_service import StakeSyncService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_ALREADY_IN_PROGRESS = 3


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        payload = asdict(value)
        for name in ("success", "data_incomplete"):
            if hasattr(value, name):
                payload[name] = getattr(value, name)
        return _jsonable(payload)
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, Decimal):
        return format(value, "f")
    return value


def _emit(payload: Any) -> None:
    print(json.dumps(_jsonable(payload), sort_keys=True, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stakesync",
        epilog="Configuration comes from environment variables or a .env file (see STATE_DB_PATH, NETWORKS).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def network_parser(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--network",
            required=True,
            choices=[member.value for member in Network],
            help="Ledger network",
        )
        return sub

    sync_parser = network_parser("sync", "Run one sync")
    sync_parser.add_argument(
        "--mode",
        choices=[member.value for member in SyncMode],
        default=SyncMode.INCREMENTAL.value,
    )
    sync_parser.add_argument(
        "--reset-cursor",
        action="store_true",
        help="Full mode only: restart from stake id 0",
    )

    loop_parser = network_parser("loop", "Run incremental syncs on an interval")
    loop_parser.add_argument("--interval-minutes", type=float, default=None)
    loop_parser.add_argument(
        "--max-runs",
        type=int,
        default=None,
        help="Stop after this many runs (default: run until interrupted)",
    )

    network_parser("status", "Show the sync cursor for a network")
    network_parser("counts", "Show row counts per table")
    network_parser("overview", "Active stake totals")

    top_parser = network_parser("top", "Largest active stakes")
    top_parser.add_argument("--limit", type=int, default=100)

    recent_parser = network_parser("recent", "Most recently opened stakes")
    recent_parser.add_argument("--limit", type=int, default=50)

    owner_parser = network_parser("owner", "Stake history for one owner")
    owner_parser.add_argument("--address", required=True)

    metrics_parser = network_parser("owner-metrics", "Recompute owner aggregates")
    metrics_parser.add_argument("--address", action="append", default=None)
    metrics_parser.add_argument("--limit", type=int, default=1000)

    network_parser("cleanup", "Delete global counter snapshots past retention")

    unlock_parser = network_parser("unlock", "Force-clear the sync guard for a network")
    unlock_parser.add_argument(
        "--i-understand",
        action="store_true",
        help="Confirm no sync process is still running for this network",
    )
    return parser


def _build_service(settings: Settings) -> StakeSyncService:
    return StakeSyncService.from_settings(settings)


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"invalid configuration: {exc}")
        return EXIT_USAGE
    setup_logging(settings.log_level, known_secrets=settings.known_secrets())
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        prometheus_port=settings.observability_prometheus_port,
    )
    network = Network(args.network)
    if network not in settings.networks:
        print(f"network {network} is not enabled (NETWORKS={','.join(settings.networks)})")
        return EXIT_USAGE

    try:
        service = _build_service(settings)
    except ConfigurationError as exc:
        print(f"invalid configuration: {exc}")
        return EXIT_USAGE

    logger.info(
        "cli_command_started",
        extra={
            "extra": {
                "command": args.command,
                "network": str(network),
                "db_path": settings.state_db_path,
                "pid": os.getpid(),
            }
        },
    )
    try:
        with service:
            return _dispatch(args, service, network)
    except SyncError as exc:
        _emit(
            {
                "error": sanitize_text(str(exc), known_secrets=settings.known_secrets()),
                "network": exc.network,
                "operation": exc.operation,
            }
        )
        return EXIT_FAILED
    finally:
        flush_instrumentation()


def _dispatch(args: argparse.Namespace, service: StakeSyncService, network: Network) -> int:
    if args.command == "sync":
        return run_sync(service, network, mode=SyncMode(args.mode), reset_cursor=args.reset_cursor)
    if args.command == "loop":
        return run_loop(
            service,
            network,
            interval_minutes=args.interval_minutes,
            max_runs=args.max_runs,
        )
    if args.command == "status":
        _emit(service.get_status(network))
        return EXIT_OK
    if args.command == "counts":
        _emit(service.get_table_counts(network))
        return EXIT_OK
    if args.command == "overview":
        _emit(service.get_overview(network))
        return EXIT_OK
    if args.command == "top":
        _emit(service.get_top_stakes(network, limit=args.limit))
        return EXIT_OK
    if args.command == "recent":
        _emit(service.get_recent_stakes(network, limit=args.limit))
        return EXIT_OK
    if args.command == "owner":
        _emit(service.get_owner_history(args.address, network))
        return EXIT_OK
    if args.command == "owner-metrics":
        aggregates = service.refresh_owner_aggregates(network, args.address, limit=args.limit)
        _emit({"network": network, "owners": aggregates})
        return EXIT_OK
    if args.command == "cleanup":
        deleted = service.cleanup(network)
        _emit({"network": network, "deleted": deleted})
        return EXIT_OK
    if args.command == "unlock":
        return run_unlock(service, network, confirmed=args.i_understand)
    print(f"unknown command {args.command}")
    return EXIT_USAGE


def _exit_code_for(status: SyncStatus) -> int:
    if status is SyncStatus.COMPLETED:
        return EXIT_OK
    if status is SyncStatus.ALREADY_IN_PROGRESS:
        return EXIT_ALREADY_IN_PROGRESS
    return EXIT_FAILED


def run_sync(
    service: StakeSyncService,
    network: Network,
    *,
    mode: SyncMode = SyncMode.INCREMENTAL,
    reset_cursor: bool = False,
) -> int:
    if reset_cursor and mode is not SyncMode.FULL:
        print("--reset-cursor requires --mode full")
        return EXIT_USAGE
    result = service.trigger_sync(network, mode, reset_cursor=reset_cursor)
    _emit(result)
    return _exit_code_for(result.status)


def run_loop(
    service: StakeSyncService,
    network: Network,
    *,
    interval_minutes: float | None = None,
    max_runs: int | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> int:
    interval = interval_minutes if interval_minutes is not None else service.settings.sync_interval_minutes
    if interval <= 0:
        print("interval-minutes must be > 0")
        return EXIT_USAGE
    if max_runs is not None and max_runs < 1:
        print("max-runs must be >= 1")
        return EXIT_USAGE

    runs = 0
    last_rc = EXIT_OK
    logger.info(
        "loop_runner_started",
        extra={
            "extra": {
                "network": str(network),
                "interval_minutes": interval,
                "max_runs": max_runs,
            }
        },
    )
    try:
        while True:
            runs += 1
            result = service.trigger_sync(network, SyncMode.INCREMENTAL)
            _emit(result)
            last_rc = _exit_code_for(result.status)
            if max_runs is not None and runs >= max_runs:
                break
            sleep_fn(interval * 60.0)
    except KeyboardInterrupt:
        logger.info(
            "loop_runner_interrupted",
            extra={"extra": {"network": str(network), "runs": runs}},
        )
        return EXIT_OK
    logger.info(
        "loop_runner_finished",
        extra={"extra": {"network": str(network), "runs": runs, "last_rc": last_rc}},
    )
    return last_rc


def run_unlock(service: StakeSyncService, network: Network, *, confirmed: bool) -> int:
    if not confirmed:
        print(
            "Refusing to clear the sync guard. Re-run with --i-understand only if "
            "no sync process is still running for this network."
        )
        return EXIT_USAGE
    released = service.force_release_guard(network)
    _emit({"network": network, "released": released})
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
