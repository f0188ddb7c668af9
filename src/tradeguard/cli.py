from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Sequence
from dataclasses import asdict

from tradeguard.config import Settings, load_settings
from tradeguard.logging_utils import setup_logging
from tradeguard.obs.metrics import configure_metrics_sink
from tradeguard.persistence.json_file import JsonFileSnapshotRepo
from tradeguard.persistence.memory import InMemorySnapshotRepo
from tradeguard.services.trade_guard import build_circuit_breaker, build_state_persistence

logger = logging.getLogger(__name__)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, sort_keys=True, indent=2, default=str))


def run_breaker_status(settings: Settings) -> int:
    # daily rollover on load must not touch the state file
    snapshot = JsonFileSnapshotRepo(settings.circuit_breaker.state_file, max_backups=0).load()
    breaker = build_circuit_breaker(settings, repository=InMemorySnapshotRepo(snapshot))
    _print_json(breaker.get_status())
    return 0


def run_breaker_reset(settings: Settings, *, acknowledged: bool) -> int:
    if not acknowledged:
        print("Refusing to reset the circuit breaker without --i-understand")
        return 2
    breaker = build_circuit_breaker(settings)
    previous = breaker.get_status()["state"]
    breaker.reset()
    logger.warning("circuit_breaker_reset_via_cli", extra={"extra": {"previous_state": previous}})
    _print_json({"reset": True, "previous_state": previous, "state": breaker.get_status()["state"]})
    return 0


def run_recovery_info(settings: Settings) -> int:
    state = build_state_persistence(settings)
    _print_json(asdict(state.get_recovery_info()))
    return 0


def run_show_config(settings: Settings) -> int:
    _print_json(settings.model_dump(mode="json", by_alias=True))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tradeguard",
        description="Operator tooling for the trade admission and recovery layer",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="JSON config file with retrySettings/circuitBreaker/... sections",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("breaker-status", help="Show the persisted circuit breaker state")
    reset_parser = subparsers.add_parser(
        "breaker-reset", help="Force the circuit breaker closed and clear its counters"
    )
    reset_parser.add_argument(
        "--i-understand",
        dest="i_understand",
        action="store_true",
        help="Required acknowledgement that trading resumes immediately",
    )
    subparsers.add_parser(
        "recovery-info", help="Show operations left in flight by the previous process"
    )
    subparsers.add_parser("show-config", help="Print the effective configuration")

    args = parser.parse_args(argv)
    try:
        settings = load_settings(args.config)
    except (OSError, ValueError) as exc:
        print(f"Invalid configuration: {exc}")
        return 2

    setup_logging(settings.log_level)
    # one-shot commands never serve a scrape endpoint
    exporter = "log" if settings.metrics_exporter == "prometheus" else settings.metrics_exporter
    configure_metrics_sink(exporter)

    if args.command == "breaker-status":
        return run_breaker_status(settings)
    if args.command == "breaker-reset":
        return run_breaker_reset(settings, acknowledged=args.i_understand)
    if args.command == "recovery-info":
        return run_recovery_info(settings)
    if args.command == "show-config":
        return run_show_config(settings)
    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
