# =============================================================================
# portfolio_core/__main__.py
# Command Line: health status, offline queue replay, dead letters
# =============================================================================
"""
Usage:
    python -m portfolio_core status [--json]
    python -m portfolio_core sync
    python -m portfolio_core dead-letters [--retry ID | --purge]
"""

from __future__ import annotations
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from portfolio_core.config import load_settings
from portfolio_core.errors import PortfolioCoreError
from portfolio_core.logging import setup_logging
from portfolio_core.services.orchestrator import Orchestrator, build_orchestrator


def _banner(title: str) -> None:
    print("=" * 70)
    print(title)
    print("=" * 70)


def _print_section(title: str, values: Dict[str, Any]) -> None:
    print(f"\n{title}")
    for key, value in values.items():
        print(f"  - {key}: {value}")


async def _status(orchestrator: Orchestrator, as_json: bool) -> int:
    await orchestrator.monitor.check()
    health = await orchestrator.perform_health_check()
    metrics = orchestrator.get_service_metrics()

    if as_json:
        print(json.dumps({"health": health.to_dict(), "metrics": metrics}, indent=2, default=str))
        return 0

    _banner(f"PORTFOLIO CORE STATUS: {health.overall.value.upper()}")
    _print_section("Services", {name: h.value for name, h in health.services.items()})
    _print_section("Connection", metrics["connection"])
    _print_section("Offline queue", {
        "pending": metrics["router"]["pending"],
        "dead_letters": metrics["router"]["dead_letters"],
    })
    _print_section("Requests", metrics["orchestrator"])
    return 0


async def _sync(orchestrator: Orchestrator) -> int:
    state = await orchestrator.monitor.check()
    _banner("OFFLINE QUEUE REPLAY")
    print(f"Connection: {state.status.value} ({state.quality.value})")

    report = await orchestrator.sync_offline_data()
    if report.skipped:
        print(f"Remote unreachable; {report.remaining} operation(s) still queued")
        return 1

    _print_section("Result", report.to_dict())
    return 0 if report.failed == 0 else 1


def _dead_letters(orchestrator: Orchestrator, retry: Optional[str], purge: bool) -> int:
    router = orchestrator.router
    if purge:
        print(f"Purged {router.purge_dead_letters()} dead letter(s)")
        return 0
    if retry:
        if router.retry_dead_letter(retry):
            print(f"Requeued {retry}; run 'sync' to replay it")
            return 0
        print(f"No dead letter with id {retry}")
        return 1

    letters = router.dead_letters()
    _banner(f"DEAD LETTERS ({len(letters)})")
    for letter in letters:
        op = letter.operation
        print(f"{op.id}  {op.operation_kind.value:<6} {op.target_collection:<15} "
              f"attempts={op.attempts}  {letter.error.get('message', '')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portfolio_core",
        description="Inspect and maintain the portfolio resilience layer",
    )
    parser.add_argument("--config", type=Path, help="TOML secrets file with [supabase] / [resilience]")
    parser.add_argument("--env-file", type=Path, help=".env file to load")
    parser.add_argument("--db", type=Path, help="Local SQLite database path")
    parser.add_argument("--log-level", default=None, help="Logging level (default from settings)")

    commands = parser.add_subparsers(dest="command", required=True)

    status = commands.add_parser("status", help="Probe the remote and print health and metrics")
    status.add_argument("--json", action="store_true", help="Machine-readable output")

    commands.add_parser("sync", help="Replay queued offline operations now")

    dead = commands.add_parser("dead-letters", help="List, requeue or purge dead letters")
    group = dead.add_mutually_exclusive_group()
    group.add_argument("--retry", metavar="ID", help="Requeue one dead letter")
    group.add_argument("--purge", action="store_true", help="Delete all dead letters")
    return parser


async def _run(args: argparse.Namespace) -> int:
    overrides: Dict[str, Any] = {}
    if args.db:
        overrides["local_db_path"] = args.db
    settings = load_settings(config_file=args.config, env_file=args.env_file, **overrides)
    setup_logging(args.log_level or settings.log_level, log_to_file=False)

    orchestrator = build_orchestrator(settings)
    await orchestrator.router.initialize()
    try:
        if args.command == "status":
            return await _status(orchestrator, args.json)
        if args.command == "sync":
            return await _sync(orchestrator)
        return _dead_letters(orchestrator, args.retry, args.purge)
    finally:
        await orchestrator.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except PortfolioCoreError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
