"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the water production pipeline.

- Provides argparse-based CLI
- One subcommand per operation, JSON results on stdout
- Loads configuration from CLI and environment
- Entry point for the application

============================================================
USAGE
============================================================
python -m orchestrator.cli aggregate
python -m orchestrator.cli aggregate --mode backfill --machine-id M-1
python -m orchestrator.cli buckets --machine-id M-1 --granularity weekly --count 4
python -m orchestrator.cli health
python -m orchestrator.cli reset --machine-id M-1
python -m orchestrator.cli status --machine-id M-1
python -m orchestrator.cli run

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from typing import Any, List, Optional

from aggregation.models import AggregationMode, Granularity
from core.config import AppConfig
from core.exceptions import PipelineException
from core.logging_setup import setup_logging
from storage.database import DatabasePersistenceError, transaction_scope
from storage.repositories.exceptions import RepositoryException
from storage.repositories.machines import MachineRepository
from storage.reset import reset_machine

from .core import PipelineOrchestrator, create_orchestrator


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="water-pipeline",
        description="Water production telemetry pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  aggregate  - Build daily/weekly/monthly/yearly buckets
  buckets    - Show the last N buckets of a machine (gap-filled)
  derive     - Run level-delta and edge-signal derivation once
  capture    - Capture the latest telemetry point of every machine
  health     - Run one pipeline health sweep
  register   - Register a machine and optionally bind a device
  reset      - Delete every stored record of a machine
  run        - Run all periodic jobs until interrupted
  status     - Classify a machine from its latest telemetry

Examples:
  %(prog)s aggregate                              # incremental, all machines
  %(prog)s aggregate --mode backfill --machine-id M-1
  %(prog)s register --machine-id M-1 --device-uid 0xABC
  %(prog)s status --machine-id M-1 --legacy
        """
    )

    # --------------------------------------------------------
    # Global Options
    # --------------------------------------------------------
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default="json",
        help="Logging format (default: json)",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        metavar="URL",
        help="SQLAlchemy database URL (default: DATABASE_URL)",
    )
    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    # --------------------------------------------------------
    # aggregate
    # --------------------------------------------------------
    aggregate = subparsers.add_parser("aggregate", help="Build aggregate buckets")
    aggregate.add_argument(
        "--mode",
        type=str,
        choices=[mode.value for mode in AggregationMode],
        default=AggregationMode.INCREMENTAL.value,
        help="incremental (default) or backfill",
    )
    aggregate.add_argument(
        "--machine-id",
        type=str,
        help="Single machine (default: all machines)",
    )
    aggregate.add_argument(
        "--verify",
        action="store_true",
        help="Re-check stored rollups after aggregating",
    )

    # --------------------------------------------------------
    # buckets
    # --------------------------------------------------------
    buckets = subparsers.add_parser("buckets", help="Show gap-filled buckets")
    buckets.add_argument("--machine-id", type=str, required=True)
    buckets.add_argument(
        "--granularity",
        type=str,
        choices=[granularity.value for granularity in Granularity],
        default=Granularity.DAILY.value,
    )
    buckets.add_argument("--count", type=int, default=7, help="Number of periods (default: 7)")

    # --------------------------------------------------------
    # operations without options
    # --------------------------------------------------------
    subparsers.add_parser("derive", help="Run both derivators once")
    subparsers.add_parser("capture", help="Capture telemetry once")
    subparsers.add_parser("health", help="Run one health sweep")
    subparsers.add_parser("run", help="Run all periodic jobs")

    # --------------------------------------------------------
    # register / reset
    # --------------------------------------------------------
    register = subparsers.add_parser("register", help="Register a machine")
    register.add_argument("--machine-id", type=str, required=True)
    register.add_argument("--name", type=str)
    register.add_argument("--device-uid", type=str, help="Bind this telemetry device")

    reset = subparsers.add_parser("reset", help="Delete every record of a machine")
    reset.add_argument("--machine-id", type=str, required=True)

    # --------------------------------------------------------
    # status
    # --------------------------------------------------------
    status = subparsers.add_parser("status", help="Classify a machine's current status")
    status.add_argument("--machine-id", type=str, required=True)
    status.add_argument(
        "--legacy",
        action="store_true",
        help="Use the historical staleness threshold instead of the live one",
    )

    return parser


# ============================================================
# CLI VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Returns:
        List of validation errors
    """
    errors = []

    if args.command == "buckets" and args.count < 1:
        errors.append("--count must be at least 1")

    for name in ("machine_id", "device_uid"):
        value = getattr(args, name, None)
        if value is not None and not value.strip():
            errors.append(f"--{name.replace('_', '-')} must not be empty")

    return errors


# ============================================================
# COMMANDS
# ============================================================

def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _aggregate(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    result = await orchestrator.aggregation.run(args.mode, args.machine_id)
    payload = result.to_dict()

    if args.verify:
        if args.machine_id:
            machine_ids = [args.machine_id]
        else:
            with transaction_scope(orchestrator.session_factory) as session:
                machine_ids = MachineRepository(session).list_machine_ids()
        violations = []
        for machine_id in machine_ids:
            violations.extend(
                violation.to_dict()
                for violation in orchestrator.aggregation.verify_rollups(machine_id)
            )
        payload["rollup_violations"] = violations

    _emit(payload)
    return EXIT_OK if result.success else EXIT_FAILED


async def _buckets(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    buckets = orchestrator.aggregation.get_buckets(
        args.machine_id, Granularity(args.granularity), args.count
    )
    _emit([bucket.to_dict() for bucket in buckets])
    return EXIT_OK


async def _derive(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    level_delta = await orchestrator.derivation.poll_once()
    edge_signal = await orchestrator.edge_signal.derive_all()
    _emit({"level_delta": level_delta.to_dict(), "edge_signal": edge_signal.to_dict()})
    return EXIT_OK if not (level_delta.errors or edge_signal.errors) else EXIT_FAILED


async def _capture(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    if orchestrator.capture is None:
        print("Error: telemetry source not configured (INFLUXDB_URL/TOKEN/ORG)", file=sys.stderr)
        return EXIT_FAILED
    result = await orchestrator.capture.capture_all()
    _emit(result.to_dict())
    return EXIT_OK if not result.errors else EXIT_FAILED


async def _health(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    records = await orchestrator.health.sweep()
    _emit({
        "machines": len(records),
        "unhealthy": sum(1 for record in records if not record.is_healthy),
        "records": [record.to_dict() for record in records],
    })
    return EXIT_OK


async def _register(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    with transaction_scope(orchestrator.session_factory) as session:
        machines = MachineRepository(session)
        machine = machines.register(args.machine_id, args.name)
        payload = {"machine_id": machine.machine_id, "name": machine.name, "device_uid": None}
        if args.device_uid:
            binding = machines.bind_device(args.machine_id, args.device_uid)
            payload["device_uid"] = binding.device_uid
    _emit(payload)
    return EXIT_OK


async def _reset(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    with transaction_scope(orchestrator.session_factory) as session:
        counts = reset_machine(session, args.machine_id)
    _emit({"machine_id": args.machine_id, "deleted": counts})
    return EXIT_OK


async def _status(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    _emit(orchestrator.machine_status(args.machine_id, legacy=args.legacy))
    return EXIT_OK


async def _run(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> int:
    await orchestrator.run_forever()
    return EXIT_OK


COMMANDS = {
    "aggregate": _aggregate,
    "buckets": _buckets,
    "derive": _derive,
    "capture": _capture,
    "health": _health,
    "register": _register,
    "reset": _reset,
    "run": _run,
    "status": _status,
}


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace, config: AppConfig) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    orchestrator = create_orchestrator(config)
    try:
        return await COMMANDS[args.command](orchestrator, args)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        return 130
    except (PipelineException, RepositoryException, DatabasePersistenceError) as e:
        logging.error(f"{args.command} failed: {e}", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return EXIT_USAGE

    setup_logging(
        level=args.log_level,
        log_format=args.log_format,
        correlation_id=f"{args.command}_{uuid.uuid4().hex[:8]}",
    )

    try:
        config = AppConfig.from_env()
    except PipelineException as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    if args.database_url:
        config.database.url = args.database_url

    return asyncio.run(async_main(args, config))


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
