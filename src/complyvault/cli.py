"""
Command-line interface for complyvault.

Provides the commands a scheduled workflow and an operator need: one
pipeline run, baseline seeding, rollups, mapping validation, ledger status
and snapshot verification.

Uses Python's argparse module (no external CLI libraries).

Exit Codes:
    0   success
    1   collection error
    2   drift detected
    3   configuration, mapping or verification document error
    4   ledger commit or integrity error
    5   another run holds the ledger lock
    130 interrupted
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from pathlib import Path
from typing import Any, NoReturn

from complyvault import __version__
from complyvault.config.settings import (
    DEFAULT_CONFIG_FILE,
    ConfigurationError,
    Settings,
    load_config,
)
from complyvault.drift.baseline import BaselineError, BaselineStore
from complyvault.mapping.control_mapper import MappingConfigError, load_mapping_tables
from complyvault.pipeline import EXIT_CODES, EvidencePipeline, PipelineResult, RunStatus
from complyvault.storage.journal import RunJournal
from complyvault.storage.ledger import IntegrityError, SnapshotLedger

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def output_report(result: PipelineResult) -> None:
    """Print the structured JSON report of a failed command to stderr."""
    output_error(json.dumps(result.to_report(), indent=2, sort_keys=True, default=str))


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the complyvault CLI."""
    parser = argparse.ArgumentParser(
        prog="complyvault",
        description="Compliance evidence archival and policy drift detection",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"complyvault {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help=f"Override config file location (default: {DEFAULT_CONFIG_FILE})",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # run command
    run_parser = subparsers.add_parser(
        "run",
        help="Collect evidence and commit today's snapshot",
        description=(
            "Check the protection policy for drift, collect every artifact, "
            "map it to controls and commit a dated snapshot."
        ),
    )
    run_parser.set_defaults(func=cmd_run)

    # seed-baseline command
    seed_parser = subparsers.add_parser(
        "seed-baseline",
        help="Record the live protection policy as trusted",
        description=(
            "Fetch the ledger's protection ruleset and store it as the trusted "
            "baseline. Privileged: the event is written to the baseline audit log."
        ),
    )
    seed_parser.add_argument(
        "--reason",
        required=True,
        metavar="TEXT",
        help="Justification recorded in the audit log",
    )
    seed_parser.add_argument(
        "--actor",
        metavar="NAME",
        help="Who is seeding (default: current user)",
    )
    seed_parser.add_argument(
        "--force",
        action="store_true",
        help="Seed even if the policy violates guardrails",
    )
    seed_parser.set_defaults(func=cmd_seed_baseline)

    # rollup command
    rollup_parser = subparsers.add_parser(
        "rollup",
        help="Recompute a weekly or monthly rollup",
        description="Concatenate the tabular evidence of every snapshot in a period.",
    )
    rollup_parser.add_argument(
        "--period",
        choices=["weekly", "monthly"],
        required=True,
        help="Rollup period",
    )
    rollup_parser.add_argument(
        "--key",
        metavar="KEY",
        help="Period key, e.g. 2025-W32 or 2025-08 (default: current period)",
    )
    rollup_parser.set_defaults(func=cmd_rollup)

    # validate-mappings command
    validate_parser = subparsers.add_parser(
        "validate-mappings",
        help="Validate the control mapping tables",
        description="Load every configured mapping table and report all problems.",
    )
    validate_parser.set_defaults(func=cmd_validate_mappings)

    # status command
    status_parser = subparsers.add_parser(
        "status",
        help="Show ledger status",
        description="Display the latest snapshot, baseline hash and recent runs.",
    )
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Verify a snapshot against its manifest",
        description="Re-hash every file of a snapshot and compare with manifest.json.",
    )
    verify_parser.add_argument(
        "date",
        nargs="?",
        metavar="DATE",
        help="Snapshot date YYYY-MM-DD (default: newest snapshot)",
    )
    verify_parser.set_defaults(func=cmd_verify)

    return parser


def setup_logging(verbose: int, quiet: bool, default_level: str = "INFO") -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = getattr(logging, default_level.upper(), logging.INFO)
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    settings = load_config(config_path)
    setup_logging(args.verbose, args.quiet, settings.log_level)
    return settings


def _finish(result: PipelineResult) -> int:
    for warning in result.warnings:
        output(f"Warning: {warning}")
    if not result.success:
        output_report(result)
    return result.exit_code


def cmd_run(args: argparse.Namespace) -> int:
    """Run one pipeline pass."""
    settings = load_settings(args)
    result = EvidencePipeline(settings).run()

    if result.success:
        output(f"Snapshot {result.snapshot_date} committed")
        output(f"  Path: {result.details.get('snapshot_path')}")
        drift = result.details.get("drift", {})
        output(f"  Protection policy: {drift.get('status')} ({drift.get('actual_hash')})")
        for name, counts in result.details.get("frameworks", {}).items():
            output(
                f"  {name}: {counts['controls_with_evidence']}/"
                f"{counts['controls_total']} controls with evidence"
            )
    return _finish(result)


def cmd_seed_baseline(args: argparse.Namespace) -> int:
    """Seed or re-seed the protection policy baseline."""
    settings = load_settings(args)
    actor = args.actor or getpass.getuser()
    result = EvidencePipeline(settings).seed_baseline(actor, args.reason, force=args.force)

    if result.success:
        baseline = result.details["baseline"]
        output(f"Baseline {baseline['name']} seeded by {baseline['seeded_by']}")
        output(f"  Hash: {baseline['hash']}")
    return _finish(result)


def cmd_rollup(args: argparse.Namespace) -> int:
    """Recompute a rollup."""
    settings = load_settings(args)
    result = EvidencePipeline(settings).rollup(args.period, args.key)

    if result.success:
        rollup = result.details["rollup"]
        output(f"{rollup['period'].capitalize()} rollup {rollup['key']} written")
        output(f"  Path: {result.details['path']}")
        output(f"  Snapshots: {', '.join(rollup['snapshots']) or '(none)'}")
        for name, data in rollup["artifacts"].items():
            output(f"  {name}: {data['row_count']} rows")
    return _finish(result)


def cmd_validate_mappings(args: argparse.Namespace) -> int:
    """Validate the configured mapping tables."""
    settings = load_settings(args)
    try:
        tables = load_mapping_tables(settings.mappings)
    except MappingConfigError as e:
        output_error("Mapping validation failed:")
        for problem in e.problems:
            output_error(f"  - {problem}")
        return EXIT_CODES[RunStatus.CONFIG_ERROR]

    for table in tables:
        output(f"{table.framework} {table.version}: {len(table.controls)} controls OK")
    return 0


def _status_data(settings: Settings) -> dict[str, Any]:
    ledger = SnapshotLedger(Path(settings.ledger.root))
    latest = ledger.latest_metadata()
    snapshots = ledger.list_snapshots()

    store = BaselineStore(ledger.baseline_dir)
    try:
        baseline = store.load(settings.drift.ruleset_name)
        baseline_data: dict[str, Any] | None = (
            {
                "name": baseline.name,
                "hash": baseline.hash,
                "seeded_at": baseline.seeded_at,
                "seeded_by": baseline.seeded_by,
            }
            if baseline
            else None
        )
    except BaselineError as e:
        baseline_data = {"error": str(e)}
    baseline_history = store.history(settings.drift.ruleset_name)[-5:]

    runs = []
    if ledger.journal_path.exists():
        runs = [run.to_dict() for run in RunJournal(ledger.journal_path).recent_runs(5)]

    return {
        "version": __version__,
        "ledger": str(ledger.root),
        "latest": latest.to_dict() if latest else None,
        "snapshot_count": len(snapshots),
        "baseline": baseline_data,
        "baseline_history": baseline_history,
        "recent_runs": runs,
    }


def cmd_status(args: argparse.Namespace) -> int:
    """Show ledger status."""
    settings = load_settings(args)
    data = _status_data(settings)

    if args.json:
        output(json.dumps(data, indent=2, default=str), force=True)
        return 0

    output("complyvault Status")
    output("=" * 50)
    output()
    output(f"Version: {data['version']}")
    output(f"Ledger: {data['ledger']}")
    output()

    output("Snapshots")
    output("-" * 30)
    latest = data["latest"]
    if latest:
        output(f"  Latest: {latest['date']} (week {latest['iso_week']})")
        output(f"  Committed at: {latest['created_at']}")
    else:
        output("  No snapshots committed yet")
    output(f"  Total: {data['snapshot_count']}")

    output()
    output("Baseline")
    output("-" * 30)
    baseline = data["baseline"]
    if baseline is None:
        output("  Not seeded (runs proceed in bootstrap mode)")
    elif "error" in baseline:
        output(f"  UNREADABLE: {baseline['error']}")
    else:
        output(f"  {baseline['name']}: {baseline['hash']}")
        output(f"  Seeded by {baseline['seeded_by']} at {baseline['seeded_at']}")
    for entry in data["baseline_history"]:
        previous = entry.get("previous_hash") or "(none)"
        output(
            f"  {entry.get('seeded_at')}  {entry.get('actor')}: {previous} -> "
            f"{entry.get('new_hash')} ({entry.get('reason')})"
        )

    output()
    output("Recent Runs")
    output("-" * 30)
    if not data["recent_runs"]:
        output("  None")
    for run in data["recent_runs"]:
        output(f"  {run['started_at']}  {run['command']:14} {run['status']}")

    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify a snapshot against its manifest."""
    settings = load_settings(args)
    ledger = SnapshotLedger(Path(settings.ledger.root))
    try:
        summary = ledger.verify_snapshot(args.date)
    except ValueError as e:
        output_error(f"Error: {e}")
        return EXIT_CODES[RunStatus.CONFIG_ERROR]
    except IntegrityError as e:
        output_error(f"Verification failed: {e}")
        for mismatch in e.mismatches:
            output_error(f"  - {mismatch}")
        return EXIT_CODES[RunStatus.LEDGER_ERROR]

    output(f"Snapshot {summary['date']}: {summary['files_verified']} files verified")
    return 0


def main() -> NoReturn:
    """Main entry point for the complyvault CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(EXIT_CODES[RunStatus.CONFIG_ERROR])
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
