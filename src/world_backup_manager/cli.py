from __future__ import annotations

from pathlib import Path
from typing import Sequence
import argparse
import signal
import sys

from .cancellation import CancellationToken
from .config import AppConfig, load_config
from .cycle import BackupCycle
from .errors import CatalogCorruptionError, ConfigError
from .logs import LoggingOutcomeReporter, configure_logging
from .models import BackupRecord, OutcomeKind
from .scheduler import Scheduler

EXIT_CODES = {
    OutcomeKind.SUCCESS: 0,
    OutcomeKind.FAILED: 1,
    OutcomeKind.SKIPPED_NO_SPACE: 2,
    OutcomeKind.SKIPPED_SERVER_UNRESPONSIVE: 3,
}
EXIT_CATALOG_CORRUPT = 70


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="world-backup",
        description="Crash-safe periodic backups of a running game server world.",
    )
    parser.add_argument("-c", "--config", type=Path, default=None, help="YAML config file (default: $WBM_CONFIG)")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug events")

    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("run", help="run one backup cycle now")
    subcommands.add_parser("daemon", help="run backup cycles on the configured interval")
    subcommands.add_parser("list", help="list cataloged backups, newest first")
    prune = subcommands.add_parser("prune", help="apply the retention policy now")
    prune.add_argument("--dry-run", action="store_true", help="show what would be deleted without deleting")
    subcommands.add_parser("reconcile", help="resynchronize the catalog with the backup directory")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose)

    try:
        config = load_config(args.config)
    except ConfigError as error:
        print(f"configuration error: {error}", file=sys.stderr)
        return 64

    try:
        return _dispatch(args.command, config=config, dry_run=getattr(args, "dry_run", False))
    except CatalogCorruptionError as error:
        print(f"FATAL: backup catalog is corrupt: {error}", file=sys.stderr)
        return EXIT_CATALOG_CORRUPT


def _dispatch(command: str, *, config: AppConfig, dry_run: bool) -> int:
    cycle = BackupCycle.from_config(config)
    inconsistencies = cycle.reconcile()
    if command == "reconcile":
        for inconsistency in inconsistencies:
            print(f"{inconsistency.kind}\t{inconsistency.artifact_path}\t{inconsistency.detail}")
        print(f"{len(inconsistencies)} inconsistency(ies) repaired")
        return 0

    if command == "list":
        for record in cycle.catalog.list_records():
            print(_format_record(record))
        return 0

    if command == "prune":
        if dry_run:
            plan = cycle.plan_prune()
            for record in plan.to_delete:
                print(f"would delete\t{_format_record(record)}")
            if plan.floor_conflict is not None:
                print(f"warning: {plan.floor_conflict.message}")
            return 0
        report = cycle.prune()
        for record in report.compacted:
            print(f"compressed\t{_format_record(record)}")
        for record in report.removed:
            print(f"deleted\t{_format_record(record)}")
        if report.floor_conflict is not None:
            print(f"warning: {report.floor_conflict.message}")
        return 0

    reporter = LoggingOutcomeReporter(cycle.logger)
    if command == "run":
        token = CancellationToken()
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, lambda *_: token.cancel())
        outcome = cycle.run(token)
        reporter.report(outcome)
        return EXIT_CODES[outcome.kind]

    scheduler = Scheduler(cycle=cycle, config=config.scheduler, reporter=reporter, logger=cycle.logger)
    scheduler.install_signal_handlers()
    scheduler.run()
    return 0


def _format_record(record: BackupRecord) -> str:
    return f"{record.created_at.isoformat()}\t{format_bytes(record.size_bytes)}\t{record.artifact_path}"


def format_bytes(value: int) -> str:
    size = float(value)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if size < 1024 or unit == "TiB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{value} B"


if __name__ == "__main__":
    raise SystemExit(main())
