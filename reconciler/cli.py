"""Command line entry point: ``reconciler migrate|unmigrate|logs|materialize``."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Callable, Optional, Sequence

from reconciler.config import Settings, get_settings
from reconciler.services.audit_triggers import AuditTriggerError
from reconciler.services.diff_materializer import DiffMaterializationError, materialize_diff
from reconciler.services.logs import process_logs
from reconciler.services.logs_config import load_logs_config
from reconciler.services.metadata_client import MetadataClient, MetadataError
from reconciler.services.migration_runner import MigrationError, migrate, unmigrate
from reconciler.services.reconciler import Reconciler
from reconciler.services.sql_executor import SqlExecutionError, build_sql_executor

logger = logging.getLogger("reconciler.cli")

ReconcilerFactory = Callable[[Settings], Reconciler]


def build_reconciler(settings: Settings) -> Reconciler:
    metadata = MetadataClient.from_settings(settings)
    executor = build_sql_executor(settings, metadata=metadata)
    return Reconciler(executor, metadata, source=settings.hasura_source)


def _configure_logging(settings: Settings) -> None:
    level = getattr(logging, (settings.log_level or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Reconcile the database and GraphQL engine metadata with the declared state."
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("migrate", help="Run every migration's up step in order.")
    commands.add_parser("unmigrate", help="Run every migration's down step in reverse order.")

    logs = commands.add_parser("logs", help="Regenerate the diffs/states audit triggers.")
    logs.add_argument(
        "--config",
        help="Path to the JSON config holding the logs targets (defaults to LOGS_CONFIG_PATH).",
    )

    materialize = commands.add_parser("materialize", help="Compute the patch for one diffs record.")
    materialize.add_argument("diff_id", help="Id of the diffs record to process.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None, *, factory: ReconcilerFactory = build_reconciler) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    _configure_logging(settings)

    try:
        reconciler = factory(settings)
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    try:
        if args.command == "migrate":
            completed = migrate(reconciler)
            print(f"Applied {len(completed)} migrations.")
        elif args.command == "unmigrate":
            completed = unmigrate(reconciler)
            print(f"Reverted {len(completed)} migrations.")
        elif args.command == "logs":
            config = load_logs_config(args.config or settings.logs_config_path)
            if config is None:
                print("No usable logs config found; audit triggers left unchanged.")
                return 0
            result = process_logs(reconciler, config, settings=settings)
            for kind, plan in (("diffs", result.diffs), ("states", result.states)):
                if plan is not None:
                    print(f"{kind}: removed {len(plan.dropped_triggers)}, created {len(plan.created_triggers)} triggers.")
        elif args.command == "materialize":
            diff = materialize_diff(reconciler.executor, args.diff_id, audit_schema=settings.audit_schema)
            print(diff.patch)
    except (
        AuditTriggerError,
        DiffMaterializationError,
        MetadataError,
        MigrationError,
        SqlExecutionError,
        ValueError,
    ) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"{args.command} failed: {exc}", file=sys.stderr)
        return 1
    finally:
        reconciler.executor.close()
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
