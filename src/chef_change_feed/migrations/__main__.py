"""Command line interface for the migration runner."""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from .runner import MigrationError, apply_migrations, migration_status, rollback_last


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="chef-change-feed migration runner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    apply_parser = subparsers.add_parser("apply", help="Apply all pending migrations")
    apply_parser.add_argument(
        "--conninfo",
        help="libpq connection string (defaults to the PG* environment)",
        default=None,
    )
    apply_parser.add_argument(
        "--target-version",
        help="Apply migrations up to and including this version",
        default=None,
    )
    apply_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print migrations that would run without executing them",
    )

    rollback_parser = subparsers.add_parser(
        "rollback", help="Rollback the most recent migration"
    )
    rollback_parser.add_argument("--conninfo", default=None)
    rollback_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show which migration would be rolled back",
    )

    status_parser = subparsers.add_parser(
        "status", help="List migrations and whether they are applied"
    )
    status_parser.add_argument("--conninfo", default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    prefix = "DRY-RUN would " if getattr(args, "dry_run", False) else ""

    try:
        if args.command == "apply":
            executed = apply_migrations(
                conninfo=args.conninfo,
                target_version=args.target_version,
                dry_run=args.dry_run,
            )
            verb = "apply" if prefix else "Applied"
            for migration in executed:
                print(f"{prefix}{verb} migration {migration.label}")
            if not executed:
                print("Database is up to date")
            return 0

        if args.command == "rollback":
            migration = rollback_last(conninfo=args.conninfo, dry_run=args.dry_run)
            if migration is None:
                print("No migrations to rollback")
                return 0
            verb = "rollback" if prefix else "Rolled back"
            print(f"{prefix}{verb} migration {migration.label}")
            return 0

        if args.command == "status":
            for entry in migration_status(conninfo=args.conninfo):
                marker = "applied" if entry.applied else "pending"
                print(f"{entry.migration.label}: {marker}")
            return 0
    except MigrationError as exc:
        print(f"migration failed: {exc}", file=sys.stderr)
        return 2

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":
    sys.exit(main())
