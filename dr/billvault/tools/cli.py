"""
Administration CLI for BillVault.

Runs single operations against the configured entity store and catalog,
without the background loops:

    billvault snapshot [--kind full|incremental] [--sets users,bills] [--retention-days N]
    billvault list [--kind K] [--status S] [--since ISO] [--until ISO] [--limit N] [--stats]
    billvault show <manifest_id>
    billvault verify <manifest_id> [--deep] [--repair]
    billvault restore <manifest_id> [--sets bills] [--point-in-time ISO] [--dry-run]
    billvault purge
    billvault health

Output is JSON on stdout. Exit status is 0 on success, 1 on failure.
Configuration comes from the same environment variables as the service.

Invariants:
    - Tools work offline (no running service required)
    - Every mutating command records the acting user (--user)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from ..config import ServiceConfig
from ..errors import BackupError
from ..models import parse_iso
from ..service import BackupService

logger = logging.getLogger(__name__)


def _sets(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def _print(document: Any) -> None:
    print(json.dumps(document, indent=2, sort_keys=True, default=str))


async def run_command(args: argparse.Namespace, service: BackupService) -> int:
    """Execute one CLI command. Returns the exit status."""
    if args.command == "snapshot":
        manifest = await service.create_snapshot(
            args.kind, _sets(args.sets), retention_days=args.retention_days, user_id=args.user
        )
        await service.replication.drain()
        _print(manifest.to_dict())
        return 0 if manifest.is_completed else 1

    if args.command == "list":
        manifests = await service.list_manifests(
            kind=args.kind,
            status=args.status,
            start=parse_iso(args.since),
            end=parse_iso(args.until),
            limit=args.limit,
        )
        document: dict[str, Any] = {"manifests": [m.to_dict() for m in manifests]}
        if args.stats:
            document["stats"] = await service.stats()
        _print(document)
        return 0

    if args.command == "show":
        _print(await service.inspect_manifest(args.manifest_id))
        return 0

    if args.command == "verify":
        result = await service.verify(args.manifest_id, deep=args.deep, repair=args.repair)
        _print(result.to_dict())
        return 0 if result.verified else 1

    if args.command == "restore":
        result = await service.restore(
            args.manifest_id,
            sets=_sets(args.sets),
            point_in_time=parse_iso(args.point_in_time),
            dry_run=args.dry_run,
            user_id=args.user,
        )
        _print(result.to_dict())
        return 0 if result.success else 1

    if args.command == "purge":
        purge = await service.purge_expired(user_id=args.user)
        _print(purge.to_dict())
        return 0

    if args.command == "health":
        _print(await service.check_replication_health())
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="billvault",
        description="Backup, verify, restore and purge billing platform snapshots",
    )
    parser.add_argument("--user", default="system", help="Acting user id for the audit trail")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    sub = parser.add_subparsers(dest="command", required=True)

    snapshot = sub.add_parser("snapshot", help="Take a snapshot")
    snapshot.add_argument("--kind", choices=["full", "incremental"], default="full")
    snapshot.add_argument("--sets", help="Comma-separated entity sets (default: configured)")
    snapshot.add_argument("--retention-days", type=int, help="Override retention")

    listing = sub.add_parser("list", help="List manifests, newest first")
    listing.add_argument("--kind", choices=["full", "incremental"])
    listing.add_argument("--status", choices=["pending", "in_progress", "completed", "failed"])
    listing.add_argument("--since", help="Created at or after (ISO-8601)")
    listing.add_argument("--until", help="Created at or before (ISO-8601)")
    listing.add_argument("--limit", type=int)
    listing.add_argument("--stats", action="store_true", help="Include aggregate statistics")

    show = sub.add_parser("show", help="Show one manifest and its payload record counts")
    show.add_argument("manifest_id")

    verify = sub.add_parser("verify", help="Verify a manifest")
    verify.add_argument("manifest_id")
    verify.add_argument("--deep", action="store_true", help="Structural and cross-record checks")
    verify.add_argument("--repair", action="store_true", help="Repair from a replica copy")

    restore = sub.add_parser("restore", help="Restore a manifest")
    restore.add_argument("manifest_id")
    restore.add_argument("--sets", help="Comma-separated entity sets (default: all in manifest)")
    restore.add_argument("--point-in-time", help="Discard records newer than this (ISO-8601)")
    restore.add_argument("--dry-run", action="store_true", help="Verify and plan only")

    sub.add_parser("purge", help="Purge expired manifests")
    sub.add_parser("health", help="Check replica node health")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    async def _run() -> int:
        service = BackupService(config)
        try:
            return await run_command(args, service)
        finally:
            await service.stop()

    try:
        status = asyncio.run(_run())
    except BackupError as e:
        _print({"error": e.message, "code": e.code, "details": e.details})
        sys.exit(1)
    sys.exit(status)


if __name__ == "__main__":
    main()
