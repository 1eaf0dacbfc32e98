"""
Change history CLI tool for RecSync.

This tool reads and restores from the change log of a SQLite deployment:
- list: Print a record's change log entries, most recent first
- restore: Restore a record from a change log entry

Usage:
    recsync-history --data-dir /var/lib/recsync list P1 --limit 20
    recsync-history --data-dir /var/lib/recsync restore <entry_id> --actor admin:kim

Invariants:
    - list prints one JSON object per line (stable for scripting)
    - restore exits non-zero when the restore failed
    - Only the SQLite stores are supported (memory stores do not outlive a process)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripts
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

from ..model import RestoreResult
from ..schema import get_record_type
from ..stores.sqlite import SqliteChangeLogStore, SqliteRecordStore
from ..sync.audit import AuditWriter, describe
from ..sync.restore import LogRestorer

logger = logging.getLogger(__name__)


class HistoryCLI:
    """CLI over the change log.

    Example:
        >>> cli = HistoryCLI("/var/lib/recsync")
        >>> lines = await cli.list_entries("P1", limit=10)
        >>> result = await cli.restore(entry_id, actor_id="admin:kim")
    """

    def __init__(self, data_dir: str, record_type: str = "participant") -> None:
        self.data_dir = data_dir
        self.record_type = get_record_type(record_type)
        self.record_store = SqliteRecordStore(data_dir)
        self.change_log = SqliteChangeLogStore(data_dir)

    async def list_entries(self, record_id: str, limit: int = 50) -> list[str]:
        """Render a record's most recent entries as JSON lines."""
        writer = AuditWriter(self.change_log, record_type=self.record_type)
        entries = await writer.history(record_id).first(limit)

        lines = []
        for entry in entries:
            data: dict[str, Any] = entry.to_dict()
            description = describe(entry)
            data["label"] = description.label
            data["summary"] = description.summary
            lines.append(json.dumps(data, ensure_ascii=False, sort_keys=True))
        return lines

    async def restore(self, entry_id: str, actor_id: str) -> RestoreResult:
        """Run the restore primitive for one entry."""
        restorer = LogRestorer(self.record_store, self.change_log, record_type=self.record_type)
        return await restorer.restore_from_log(entry_id, actor_id)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the history tool."""
    parser = argparse.ArgumentParser(description="RecSync change history tool")
    parser.add_argument(
        "--data-dir",
        default=os.getenv("RECSYNC_DATA_DIR", "./data"),
        help="Directory holding records.db and change_log.db",
    )
    parser.add_argument("--record-type", default="participant", help="Record type name")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # list command
    list_parser = subparsers.add_parser("list", help="List change log entries of a record")
    list_parser.add_argument("record_id", help="Record ID")
    list_parser.add_argument("--limit", "-n", type=int, default=50, help="Maximum entries")

    # restore command
    restore_parser = subparsers.add_parser("restore", help="Restore from a change log entry")
    restore_parser.add_argument("entry_id", help="Change log entry ID")
    restore_parser.add_argument("--actor", required=True, help="Actor performing the restore")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if not os.path.isdir(args.data_dir):
        print(f"Data directory not found: {args.data_dir}", file=sys.stderr)
        sys.exit(1)

    cli = HistoryCLI(args.data_dir, record_type=args.record_type)

    if args.command == "list":
        if args.limit <= 0:
            print("--limit must be positive", file=sys.stderr)
            sys.exit(1)
        for line in asyncio.run(cli.list_entries(args.record_id, args.limit)):
            print(line)

    elif args.command == "restore":
        result = asyncio.run(cli.restore(args.entry_id, args.actor))
        print(json.dumps(result.to_dict(), ensure_ascii=False, sort_keys=True))
        if not result.success:
            print(f"Restore failed: {result.error}", file=sys.stderr)
            sys.exit(1)
        if result.audit_error:
            print(f"Warning: restore applied but not logged: {result.audit_error}", file=sys.stderr)


if __name__ == "__main__":
    main()
