#!/usr/bin/env python3
"""Command-line interface for plrsync.

This module manages the local file library and runs sync rounds against the
sync server. Uses only core/ modules.

Commands:
    list-files                  List local records
    add-file NAME               Create a local record
    edit-file ID                Change fields of a local record
    delete-file ID              Mark a local record deleted
    sync                        Run one sync round
    auto-sync                   Sync periodically until interrupted
    set-server URL              Configure the server URL and token
    add-token TOKEN PRINCIPAL   Allow a bearer token on this server
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

from plrsync.core.config import Config
from plrsync.core.conflicts import ConflictResolver, ResolutionChoice
from plrsync.core.errors import SyncError
from plrsync.core.local_store import LocalStore
from plrsync.core.models import FileRecord
from plrsync.core.sync_client import (
    AutoSync,
    RemoteClient,
    SyncCoordinator,
    SyncState,
)
from plrsync.core.validation import ValidationError

logger = logging.getLogger(__name__)


def format_file(record: FileRecord, format_type: str = "text") -> str:
    """Format a record for display.

    Args:
        record: Record to format
        format_type: "text" or "json"

    Returns:
        Formatted string
    """
    if format_type == "json":
        return json.dumps(record.to_dict(), indent=2, ensure_ascii=False)

    status = record.sync_status.value if record.sync_status else "local"
    deleted = " [deleted]" if record.is_deleted else ""
    lines = [
        f"ID: {record.id} | {record.name}{deleted}",
        f"  Path: {record.path or '-'} | Size: {record.size} | Type: {record.type or '-'}",
        f"  Updated: {record.updated_at} | Status: {status}",
    ]
    if record.metadata:
        lines.append(f"  Metadata: {json.dumps(record.metadata, ensure_ascii=False)}")
    return "\n".join(lines)


def ask_user_decision(local: FileRecord, cloud: FileRecord) -> ResolutionChoice:
    """Ask on the terminal which version of a conflicting record to keep."""
    print(f"\nConflict on {local.id}:")
    print("  Local version:")
    print("    " + format_file(local).replace("\n", "\n    "))
    print("  Cloud version:")
    print("    " + format_file(cloud).replace("\n", "\n    "))
    while True:
        answer = input("Keep [l]ocal or [c]loud? ").strip().lower()
        if answer in ("l", "local"):
            return ResolutionChoice.LOCAL
        if answer in ("c", "cloud"):
            return ResolutionChoice.CLOUD


def _parse_metadata(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        metadata = json.loads(raw)
    except ValueError as e:
        raise ValidationError("metadata", f"invalid JSON: {e}") from None
    if not isinstance(metadata, dict):
        raise ValidationError("metadata", "must be a JSON object")
    return metadata


def build_coordinator(
    config: Config, store: LocalStore, manual: bool = False
) -> SyncCoordinator:
    """Create a coordinator wired to the configured server.

    The cursor is loaded from config and saved back after every
    successful round.
    """
    remote = RemoteClient(config.get_server_url(), config.get_auth_token())
    resolver = ConflictResolver(ask_user_decision if manual else None)
    coordinator: SyncCoordinator

    def on_status(state: SyncState) -> None:
        logger.info(f"Sync status: {state.value}")
        if state is SyncState.SYNCED:
            config.set_last_sync_timestamp(coordinator.cursor)

    coordinator = SyncCoordinator(
        store,
        remote,
        resolver=resolver,
        status_listener=on_status,
        cursor=config.get_last_sync_timestamp(),
    )
    return coordinator


def cmd_list_files(store: LocalStore, args: argparse.Namespace) -> int:
    """List local records.

    Args:
        store: Local store instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    records = sorted(store.get_local_files(), key=lambda r: r.updated_at)
    if not args.all:
        records = [r for r in records if not r.is_deleted]

    if args.format == "json":
        print(json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False))
        return 0

    if not records:
        print("No files found.")
        return 0
    for record in records:
        print(format_file(record))
    return 0


def cmd_add_file(store: LocalStore, args: argparse.Namespace) -> int:
    """Create a local record."""
    record = store.create_file(
        name=args.name,
        path=args.path or "",
        size=args.size,
        type=args.type or "",
        metadata=_parse_metadata(args.metadata),
    )
    if args.format == "json":
        print(json.dumps(record.to_dict()))
    else:
        print(f"Created file {record.id}")
    return 0


def cmd_edit_file(store: LocalStore, args: argparse.Namespace) -> int:
    """Change fields of a local record."""
    changes: Dict[str, Any] = {}
    for attr in ("name", "path", "type", "size"):
        value = getattr(args, attr, None)
        if value is not None:
            changes[attr] = value
    metadata = _parse_metadata(args.metadata)
    if metadata is not None:
        changes["metadata"] = metadata

    if not changes:
        print("Error: Nothing to change.", file=sys.stderr)
        return 1

    try:
        record = store.update_file(args.file_id, **changes)
    except KeyError:
        print(f"Error: File with ID {args.file_id} not found.", file=sys.stderr)
        return 1

    print(format_file(record, args.format))
    return 0


def cmd_delete_file(store: LocalStore, args: argparse.Namespace) -> int:
    """Mark a local record deleted."""
    try:
        store.delete_file(args.file_id)
    except KeyError:
        print(f"Error: File with ID {args.file_id} not found.", file=sys.stderr)
        return 1
    print(f"Deleted file {args.file_id}")
    return 0


def cmd_sync(config: Config, store: LocalStore, args: argparse.Namespace) -> int:
    """Run one sync round.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    coordinator = build_coordinator(config, store, manual=args.manual)
    try:
        result = coordinator.sync()
    except SyncError as e:
        if args.format == "json":
            print(json.dumps({"success": False, "code": e.code, "error": e.message}))
        else:
            print(f"Sync failed ({e.code}): {e.message}", file=sys.stderr)
        return 1

    if result is None:
        print("Sync already in progress.", file=sys.stderr)
        return 1

    if args.format == "json":
        print(json.dumps({
            "success": True,
            "pulled": result.pulled,
            "pushed": result.pushed,
            "conflicts": result.conflicts,
            "cursor": result.cursor,
        }, indent=2))
    else:
        print("Sync completed:")
        print(f"  Pulled: {result.pulled} files")
        print(f"  Pushed: {result.pushed} files")
        print(f"  Conflicts resolved: {result.conflicts}")
    return 0


def cmd_auto_sync(config: Config, store: LocalStore, args: argparse.Namespace) -> int:
    """Sync periodically until interrupted."""
    interval = args.interval or config.get_sync_interval_minutes()
    coordinator = build_coordinator(config, store)
    auto_sync = AutoSync(coordinator, interval_minutes=interval)

    print(f"Syncing every {interval} minutes. Press Ctrl+C to stop.")
    auto_sync.tick()
    auto_sync.start()
    try:
        while auto_sync.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping auto sync...")
    finally:
        auto_sync.stop()
    return 0


def cmd_set_server(config: Config, args: argparse.Namespace) -> int:
    """Configure the sync server URL and bearer token."""
    config.set("server_url", args.url)
    if args.token is not None:
        config.set("auth_token", args.token)
    print(f"Sync server set to {config.get_server_url()}")
    return 0


def cmd_add_token(config: Config, args: argparse.Namespace) -> int:
    """Allow a bearer token on this server."""
    config.add_token(args.token, args.principal)
    print(f"Token added for principal {args.principal}")
    return 0


def add_cli_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add CLI subparser and its nested subcommands.

    Args:
        subparsers: Parent subparsers object to add CLI parser to
    """
    cli_parser = subparsers.add_parser(
        "cli",
        help="Command-line interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    cli_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    cli_subparsers = cli_parser.add_subparsers(dest="cli_command", help="CLI commands")

    list_parser = cli_subparsers.add_parser("list-files", help="List local files")
    list_parser.add_argument("--all", action="store_true", help="Include deleted files")

    add_parser = cli_subparsers.add_parser("add-file", help="Add a local file record")
    add_parser.add_argument("name", help="File name")
    add_parser.add_argument("--path", help="File path on this device")
    add_parser.add_argument("--size", type=int, default=0, help="Size in bytes")
    add_parser.add_argument("--type", help="File type")
    add_parser.add_argument("--metadata", help="Metadata as a JSON object")

    edit_parser = cli_subparsers.add_parser("edit-file", help="Edit a local file record")
    edit_parser.add_argument("file_id", help="File ID")
    edit_parser.add_argument("--name", help="New name")
    edit_parser.add_argument("--path", help="New path")
    edit_parser.add_argument("--size", type=int, help="New size in bytes")
    edit_parser.add_argument("--type", help="New type")
    edit_parser.add_argument("--metadata", help="New metadata as a JSON object")

    delete_parser = cli_subparsers.add_parser("delete-file", help="Delete a local file record")
    delete_parser.add_argument("file_id", help="File ID")

    sync_parser = cli_subparsers.add_parser("sync", help="Run one sync round")
    sync_parser.add_argument(
        "--manual",
        action="store_true",
        help="Ask which version to keep for each conflict (default: last write wins)"
    )

    auto_parser = cli_subparsers.add_parser("auto-sync", help="Sync periodically")
    auto_parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Minutes between rounds (default: from config, 5)"
    )

    server_parser = cli_subparsers.add_parser("set-server", help="Configure the sync server")
    server_parser.add_argument("url", help="Server URL, e.g. http://127.0.0.1:8384")
    server_parser.add_argument("--token", help="Bearer token")

    token_parser = cli_subparsers.add_parser(
        "add-token", help="Allow a bearer token on this server"
    )
    token_parser.add_argument("token", help="Bearer token")
    token_parser.add_argument("principal", help="Principal (user) id the token belongs to")


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have cli_command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not getattr(args, "cli_command", None):
        print("Error: No CLI command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    config = Config(config_dir=config_dir)
    store = LocalStore(Path(config.get("local_store_file")))

    try:
        if args.cli_command == "list-files":
            return cmd_list_files(store, args)
        elif args.cli_command == "add-file":
            return cmd_add_file(store, args)
        elif args.cli_command == "edit-file":
            return cmd_edit_file(store, args)
        elif args.cli_command == "delete-file":
            return cmd_delete_file(store, args)
        elif args.cli_command == "sync":
            return cmd_sync(config, store, args)
        elif args.cli_command == "auto-sync":
            return cmd_auto_sync(config, store, args)
        elif args.cli_command == "set-server":
            return cmd_set_server(config, args)
        elif args.cli_command == "add-token":
            return cmd_add_token(config, args)
        else:
            print(f"Error: Unknown command '{args.cli_command}'", file=sys.stderr)
            return 1
    except ValidationError as e:
        print(f"Error: Invalid {e.field}: {e.message}", file=sys.stderr)
        return 1
