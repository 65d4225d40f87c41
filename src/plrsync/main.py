#!/usr/bin/env python3
"""plrsync application entry point.

This module provides a unified entry point for both sides of the sync:
- Web: the sync server (Remote Authority)
- CLI: local file library and sync rounds (client)

Usage:
    python -m plrsync.main web [--port 8384]      # Start sync server
    python -m plrsync.main cli list-files         # List local files
    python -m plrsync.main cli sync               # Run one sync round
    python -m plrsync.main cli auto-sync          # Sync every few minutes
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import NoReturn
from pathlib import Path

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the unified argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        description="plrsync - sync file metadata between devices and a hosted library",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m plrsync.main web --port 8384                Start the sync server
  python -m plrsync.main cli add-token s3cret user-1    Allow a token on the server
  python -m plrsync.main cli set-server http://host:8384 --token s3cret
  python -m plrsync.main cli add-file "Ebook.pdf" --size 1024
  python -m plrsync.main cli sync                       Run one sync round
""",
    )

    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/plrsync/)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="interface", help="Interface to use")

    from plrsync.web import add_web_subparser
    add_web_subparser(subparsers)

    from plrsync.cli import add_cli_subparser
    add_cli_subparser(subparsers)

    return parser


def main() -> NoReturn:
    """Main entry point for plrsync.

    Parses arguments and dispatches to the appropriate interface.
    """
    parser = create_parser()
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.interface == "web":
        from plrsync.web import run as run_web
        exit_code = run_web(args.config_dir, args)
    elif args.interface == "cli":
        from plrsync.cli import run as run_cli
        exit_code = run_cli(args.config_dir, args)
    else:
        parser.print_help()
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
