#!/usr/bin/env python3
"""Web server for plrsync.

This module runs the Remote Authority: the hosted side of the sync protocol
that stores the canonical version of every record.

Endpoints:
    POST /sync                  Push a batch of changed records
    GET  /sync/changes          Pull records changed since a timestamp
    GET  /sync/status           Health check (no authentication)

All endpoints return JSON responses. Authenticated endpoints take
``Authorization: Bearer <token>``; tokens map to principals in config.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Optional

from flask import Flask, Response, jsonify
from flask_cors import CORS

from plrsync.core.auth import Authenticator, StaticTokenAuthenticator
from plrsync.core.config import DEFAULT_SERVER_PORT, Config
from plrsync.core.rate_limit import RateLimiter
from plrsync.core.storage import RecordStore
from plrsync.core.sync import create_sync_blueprint

logger = logging.getLogger(__name__)


def create_app(
    config_dir: Optional[Path] = None,
    store: Optional[RecordStore] = None,
    authenticator: Optional[Authenticator] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> Flask:
    """Create and configure Flask application.

    Anything not passed in is built from the configuration.

    Args:
        config_dir: Custom configuration directory (default: None)
        store: Authoritative record store
        authenticator: Bearer token resolver
        rate_limiter: Per-principal admission guard

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False
    CORS(app)  # Enable CORS for all routes

    config = Config(config_dir=config_dir)

    if store is None:
        db_path = Path(config.get("database_file"))
        store = RecordStore(db_path)
        logger.info(f"Sync server initialized with database: {db_path}")

    if authenticator is None:
        tokens = config.get_tokens()
        if not tokens:
            logger.warning("No auth tokens configured; every sync request will be rejected")
        authenticator = StaticTokenAuthenticator(tokens)

    if rate_limiter is None:
        rate_limiter = RateLimiter(
            window_seconds=config.get_rate_limit_window_seconds(),
            max_requests=config.get_rate_limit_max_requests(),
        )

    app.extensions["plrsync"] = {
        "config": config,
        "store": store,
        "rate_limiter": rate_limiter,
    }
    app.register_blueprint(create_sync_blueprint(store, authenticator, rate_limiter))

    @app.errorhandler(404)
    def not_found(error: Any) -> tuple[Response, int]:
        """Handle 404 errors."""
        return jsonify({"error": "Not found", "code": "not_found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error: Any) -> tuple[Response, int]:
        """Handle 405 errors."""
        return jsonify({"error": "Method not allowed", "code": "method_not_allowed"}), 405

    @app.errorhandler(500)
    def internal_error(error: Any) -> tuple[Response, int]:
        """Handle 500 errors."""
        logger.error(f"Internal error: {error}")
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500

    return app


def add_web_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add web subparser and its arguments.

    Args:
        subparsers: Parent subparsers object to add web parser to
    """
    web_parser = subparsers.add_parser(
        "web",
        help="Start the sync server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    web_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )

    web_parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_SERVER_PORT,
        help=f"Port to bind to (default: {DEFAULT_SERVER_PORT})"
    )

    web_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run the sync server with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have host, port, debug attributes)

    Returns:
        Exit code (0 for success)
    """
    logger.info("Starting plrsync sync server")
    if config_dir:
        logger.info(f"Using custom config directory: {config_dir}")

    app = create_app(config_dir=config_dir)

    app.run(
        host=args.host,
        port=args.port,
        debug=args.debug,
        threaded=True,
    )

    return 0
