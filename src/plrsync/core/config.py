"""Configuration management for plrsync.

This module handles loading and saving application configuration to/from
a JSON file. The config directory can be customized via CLI argument.

CRITICAL: This module must have NO Flask dependencies.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .rate_limit import DEFAULT_MAX_REQUESTS, DEFAULT_WINDOW_SECONDS
from .timestamp_utils import EPOCH
from .validation import ValidationError, validate_positive_int, validate_timestamp

__all__ = ["Config", "DEFAULT_CONFIG_DIR"]

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "plrsync"
DEFAULT_SYNC_INTERVAL_MINUTES = 5
DEFAULT_SERVER_PORT = 8384


class Config:
    """Manages application configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to config.json
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses ~/.config/plrsync/
        """
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"
        self.config_data = self.load_config()

    def _defaults(self) -> Dict[str, Any]:
        return {
            "database_file": str(self.config_dir / "plrsync.db"),
            "local_store_file": str(self.config_dir / "local_files.json"),
            "server_url": f"http://127.0.0.1:{DEFAULT_SERVER_PORT}",
            "auth_token": "",
            "sync_interval_minutes": DEFAULT_SYNC_INTERVAL_MINUTES,
            "rate_limit_window_seconds": int(DEFAULT_WINDOW_SECONDS),
            "rate_limit_max_requests": DEFAULT_MAX_REQUESTS,
            "tokens": {},
            "last_sync_timestamp": EPOCH,
        }

    def load_config(self) -> Dict[str, Any]:
        """Load configuration, filling in defaults for missing keys.

        Creates the file with defaults on first use.
        """
        defaults = self._defaults()
        if not self.config_file.exists():
            self.save_config(defaults)
            return defaults

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read config {self.config_file}: {e}; using defaults")
            return defaults

        if not isinstance(loaded, dict):
            logger.error(f"Config {self.config_file} is not a JSON object; using defaults")
            return defaults

        defaults.update(loaded)
        return defaults

    def save_config(self, config: Dict[str, Any]) -> None:
        """Write the configuration to disk atomically."""
        tmp_file = self.config_file.with_suffix(".json.tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
        os.replace(tmp_file, self.config_file)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        value = self.config_data.get(key)
        return value if value is not None else default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value and save to file."""
        self.config_data[key] = value
        self.save_config(self.config_data)

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    # ===== Sync Configuration Methods =====

    def get_server_url(self) -> str:
        return str(self.get("server_url")).rstrip("/")

    def get_auth_token(self) -> str:
        return str(self.get("auth_token", ""))

    def get_sync_interval_minutes(self) -> int:
        """Get the automatic sync interval in minutes."""
        return validate_positive_int(
            self.get("sync_interval_minutes", DEFAULT_SYNC_INTERVAL_MINUTES),
            "sync_interval_minutes",
        )

    def set_sync_interval_minutes(self, minutes: int) -> None:
        self.set("sync_interval_minutes", validate_positive_int(minutes, "sync_interval_minutes"))

    def get_rate_limit_window_seconds(self) -> int:
        return validate_positive_int(
            self.get("rate_limit_window_seconds", DEFAULT_WINDOW_SECONDS),
            "rate_limit_window_seconds",
        )

    def get_rate_limit_max_requests(self) -> int:
        return validate_positive_int(
            self.get("rate_limit_max_requests", DEFAULT_MAX_REQUESTS),
            "rate_limit_max_requests",
        )

    def get_tokens(self) -> Dict[str, str]:
        """Get the server's bearer token -> principal id table."""
        tokens = self.get("tokens", {})
        if not isinstance(tokens, dict):
            raise ValidationError("tokens", "must be an object mapping token to principal")
        return {str(k): str(v) for k, v in tokens.items()}

    def add_token(self, token: str, principal_id: str) -> None:
        if not token:
            raise ValidationError("token", "must not be empty")
        if not principal_id:
            raise ValidationError("principal_id", "must not be empty")
        tokens = self.get_tokens()
        tokens[token] = principal_id
        self.set("tokens", tokens)

    def get_last_sync_timestamp(self) -> str:
        """Get the persisted client sync cursor."""
        return validate_timestamp(
            self.get("last_sync_timestamp", EPOCH), "last_sync_timestamp"
        )

    def set_last_sync_timestamp(self, timestamp: str) -> None:
        self.set("last_sync_timestamp", validate_timestamp(timestamp, "last_sync_timestamp"))
