"""Pytest fixtures for sync integration tests.

This module provides fixtures for:
- Spawning a real sync server process
- Creating client devices with their own local stores
- Reading the server's database from the test process
"""

from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest
import requests

from plrsync.core.local_store import LocalStore
from plrsync.core.storage import RecordStore
from plrsync.core.sync_client import RemoteClient, SyncCoordinator, SyncState

from tests.helpers import OWNER_A, OWNER_B, TOKEN_A, TOKEN_B

SRC_DIR = Path(__file__).parent.parent.parent / "src"


@dataclass
class ServerNode:
    """A sync server process and its config directory."""

    config_dir: Path
    port: int
    process: Optional[subprocess.Popen] = None

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    @property
    def db_path(self) -> Path:
        return self.config_dir / "plrsync.db"

    def is_server_running(self) -> bool:
        """Check if the sync server is responding."""
        try:
            resp = requests.get(f"{self.url}/sync/status", timeout=1)
            return resp.status_code == 200
        except requests.exceptions.RequestException:
            return False

    def wait_for_server(self, timeout: float = 10.0) -> bool:
        """Wait for server to become available."""
        start = time.time()
        while time.time() - start < timeout:
            if self.is_server_running():
                return True
            time.sleep(0.1)
        return False

    def stop_server(self) -> None:
        """Stop the sync server process."""
        if self.process:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
            self.process = None

    def open_store(self) -> RecordStore:
        """Open the server's database from the test process."""
        return RecordStore(self.db_path)


@dataclass
class Device:
    """A client device: local store plus coordinator."""

    name: str
    store: LocalStore
    coordinator: SyncCoordinator
    states: List[SyncState] = field(default_factory=list)

    def sync(self) -> Any:
        return self.coordinator.sync()


def find_free_port() -> int:
    """Find a free TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]


def subprocess_env() -> Dict[str, str]:
    env = os.environ.copy()
    env["PYTHONPATH"] = str(SRC_DIR) + os.pathsep + env.get("PYTHONPATH", "")
    return env


def create_server_node(base_dir: Path, max_requests: int = 1000) -> ServerNode:
    """Create a server config directory with two known tokens.

    Args:
        base_dir: Base directory for server files
        max_requests: Rate limit quota per principal per window

    Returns:
        ServerNode, not started
    """
    config_dir = base_dir / "server"
    config_dir.mkdir(parents=True, exist_ok=True)

    config_data = {
        "database_file": str(config_dir / "plrsync.db"),
        "tokens": {TOKEN_A: OWNER_A, TOKEN_B: OWNER_B},
        "rate_limit_window_seconds": 60,
        "rate_limit_max_requests": max_requests,
    }
    with open(config_dir / "config.json", "w") as f:
        json.dump(config_data, f, indent=2)

    return ServerNode(config_dir=config_dir, port=find_free_port())


def start_sync_server(node: ServerNode) -> subprocess.Popen:
    """Start a sync server process for the given node.

    Args:
        node: ServerNode to start

    Returns:
        Popen process object
    """
    cmd = [
        sys.executable,
        "-m", "plrsync.main",
        "-d", str(node.config_dir),
        "web",
        "--host", "127.0.0.1",
        "--port", str(node.port),
    ]

    process = subprocess.Popen(
        cmd,
        env=subprocess_env(),
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )

    node.process = process
    return process


def create_device(
    name: str, server: ServerNode, token: str, base_dir: Path
) -> Device:
    """Create a device with a persistent local store talking to ``server``."""
    store = LocalStore(base_dir / name / "local_files.json")
    states: List[SyncState] = []
    coordinator = SyncCoordinator(
        store,
        RemoteClient(server.url, token, timeout=5),
        status_listener=states.append,
    )
    return Device(name=name, store=store, coordinator=coordinator, states=states)


def _running_server(tmp_path: Path, max_requests: int) -> Generator[ServerNode, None, None]:
    node = create_server_node(tmp_path, max_requests=max_requests)
    start_sync_server(node)
    if not node.wait_for_server():
        node.stop_server()
        pytest.fail("Failed to start sync server")
    yield node
    node.stop_server()


@pytest.fixture
def running_server(tmp_path: Path) -> Generator[ServerNode, None, None]:
    """Sync server with a generous rate limit."""
    yield from _running_server(tmp_path, max_requests=1000)


@pytest.fixture
def limited_server(tmp_path: Path) -> Generator[ServerNode, None, None]:
    """Sync server allowing 3 requests per principal per minute."""
    yield from _running_server(tmp_path, max_requests=3)


@pytest.fixture
def laptop(running_server: ServerNode, tmp_path: Path) -> Device:
    return create_device("laptop", running_server, TOKEN_A, tmp_path)


@pytest.fixture
def phone(running_server: ServerNode, tmp_path: Path) -> Device:
    return create_device("phone", running_server, TOKEN_A, tmp_path)
