"""Pytest fixtures for plrsync tests.

This module provides fixtures for test configuration, the authoritative
record store, and local stores.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Generator

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from plrsync.core.config import Config
from plrsync.core.local_store import LocalStore
from plrsync.core.storage import RecordStore

from tests.helpers import InProcessRemote, OWNER_A


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "plrsync_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration."""
    return Config(config_dir=test_config_dir)


@pytest.fixture
def record_store() -> Generator[RecordStore, None, None]:
    """Create an empty in-memory authoritative store.

    Yields:
        RecordStore instance, closed afterwards.
    """
    store = RecordStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def local_store() -> LocalStore:
    """Create an empty in-memory local store."""
    return LocalStore()


@pytest.fixture
def remote(record_store: RecordStore) -> InProcessRemote:
    """Create an in-process remote for OWNER_A."""
    return InProcessRemote(record_store, OWNER_A)
