"""Test helper functions for plrsync tests.

This module provides record builders, deterministic timestamps, and
in-process stand-ins for the sync server transport.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from plrsync.core.models import FileRecord
from plrsync.core.storage import RecordStore
from plrsync.core.sync import apply_sync_batch, get_changes_since
from plrsync.core.sync_client import ChangesResponse, PushResponse
from plrsync.core.timestamp_utils import MonotonicClock, format_timestamp

OWNER_A = "user-a"
OWNER_B = "user-b"
TOKEN_A = "token-a"
TOKEN_B = "token-b"

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def ts(seconds: float) -> str:
    """Canonical timestamp ``seconds`` after 2024-01-01T00:00:00Z."""
    return format_timestamp(BASE_TIME + timedelta(seconds=seconds))


def make_record(
    record_id: str,
    updated_at: Optional[str] = None,
    user_id: Optional[str] = None,
    **fields: Any,
) -> FileRecord:
    """Build a record with sensible defaults."""
    updated_at = updated_at or ts(0)
    fields.setdefault("name", f"{record_id}.pdf")
    fields.setdefault("created_at", updated_at)
    return FileRecord(id=record_id, updated_at=updated_at, user_id=user_id, **fields)


class InProcessRemote:
    """Remote transport that calls the server-side functions directly.

    Hooks allow tests to fail or intercept either call.
    """

    def __init__(self, store: RecordStore, owner_id: str = OWNER_A) -> None:
        self.store = store
        self.owner_id = owner_id
        self.clock = MonotonicClock()
        self.lock = threading.Lock()
        self.push_calls: List[List[FileRecord]] = []
        self.changes_calls: List[str] = []
        self.before_push: Optional[Callable[[List[FileRecord]], None]] = None
        self.before_changes: Optional[Callable[[str], None]] = None

    def push(self, records: List[FileRecord]) -> PushResponse:
        self.push_calls.append(list(records))
        if self.before_push is not None:
            self.before_push(records)
        # Same round trip a JSON transport would do
        wire = [FileRecord.from_dict(r.to_dict(include_local=False)) for r in records]
        with self.lock:
            outcome = apply_sync_batch(self.store, self.owner_id, wire, self.clock)
        return PushResponse(
            conflicts=outcome.conflicts,
            files=outcome.applied,
            server_time=self.clock.now(),
        )

    def get_changes(self, since: str) -> ChangesResponse:
        self.changes_calls.append(since)
        if self.before_changes is not None:
            self.before_changes(since)
        with self.lock:
            server_time = self.clock.now()
            files = get_changes_since(self.store, self.owner_id, since)
        return ChangesResponse(files=files, server_time=server_time)


class FakeClock:
    """Manually advanced monotonic clock for rate limiter tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
