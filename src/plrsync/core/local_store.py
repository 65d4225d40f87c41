"""Local record store for plrsync clients.

Holds the device's copy of every record plus the set of record ids with
local changes not yet accepted by the server ("dirty"). When a path is
given, the whole state is written to a JSON file after every mutation, or
once at the end of a batch().

The sync coordinator only relies on get_local_files, get_local_file,
add_local_file, put_local_file, mark_dirty, clear_dirty, get_dirty_files
and set_sync_status; the create/update/delete helpers are for local edits.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Union

from uuid6 import uuid7

from .models import FileRecord, SyncStatus
from .timestamp_utils import now_timestamp

logger = logging.getLogger(__name__)


class LocalStore:
    """Device-side record storage with dirty tracking."""

    def __init__(self, path: Optional[Union[Path, str]] = None) -> None:
        """Initialize local store.

        Args:
            path: JSON file to persist to; in-memory only if None
        """
        self.path = Path(path) if path is not None else None
        self._records: Dict[str, FileRecord] = {}
        self._dirty: Set[str] = set()
        self._lock = threading.RLock()
        self._batch_depth = 0
        self._save_pending = False
        if self.path is not None and self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        for item in data.get("files", []):
            record = FileRecord.from_dict(item)
            self._records[record.id] = record
        self._dirty = {d for d in data.get("dirty", []) if d in self._records}
        logger.info(f"Loaded {len(self._records)} local records from {self.path}")

    def _save(self) -> None:
        if self.path is None:
            return
        if self._batch_depth:
            self._save_pending = True
            return
        self._write()

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "files": [r.to_dict() for r in self._records.values()],
            "dirty": sorted(self._dirty),
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    @contextmanager
    def batch(self) -> Iterator[LocalStore]:
        """Defer saving until the outermost batch exits.

        Mutations inside the block are written to disk once, even if the
        block raises.
        """
        with self._lock:
            self._batch_depth += 1
        try:
            yield self
        finally:
            with self._lock:
                self._batch_depth -= 1
                if not self._batch_depth and self._save_pending:
                    self._save_pending = False
                    self._write()

    # ===== Collaborator interface used by the coordinator =====

    def get_local_files(self) -> List[FileRecord]:
        """Get all local records, tombstones included."""
        with self._lock:
            return list(self._records.values())

    def get_local_file(self, record_id: str) -> Optional[FileRecord]:
        with self._lock:
            return self._records.get(record_id)

    def add_local_file(self, record: FileRecord) -> None:
        """Insert a record received from the cloud. It is not dirty.

        Raises:
            KeyError: If a record with the same id already exists
        """
        with self._lock:
            if record.id in self._records:
                raise KeyError(f"Local record {record.id} already exists")
            self._records[record.id] = record.with_changes(sync_status=SyncStatus.SYNCED)
            self._save()

    def put_local_file(self, record: FileRecord, dirty: bool = False) -> None:
        """Insert or overwrite a local record.

        Args:
            record: Record to store
            dirty: Whether the record has changes the server has not accepted
        """
        with self._lock:
            self._records[record.id] = record
            if dirty:
                self._dirty.add(record.id)
            else:
                self._dirty.discard(record.id)
            self._save()

    def mark_dirty(self, record_id: str) -> None:
        with self._lock:
            if record_id not in self._records:
                raise KeyError(f"Unknown local record {record_id}")
            self._dirty.add(record_id)
            self._save()

    def clear_dirty(self, record_ids: Iterable[str]) -> None:
        with self._lock:
            self._dirty.difference_update(record_ids)
            self._save()

    def is_dirty(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._dirty

    def get_dirty_files(self) -> List[FileRecord]:
        """Get records with local changes, oldest version first."""
        with self._lock:
            dirty = [self._records[i] for i in self._dirty if i in self._records]
        return sorted(dirty, key=lambda r: (r.updated_at, r.id))

    def set_sync_status(self, record_ids: Iterable[str], status: SyncStatus) -> None:
        """Annotate local records with a sync status."""
        with self._lock:
            for record_id in record_ids:
                record = self._records.get(record_id)
                if record is not None:
                    self._records[record_id] = record.with_changes(sync_status=status)
            self._save()

    # ===== Local edits =====

    def create_file(
        self,
        name: str,
        path: str = "",
        size: int = 0,
        type: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FileRecord:
        """Create a new local record with a fresh UUID7 id. It is dirty."""
        now = now_timestamp()
        record = FileRecord(
            id=uuid7().hex,
            name=name,
            path=path,
            size=size,
            type=type,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self.put_local_file(record, dirty=True)
        logger.info(f"Created local record {record.id} ({name})")
        return record

    def update_file(self, record_id: str, **changes: Any) -> FileRecord:
        """Edit fields of a local record, restamping updatedAt. It is dirty.

        Raises:
            KeyError: If the record does not exist
        """
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise KeyError(f"Unknown local record {record_id}")
            updated = record.with_changes(
                updated_at=now_timestamp(), sync_status=None, **changes
            )
            self.put_local_file(updated, dirty=True)
        return updated

    def delete_file(self, record_id: str) -> FileRecord:
        """Turn a local record into a tombstone. It is dirty."""
        record = self.update_file(record_id, is_deleted=True)
        logger.info(f"Deleted local record {record_id}")
        return record
