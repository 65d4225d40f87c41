"""Authoritative record storage for the plrsync server.

Records are kept in SQLite, one row per record id. Deletions are tombstone
rows, never physical removal, so the change feed can report them.

All methods return FileRecord objects. Client-local fields (syncStatus)
are never persisted.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .errors import StorageError
from .models import FileRecord

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_files_user_updated ON files (user_id, updated_at);
"""


class RecordStore:
    """SQLite-backed store of the authoritative record versions.

    A single connection is shared between request threads and guarded by a
    lock, so every method is safe to call concurrently.
    """

    def __init__(self, db_path: Union[Path, str] = ":memory:") -> None:
        """Open (and create if needed) the record database.

        Args:
            db_path: Path to the SQLite database file, or ':memory:'
        """
        path_str = str(db_path)
        if path_str != ":memory:":
            Path(path_str).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(path_str, check_same_thread=False)
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open record store at {path_str}: {e}") from e
        logger.info(f"Opened record store at {path_str}")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    @staticmethod
    def _row_to_record(data: str) -> FileRecord:
        return FileRecord.from_dict(json.loads(data))

    def get_record(self, record_id: str) -> Optional[FileRecord]:
        """Get the stored version of a record, or None."""
        return self.get_records([record_id]).get(record_id)

    def get_records(self, record_ids: Iterable[str]) -> Dict[str, FileRecord]:
        """Get stored versions of several records.

        Args:
            record_ids: Record ids to look up

        Returns:
            Dict mapping id to stored record, for the ids that exist
        """
        ids = list(record_ids)
        if not ids:
            return {}

        result: Dict[str, FileRecord] = {}
        try:
            with self._lock:
                # Chunked to stay below SQLite's bound-parameter limit
                for start in range(0, len(ids), 500):
                    chunk = ids[start:start + 500]
                    placeholders = ",".join("?" for _ in chunk)
                    rows = self._conn.execute(
                        f"SELECT data FROM files WHERE id IN ({placeholders})", chunk
                    ).fetchall()
                    for (data,) in rows:
                        record = self._row_to_record(data)
                        result[record.id] = record
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read records: {e}") from e
        return result

    def upsert_records(self, records: List[FileRecord]) -> None:
        """Insert or replace records, all in one transaction.

        Either every record is written or none is.

        Raises:
            StorageError: If the write fails (the transaction is rolled back)
        """
        if not records:
            return

        rows = []
        for record in records:
            if not record.user_id:
                raise StorageError(f"Record {record.id} has no owner")
            rows.append((
                record.id,
                record.user_id,
                record.updated_at,
                json.dumps(record.to_dict(include_local=False)),
            ))

        with self._lock:
            try:
                with self._conn:
                    self._conn.executemany(
                        "INSERT OR REPLACE INTO files (id, user_id, updated_at, data) "
                        "VALUES (?, ?, ?, ?)",
                        rows,
                    )
            except sqlite3.Error as e:
                logger.error(f"Upsert of {len(rows)} records failed, rolled back: {e}")
                raise StorageError(f"Failed to write records: {e}") from e

        logger.debug(f"Upserted {len(rows)} records")

    def get_changes_since(self, owner_id: str, since: str) -> List[FileRecord]:
        """Get an owner's records with updatedAt strictly after a timestamp.

        Args:
            owner_id: Owner whose records to return
            since: Canonical timestamp (exclusive lower bound)

        Returns:
            Records ordered by updatedAt ascending
        """
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT data FROM files WHERE user_id = ? AND updated_at > ? "
                    "ORDER BY updated_at ASC, id ASC",
                    (owner_id, since),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to query changes: {e}") from e
        return [self._row_to_record(data) for (data,) in rows]

    def count(self) -> int:
        """Get the number of stored records, tombstones included."""
        try:
            with self._lock:
                (total,) = self._conn.execute("SELECT COUNT(*) FROM files").fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to count records: {e}") from e
        return int(total)
