"""Data models for plrsync.

This module defines the dataclasses exchanged by both peers:
FileRecord (the unit of synchronization) and Conflict (a divergent pair).

Wire dicts use camelCase keys; attributes use snake_case.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, Optional

from .errors import ValidationError
from .timestamp_utils import EPOCH, normalize_timestamp


class SyncStatus(Enum):
    """Client-local sync annotation of a record. Never stored remotely."""

    SYNCED = "synced"
    SYNCING = "syncing"
    ERROR = "error"
    CONFLICT = "conflict"


# attribute name -> wire name
_WIRE_NAMES = {
    "id": "id",
    "name": "name",
    "path": "path",
    "size": "size",
    "type": "type",
    "user_id": "userId",
    "metadata": "metadata",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "sync_status": "syncStatus",
    "is_deleted": "isDeleted",
}


@dataclass(frozen=True)
class FileRecord:
    """Metadata of one file in a user's library.

    Attributes:
        id: Stable unique identifier, immutable for the record's lifetime
        name: Display name of the file
        path: Location of the file on the owning device
        size: File size in bytes
        type: MIME type or file kind
        user_id: Owner; assigned by the server on write
        metadata: Arbitrary JSON-serializable metadata fields
        created_at: When the record was created (canonical timestamp)
        updated_at: Version timestamp, the only basis for ordering
        sync_status: Client-local sync annotation (None on the server)
        is_deleted: Tombstone flag; deleted records are kept, not removed
    """

    id: str
    name: str = ""
    path: str = ""
    size: int = 0
    type: str = ""
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = EPOCH
    updated_at: str = EPOCH
    sync_status: Optional[SyncStatus] = None
    is_deleted: bool = False

    @classmethod
    def from_dict(cls, data: Any, field_prefix: str = "file") -> "FileRecord":
        """Build a record from its wire representation.

        Args:
            data: Decoded JSON object
            field_prefix: Prefix for field names in validation errors

        Returns:
            FileRecord with normalized timestamps

        Raises:
            ValidationError: If a field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise ValidationError(
                field_prefix, f"must be an object, got {type(data).__name__}"
            )

        record_id = data.get("id")
        if not isinstance(record_id, str) or not record_id.strip():
            raise ValidationError(f"{field_prefix}.id", "must be a non-empty string")

        if "updatedAt" not in data:
            raise ValidationError(f"{field_prefix}.updatedAt", "is required")

        kwargs: Dict[str, Any] = {"id": record_id}
        for attr in ("name", "path", "type"):
            value = data.get(_WIRE_NAMES[attr])
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValidationError(f"{field_prefix}.{attr}", "must be a string")
            kwargs[attr] = value

        size = data.get("size")
        if size is not None:
            if isinstance(size, bool) or not isinstance(size, int) or size < 0:
                raise ValidationError(
                    f"{field_prefix}.size", "must be a non-negative integer"
                )
            kwargs["size"] = size

        user_id = data.get("userId")
        if user_id is not None:
            kwargs["user_id"] = str(user_id)

        metadata = data.get("metadata")
        if metadata is not None:
            if not isinstance(metadata, dict):
                raise ValidationError(f"{field_prefix}.metadata", "must be an object")
            kwargs["metadata"] = copy.deepcopy(metadata)

        for attr in ("created_at", "updated_at"):
            wire = _WIRE_NAMES[attr]
            value = data.get(wire)
            if value is None:
                continue
            try:
                kwargs[attr] = normalize_timestamp(value)
            except (TypeError, ValueError):
                raise ValidationError(
                    f"{field_prefix}.{wire}", f"invalid timestamp: {value!r}"
                ) from None

        status = data.get("syncStatus")
        if status is not None:
            try:
                kwargs["sync_status"] = SyncStatus(status)
            except ValueError:
                raise ValidationError(
                    f"{field_prefix}.syncStatus", f"unknown status: {status!r}"
                ) from None

        is_deleted = data.get("isDeleted", False)
        if not isinstance(is_deleted, bool):
            raise ValidationError(f"{field_prefix}.isDeleted", "must be a boolean")
        kwargs["is_deleted"] = is_deleted

        if "createdAt" not in data or data.get("createdAt") is None:
            kwargs["created_at"] = kwargs["updated_at"]

        return cls(**kwargs)

    def to_dict(self, include_local: bool = True) -> Dict[str, Any]:
        """Convert to the wire representation.

        Args:
            include_local: If False, drop client-local fields (syncStatus)

        Returns:
            JSON-serializable dict
        """
        result: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "sync_status":
                if not include_local or value is None:
                    continue
                value = value.value
            elif f.name == "metadata":
                value = copy.deepcopy(value)
            result[_WIRE_NAMES[f.name]] = value
        return result

    def with_changes(self, **changes: Any) -> "FileRecord":
        """Get a copy of this record with some fields replaced."""
        return replace(self, **changes)

    def same_content(self, other: "FileRecord") -> bool:
        """Check equality ignoring the client-local sync status."""
        return self.to_dict(include_local=False) == other.to_dict(include_local=False)


@dataclass(frozen=True)
class Conflict:
    """Two divergent versions of the same record.

    Conflicts are transient: each one is resolved to a single winner before
    the sync round that produced it completes.
    """

    local: FileRecord
    cloud: FileRecord

    @property
    def record_id(self) -> str:
        return self.cloud.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local": self.local.to_dict(include_local=False),
            "cloud": self.cloud.to_dict(include_local=False),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Conflict":
        if not isinstance(data, dict):
            raise ValidationError("conflict", "must be an object")
        return cls(
            local=FileRecord.from_dict(data.get("local"), "conflict.local"),
            cloud=FileRecord.from_dict(data.get("cloud"), "conflict.cloud"),
        )
