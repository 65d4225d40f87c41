"""Input validation for plrsync.

All validators raise ValidationError with descriptive messages. A failed
validation rejects the whole request before any record is compared or
written.
"""

from __future__ import annotations

from typing import Any, List, Optional, Set

from .errors import ValidationError
from .models import FileRecord
from .timestamp_utils import normalize_timestamp

__all__ = [
    "ValidationError",
    "validate_record_batch",
    "validate_timestamp",
    "validate_positive_int",
    "MAX_BATCH_SIZE",
]

MAX_BATCH_SIZE = 5000


def validate_record_batch(data: Any) -> List[FileRecord]:
    """Validate and parse a batch of wire records.

    Args:
        data: Decoded JSON value that should be a list of record objects

    Returns:
        Parsed records, in request order

    Raises:
        ValidationError: If the batch is not a list, is too large, contains
            an invalid record, or repeats an id
    """
    if not isinstance(data, list):
        raise ValidationError(
            "files", f"must be a list of records, got {type(data).__name__}"
        )
    if len(data) > MAX_BATCH_SIZE:
        raise ValidationError(
            "files", f"batch of {len(data)} exceeds maximum of {MAX_BATCH_SIZE}"
        )

    records: List[FileRecord] = []
    seen: Set[str] = set()
    for i, item in enumerate(data):
        record = FileRecord.from_dict(item, f"files[{i}]")
        if record.id in seen:
            raise ValidationError(f"files[{i}].id", f"duplicate id {record.id!r} in batch")
        seen.add(record.id)
        records.append(record)
    return records


def validate_timestamp(value: Optional[str], field_name: str = "timestamp") -> str:
    """Validate a required timestamp and return its canonical form."""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(field_name, "is required")
    try:
        return normalize_timestamp(value)
    except (TypeError, ValueError):
        raise ValidationError(field_name, f"invalid timestamp: {value!r}") from None


def validate_positive_int(value: Any, field_name: str) -> int:
    """Validate a strictly positive integer (accepts numeric strings)."""
    if isinstance(value, bool):
        raise ValidationError(field_name, "must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(field_name, "must be a positive integer") from None
    if number <= 0:
        raise ValidationError(field_name, f"must be a positive integer, got {number}")
    return number
