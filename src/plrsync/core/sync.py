"""Sync server implementation for plrsync.

This module is the Remote Authority side of the protocol. Clients push
batches of changed records and pull the records that changed since their
cursor.

Sync Protocol:
1. Push: POST /sync with a batch of records. Each record is compared to the
   stored version; stale records come back as conflicts, the rest are
   stamped with the owner and a fresh server timestamp and written in one
   atomic upsert.
2. Changes: GET /sync/changes?sinceTimestamp=... returns every record of the
   caller changed strictly after the timestamp, oldest first.

Every request is authenticated, then rate limited per principal.
"""

from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from flask import Blueprint, Flask, g, jsonify, request

from .auth import Authenticator
from .errors import SyncError
from .models import Conflict, FileRecord
from .rate_limit import RateLimiter
from .storage import RecordStore
from .timestamp_utils import MonotonicClock, now_timestamp
from .validation import ValidationError, validate_record_batch, validate_timestamp

logger = logging.getLogger(__name__)

# Query parameter names accepted by GET /sync/changes, preferred first
SINCE_PARAMS = ("sinceTimestamp", "lastSyncTime")


@dataclass
class SyncOutcome:
    """Result of applying one pushed batch."""

    conflicts: List[Conflict] = field(default_factory=list)
    applied: List[FileRecord] = field(default_factory=list)


def apply_sync_batch(
    store: RecordStore,
    owner_id: str,
    records: List[FileRecord],
    clock: MonotonicClock,
) -> SyncOutcome:
    """Apply a batch of pushed records for one owner.

    A record whose stored version is strictly newer is not applied and is
    reported as a conflict (pushed record, stored record). All other records
    are stamped with the owner and a server timestamp and written in a single
    upsert, so either all of them land or none does.

    Args:
        store: Authoritative record store
        owner_id: Authenticated principal owning the batch
        records: Validated records, ids unique within the batch
        clock: Source of server-assigned version timestamps

    Returns:
        SyncOutcome with conflicts and the records as written

    Raises:
        ValidationError: If a record id belongs to another owner
        StorageError: If the lookup or the upsert fails
    """
    existing_by_id = store.get_records(r.id for r in records)

    conflicts: List[Conflict] = []
    staged: List[FileRecord] = []
    for record in records:
        existing = existing_by_id.get(record.id)
        if existing is not None:
            if existing.user_id != owner_id:
                raise ValidationError("id", f"record {record.id} belongs to another owner")
            # Canonical timestamps sort like the times they encode
            if existing.updated_at > record.updated_at:
                conflicts.append(Conflict(local=record, cloud=existing))
                continue
        staged.append(record)

    applied = [
        record.with_changes(user_id=owner_id, updated_at=clock.now(), sync_status=None)
        for record in staged
    ]
    store.upsert_records(applied)

    return SyncOutcome(conflicts=conflicts, applied=applied)


def get_changes_since(
    store: RecordStore, owner_id: str, since: Optional[str]
) -> List[FileRecord]:
    """Get an owner's records changed strictly after a timestamp.

    Args:
        store: Authoritative record store
        owner_id: Authenticated principal
        since: ISO timestamp (required; exclusive lower bound)

    Returns:
        Records ordered by updatedAt ascending, tombstones included

    Raises:
        ValidationError: If since is missing or unparseable
    """
    since_ts = validate_timestamp(since, "sinceTimestamp")
    return store.get_changes_since(owner_id, since_ts)


def _error_response(error: SyncError) -> Tuple[Any, int]:
    response = jsonify(error.to_dict())
    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        response.headers["Retry-After"] = str(max(1, int(retry_after + 0.999)))
    return response, error.status


def create_sync_blueprint(
    store: RecordStore,
    authenticator: Authenticator,
    rate_limiter: RateLimiter,
    clock: Optional[MonotonicClock] = None,
) -> Blueprint:
    """Create Flask blueprint for sync endpoints.

    Args:
        store: Authoritative record store
        authenticator: Resolves bearer tokens to principal ids
        rate_limiter: Per-principal admission guard
        clock: Source of server timestamps (a new one if None)

    Returns:
        Flask Blueprint with sync routes
    """
    sync_bp = Blueprint("sync", __name__, url_prefix="/sync")
    clock = clock or MonotonicClock()

    # Stamping+writing and reading+reporting serverTime are serialized, so a
    # client cursor taken from serverTime never skips a later commit.
    feed_lock = threading.Lock()

    def sync_endpoint(func: Callable[..., Tuple[Any, int]]) -> Callable[..., Tuple[Any, int]]:
        """Authenticate, rate limit, and map sync errors to JSON responses."""
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Tuple[Any, int]:
            try:
                g.principal_id = authenticator.authenticate_header(
                    request.headers.get("Authorization")
                )
                rate_limiter.check(g.principal_id)
                return func(*args, **kwargs)
            except SyncError as e:
                if e.status >= 500 or e.code == "storage_error":
                    logger.error(f"{func.__name__} failed: {e}")
                else:
                    logger.warning(f"{func.__name__} rejected: {e}")
                return _error_response(e)
            except Exception as e:
                logger.error(f"Internal error in {func.__name__}: {e}")
                return jsonify({"error": str(e), "code": "internal_error"}), 400
        return wrapper

    @sync_bp.route("", methods=["POST"])
    @sync_endpoint
    def push() -> Tuple[Any, int]:
        """Apply a batch of records pushed by a client.

        Request body:
            {"files": [Record, ...]}  (a bare list is also accepted)

        Response:
            {
                "conflicts": [{"local": Record, "cloud": Record}, ...],
                "files": [Record as stored, ...],
                "serverTime": "..."
            }
        """
        data = request.get_json(silent=True)
        if data is None:
            raise ValidationError("body", "missing or invalid JSON request body")
        files = data.get("files") if isinstance(data, dict) else data
        records = validate_record_batch(files)

        with feed_lock:
            outcome = apply_sync_batch(store, g.principal_id, records, clock)

        logger.info(
            f"Sync from {g.principal_id}: {len(outcome.applied)} applied, "
            f"{len(outcome.conflicts)} conflicts"
        )
        return jsonify({
            "conflicts": [c.to_dict() for c in outcome.conflicts],
            "files": [r.to_dict(include_local=False) for r in outcome.applied],
            "serverTime": clock.now(),
        }), 200

    @sync_bp.route("/changes", methods=["GET"])
    @sync_endpoint
    def changes() -> Tuple[Any, int]:
        """Get the caller's records changed after a timestamp.

        Query params:
            sinceTimestamp: ISO timestamp, exclusive (required)

        Response:
            {"files": [Record, ...], "serverTime": "..."}
        """
        since = next(
            (request.args.get(name) for name in SINCE_PARAMS if request.args.get(name)),
            None,
        )

        with feed_lock:
            server_time = clock.now()
            files = get_changes_since(store, g.principal_id, since)

        logger.debug(f"Returning {len(files)} changes since {since} to {g.principal_id}")
        return jsonify({
            "files": [r.to_dict(include_local=False) for r in files],
            "serverTime": server_time,
        }), 200

    @sync_bp.route("/status", methods=["GET"])
    def status() -> Tuple[Any, int]:
        """Get sync server status. Needs no authentication."""
        return jsonify({"status": "ok", "serverTime": now_timestamp()}), 200

    return sync_bp


def create_sync_server(
    store: RecordStore,
    authenticator: Authenticator,
    rate_limiter: Optional[RateLimiter] = None,
) -> Flask:
    """Create a standalone Flask sync server.

    Args:
        store: Authoritative record store
        authenticator: Resolves bearer tokens to principal ids
        rate_limiter: Admission guard (default quota if None)

    Returns:
        Flask application instance
    """
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False

    sync_bp = create_sync_blueprint(store, authenticator, rate_limiter or RateLimiter())
    app.register_blueprint(sync_bp)

    return app
