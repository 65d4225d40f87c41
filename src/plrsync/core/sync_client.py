"""Sync client for plrsync.

This module provides the client side of the sync protocol:
- RemoteClient talks HTTP(S) to the sync server
- SyncCoordinator runs sync rounds against the local store
- AutoSync repeats rounds on a timer, preferably while the host is idle

A sync round pulls first, then pushes. Pulling first means the push sends
local records that were already reconciled with the latest cloud state,
instead of records that are about to be overwritten.

The cursor (the point up to which both sides are known to be reconciled)
only moves after a whole round succeeded. A failed or cancelled round
leaves it where it was, so the next round redoes the work.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .conflicts import ConflictResolver, ResolutionChoice
from .errors import (
    SyncCancelledError,
    SyncError,
    TransportError,
    ValidationError,
    error_from_response,
)
from .local_store import LocalStore
from .models import Conflict, FileRecord, SyncStatus
from .timestamp_utils import EPOCH, normalize_timestamp, now_timestamp

logger = logging.getLogger(__name__)

# Extra seconds AutoSync.stop waits beyond the request timeout
STOP_MARGIN_SECONDS = 5


class SyncState(Enum):
    """Coordinator state: idle -> syncing -> (synced | error) -> idle."""

    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


@dataclass
class SyncResult:
    """Result of a successful sync round."""

    pulled: int = 0  # Records added or replaced from the cloud
    pushed: int = 0  # Records accepted by the server
    conflicts: int = 0  # Conflicts resolved in either phase
    cursor: str = EPOCH


@dataclass
class PushResponse:
    """Server answer to a pushed batch."""

    conflicts: List[Conflict] = field(default_factory=list)
    files: List[FileRecord] = field(default_factory=list)
    server_time: Optional[str] = None


@dataclass
class ChangesResponse:
    """Server answer to a change feed query."""

    files: List[FileRecord] = field(default_factory=list)
    server_time: Optional[str] = None


class RemoteClient:
    """HTTP transport to a plrsync server."""

    def __init__(self, base_url: str, token: str, timeout: float = 30) -> None:
        """Initialize remote client.

        Args:
            base_url: Server URL, e.g. http://127.0.0.1:8384
            token: Bearer credential
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def push(self, records: List[FileRecord]) -> PushResponse:
        """Submit a batch of records.

        Raises:
            SyncError: Subclass matching the failure
        """
        data = self._request(
            "POST",
            "/sync",
            body={"files": [r.to_dict(include_local=False) for r in records]},
        )
        try:
            return PushResponse(
                conflicts=[Conflict.from_dict(c) for c in data.get("conflicts") or []],
                files=[FileRecord.from_dict(f) for f in data.get("files") or []],
                server_time=data.get("serverTime"),
            )
        except ValidationError as e:
            raise TransportError(f"Malformed push response: {e}") from e

    def get_changes(self, since: str) -> ChangesResponse:
        """Get records changed on the server after a timestamp.

        Raises:
            SyncError: Subclass matching the failure
        """
        data = self._request("GET", "/sync/changes", params={"sinceTimestamp": since})
        try:
            return ChangesResponse(
                files=[FileRecord.from_dict(f) for f in data.get("files") or []],
                server_time=data.get("serverTime"),
            )
        except ValidationError as e:
            raise TransportError(f"Malformed changes response: {e}") from e

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Make an HTTP(S) request and decode the JSON response.

        Args:
            method: HTTP method
            path: Path below the base URL
            body: JSON data to send
            params: Query parameters

        Returns:
            Decoded JSON object

        Raises:
            SyncError: Rebuilt from the server's error response, or
                TransportError if the server could not be reached
        """
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"

        headers = {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}
        payload = None
        if body is not None:
            payload = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        req = urllib.request.Request(url, data=payload, method=method, headers=headers)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            try:
                error_data = json.loads(e.read().decode("utf-8"))
            except (ValueError, UnicodeDecodeError):
                error_data = None
            error = error_from_response(
                e.code, error_data if isinstance(error_data, dict) else None
            )
            logger.error(f"Request to {url} failed: HTTP {e.code}: {error.message}")
            raise error from None
        except urllib.error.URLError as e:
            error_msg = f"Connection failed to {url}: {e.reason}"
            logger.error(error_msg)
            raise TransportError(error_msg) from e
        except (socket.timeout, TimeoutError) as e:
            error_msg = f"Request to {url} timed out after {self.timeout}s"
            logger.error(error_msg)
            raise TransportError(error_msg) from e

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {url}: {e}") from e
        if not isinstance(data, dict):
            raise TransportError(f"Unexpected response from {url}: not a JSON object")
        return data


StatusListener = Callable[[SyncState], None]


class SyncCoordinator:
    """Drives sync rounds between the local store and the server.

    Only one round runs at a time; a trigger while a round is in progress
    is ignored. The single status listener sees every state transition,
    which is the coordinator's only progress signal.
    """

    def __init__(
        self,
        local_store: LocalStore,
        remote: RemoteClient,
        resolver: Optional[ConflictResolver] = None,
        status_listener: Optional[StatusListener] = None,
        cursor: str = EPOCH,
    ) -> None:
        """Initialize sync coordinator.

        Args:
            local_store: Device-side record storage
            remote: Transport to the sync server
            resolver: Conflict policy (last-write-wins if None)
            status_listener: Called with each new SyncState
            cursor: Last reconciled point, from a previous session
        """
        self.local_store = local_store
        self.remote = remote
        self.resolver = resolver or ConflictResolver()
        self.status_listener = status_listener
        self._cursor = normalize_timestamp(cursor)
        self._state = SyncState.IDLE
        self._round_lock = threading.Lock()
        self._cancel_event = threading.Event()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def cursor(self) -> str:
        return self._cursor

    @property
    def is_syncing(self) -> bool:
        return self._round_lock.locked()

    def _set_state(self, state: SyncState) -> None:
        self._state = state
        if self.status_listener is not None:
            try:
                self.status_listener(state)
            except Exception as e:
                logger.error(f"Sync status listener failed on {state.value}: {e}")

    def cancel(self) -> None:
        """Abort the running round at its next network call.

        A request already in flight is not interrupted. It runs until it
        completes or hits the remote's timeout, and the round stops after it.
        """
        if self.is_syncing:
            logger.info("Cancelling sync round")
            self._cancel_event.set()

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise SyncCancelledError("Sync round cancelled")

    def _apply_resolution(self, local: FileRecord, cloud: FileRecord) -> ResolutionChoice:
        """Resolve a conflict and store the winner locally.

        A cloud win replaces the local copy. A local win keeps the local
        content but lifts its version to at least the cloud's, and leaves it
        dirty so the next push is accepted instead of conflicting again.
        """
        choice = self.resolver.resolve_choice(local, cloud)
        if choice is ResolutionChoice.CLOUD:
            self.local_store.put_local_file(
                cloud.with_changes(sync_status=SyncStatus.SYNCED), dirty=False
            )
        else:
            updated_at = max(local.updated_at, cloud.updated_at)
            self.local_store.put_local_file(
                local.with_changes(updated_at=updated_at, sync_status=SyncStatus.CONFLICT),
                dirty=True,
            )
        return choice

    def pull(self) -> Tuple[int, int, Optional[str]]:
        """Fetch cloud changes since the cursor and apply them locally.

        Unknown records are added. A record that also exists locally with
        different content is a conflict and goes through the resolver.

        Returns:
            Tuple of (records applied, conflicts resolved, server time)
        """
        self._check_cancelled()
        response = self.remote.get_changes(self._cursor)
        self._check_cancelled()

        applied = 0
        conflicts = 0
        with self.local_store.batch():
            for cloud_file in response.files:
                local_file = self.local_store.get_local_file(cloud_file.id)
                if local_file is None:
                    self.local_store.add_local_file(cloud_file)
                    applied += 1
                elif local_file.same_content(cloud_file):
                    self.local_store.put_local_file(
                        cloud_file.with_changes(sync_status=SyncStatus.SYNCED), dirty=False
                    )
                else:
                    conflicts += 1
                    if self._apply_resolution(local_file, cloud_file) is ResolutionChoice.CLOUD:
                        applied += 1

        logger.info(
            f"Pulled {len(response.files)} changes since {self._cursor}: "
            f"{applied} applied, {conflicts} conflicts"
        )
        return applied, conflicts, response.server_time

    def push(self) -> Tuple[int, int]:
        """Send dirty local records and apply the server's verdict.

        Accepted records are replaced by the version the server stored (with
        its owner and timestamp). Rejected records come back as conflicts and
        go through the resolver.

        Returns:
            Tuple of (records accepted, conflicts resolved)
        """
        dirty = self.local_store.get_dirty_files()
        if not dirty:
            logger.debug("No local changes to push")
            return 0, 0

        sent = {r.id: r for r in dirty}
        self.local_store.set_sync_status(sent, SyncStatus.SYNCING)
        self._check_cancelled()
        response = self.remote.push(dirty)

        with self.local_store.batch():
            for stored in response.files:
                if not self._unchanged_since_sent(stored.id, sent):
                    continue
                self.local_store.put_local_file(
                    stored.with_changes(sync_status=SyncStatus.SYNCED), dirty=False
                )

            for conflict in response.conflicts:
                if not self._unchanged_since_sent(conflict.record_id, sent):
                    continue
                self._apply_resolution(
                    sent.get(conflict.record_id, conflict.local), conflict.cloud
                )

        logger.info(
            f"Pushed {len(dirty)} records: {len(response.files)} accepted, "
            f"{len(response.conflicts)} conflicts"
        )
        return len(response.files), len(response.conflicts)

    def _unchanged_since_sent(self, record_id: str, sent: Dict[str, FileRecord]) -> bool:
        # A record edited locally while the push was in flight keeps the edit
        current = self.local_store.get_local_file(record_id)
        original = sent.get(record_id)
        if current is None or original is None:
            return True
        if current.same_content(original):
            return True
        logger.info(f"Record {record_id} changed during push; keeping local edit")
        return False

    def sync(self) -> Optional[SyncResult]:
        """Run one full sync round: pull, then push.

        Returns:
            SyncResult on success, None if a round was already running

        Raises:
            SyncError: Or any other failure of either phase. The cursor is
                left unchanged and the state goes to ERROR before re-raising.
        """
        if not self._round_lock.acquire(blocking=False):
            logger.info("Sync already in progress; ignoring trigger")
            return None

        try:
            self._cancel_event.clear()
            self._set_state(SyncState.SYNCING)
            logger.info(f"Starting sync round from cursor {self._cursor}")
            try:
                pulled, pull_conflicts, server_time = self.pull()
                pushed, push_conflicts = self.push()
            except Exception as e:
                logger.error(f"Sync round failed: {e}")
                self._mark_failed()
                self._set_state(SyncState.ERROR)
                raise

            self._cursor = normalize_timestamp(server_time) if server_time else now_timestamp()
            result = SyncResult(
                pulled=pulled,
                pushed=pushed,
                conflicts=pull_conflicts + push_conflicts,
                cursor=self._cursor,
            )
            self._set_state(SyncState.SYNCED)
            logger.info(
                f"Sync complete: pulled={result.pulled}, pushed={result.pushed}, "
                f"conflicts={result.conflicts}, cursor={result.cursor}"
            )
            return result
        finally:
            self._cancel_event.clear()
            if self._state in (SyncState.SYNCED, SyncState.ERROR):
                self._set_state(SyncState.IDLE)
            self._round_lock.release()

    def _mark_failed(self) -> None:
        try:
            dirty_ids = [r.id for r in self.local_store.get_dirty_files()]
            self.local_store.set_sync_status(dirty_ids, SyncStatus.ERROR)
        except Exception as e:
            logger.error(f"Failed to mark local records as errored: {e}")


class AutoSync:
    """Runs sync rounds periodically on a background thread.

    Ticks are skipped while ``idle_check`` reports the host busy. Failed
    rounds are logged and left for the next tick; since the cursor only
    moves on success, missed or failed ticks lose nothing.
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        interval_minutes: float = 5,
        idle_check: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Initialize periodic sync.

        Args:
            coordinator: Coordinator whose sync() is called
            interval_minutes: Minutes between ticks (must be > 0)
            idle_check: Returns True when the host is idle; every tick runs if None
        """
        if interval_minutes <= 0:
            raise ValidationError("interval_minutes", "must be greater than 0")
        self.coordinator = coordinator
        self.interval_minutes = interval_minutes
        self.idle_check = idle_check
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start ticking. Restarts the timer if already running."""
        if self._thread is not None:
            self.stop()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,), name="plrsync-autosync", daemon=True
        )
        self._thread.start()
        logger.info(f"Auto sync started: every {self.interval_minutes} minutes")

    @property
    def stop_timeout(self) -> float:
        """Seconds stop() waits by default: longer than one request can take."""
        return getattr(self.coordinator.remote, "timeout", 0) + STOP_MARGIN_SECONDS

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop ticking, cancelling a round in progress.

        Args:
            timeout: Seconds to wait for the thread (stop_timeout if None)
        """
        if timeout is None:
            timeout = self.stop_timeout
        self._stop_event.set()
        self.coordinator.cancel()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Auto sync stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval_seconds):
            self.tick()

    def tick(self) -> Optional[SyncResult]:
        """Run one round if the host is idle.

        Returns:
            SyncResult, or None if skipped, already running, or failed
        """
        if self.idle_check is not None and not self.idle_check():
            logger.debug("Host busy; skipping auto sync tick")
            return None
        try:
            return self.coordinator.sync()
        except SyncError as e:
            logger.warning(f"Auto sync round failed ({e.code}): {e}")
        except Exception as e:
            logger.error(f"Auto sync round failed: {e}")
        return None
