"""End-to-end sync tests against a live server process.

Devices run real sync rounds over HTTP: pull, push, conflicts, failures,
and the server's authentication and rate limiting.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import requests

from plrsync.core.errors import AuthError, RateLimitedError, TransportError, ValidationError
from plrsync.core.models import SyncStatus
from plrsync.core.sync_client import RemoteClient, SyncState
from plrsync.core.timestamp_utils import EPOCH

from tests.helpers import OWNER_A, TOKEN_A, TOKEN_B, make_record, ts
from tests.sync.conftest import Device, ServerNode, create_device


@pytest.mark.sync
class TestTwoDeviceSync:
    """Test two devices of one owner converging through the server."""

    def test_new_file_reaches_other_device(self, laptop: Device, phone: Device) -> None:
        created = laptop.store.create_file(
            "Marketing Guide.pdf", path="/plr/guide.pdf", size=4096,
            metadata={"license": "PLR", "tags": ["marketing"]},
        )

        pushed = laptop.sync()
        pulled = phone.sync()

        assert pushed.pushed == 1
        assert pulled.pulled == 1
        copy = phone.store.get_local_file(created.id)
        assert copy.name == "Marketing Guide.pdf"
        assert copy.metadata == {"license": "PLR", "tags": ["marketing"]}
        assert copy.user_id == OWNER_A
        assert copy.same_content(laptop.store.get_local_file(created.id))

    def test_edits_flow_both_ways(self, laptop: Device, phone: Device) -> None:
        created = laptop.store.create_file("draft.pdf")
        laptop.sync()
        phone.sync()

        phone.store.update_file(created.id, name="final.pdf")
        phone.sync()
        laptop.sync()

        assert laptop.store.get_local_file(created.id).name == "final.pdf"
        assert laptop.store.get_dirty_files() == []
        assert phone.store.get_dirty_files() == []

    def test_deletion_propagates(self, laptop: Device, phone: Device) -> None:
        created = laptop.store.create_file("obsolete.pdf")
        laptop.sync()
        phone.sync()

        phone.store.delete_file(created.id)
        phone.sync()
        laptop.sync()

        assert laptop.store.get_local_file(created.id).is_deleted is True

    def test_concurrent_edits_converge(self, laptop: Device, phone: Device) -> None:
        created = laptop.store.create_file("shared.pdf")
        laptop.sync()
        phone.sync()

        laptop.store.update_file(created.id, name="laptop-edit.pdf")
        phone.store.update_file(created.id, name="phone-edit.pdf")
        laptop.sync()
        phone.sync()
        laptop.sync()

        laptop_copy = laptop.store.get_local_file(created.id)
        phone_copy = phone.store.get_local_file(created.id)
        assert phone_copy.name in ("laptop-edit.pdf", "phone-edit.pdf")
        assert laptop_copy.same_content(phone_copy)
        assert phone.store.get_dirty_files() == []

    def test_state_transitions(self, laptop: Device) -> None:
        laptop.sync()
        assert laptop.states == [SyncState.SYNCING, SyncState.SYNCED, SyncState.IDLE]

    def test_server_keeps_records(self, laptop: Device, running_server: ServerNode) -> None:
        created = laptop.store.create_file("kept.pdf")
        laptop.sync()

        store = running_server.open_store()
        try:
            stored = store.get_record(created.id)
        finally:
            store.close()
        assert stored.user_id == OWNER_A
        assert stored.updated_at == laptop.store.get_local_file(created.id).updated_at


@pytest.mark.sync
class TestOwnerIsolation:
    """Test that principals only see their own records."""

    def test_other_owner_sees_nothing(
        self, laptop: Device, running_server: ServerNode, tmp_path: Path
    ) -> None:
        laptop.store.create_file("private.pdf")
        laptop.sync()

        stranger = create_device("stranger", running_server, TOKEN_B, tmp_path)
        result = stranger.sync()

        assert result.pulled == 0
        assert stranger.store.get_local_files() == []

    def test_foreign_id_rejected(self, laptop: Device, running_server: ServerNode) -> None:
        created = laptop.store.create_file("mine.pdf")
        laptop.sync()

        client = RemoteClient(running_server.url, TOKEN_B)
        with pytest.raises(ValidationError):
            client.push([make_record(created.id, ts(1), name="stolen.pdf")])


@pytest.mark.sync
class TestFailures:
    """Test rounds that cannot complete."""

    def test_bad_token(self, running_server: ServerNode, tmp_path: Path) -> None:
        device = create_device("intruder", running_server, "not-a-token", tmp_path)
        device.store.create_file("a.pdf")

        with pytest.raises(AuthError):
            device.sync()

        assert device.coordinator.cursor == EPOCH
        assert device.states == [SyncState.SYNCING, SyncState.ERROR, SyncState.IDLE]

    def test_server_down_keeps_cursor(
        self, running_server: ServerNode, tmp_path: Path
    ) -> None:
        device = create_device("laptop", running_server, TOKEN_A, tmp_path)
        device.sync()
        cursor = device.coordinator.cursor
        created = device.store.create_file("offline.pdf")

        running_server.stop_server()
        with pytest.raises(TransportError):
            device.sync()

        assert device.coordinator.cursor == cursor
        assert device.store.get_local_file(created.id).sync_status is SyncStatus.ERROR
        assert device.store.is_dirty(created.id)

    def test_rate_limited(self, limited_server: ServerNode, tmp_path: Path) -> None:
        client = RemoteClient(limited_server.url, TOKEN_A)
        for _ in range(3):
            client.get_changes(EPOCH)

        with pytest.raises(RateLimitedError) as exc_info:
            client.get_changes(EPOCH)
        assert exc_info.value.retry_after is not None
        assert exc_info.value.retry_after > 0

        # Another principal has its own quota
        RemoteClient(limited_server.url, TOKEN_B).get_changes(EPOCH)


@pytest.mark.sync
class TestRawProtocol:
    """Test the HTTP surface directly."""

    def test_status(self, running_server: ServerNode) -> None:
        response = requests.get(f"{running_server.url}/sync/status", timeout=5)
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_missing_since(self, running_server: ServerNode) -> None:
        response = requests.get(
            f"{running_server.url}/sync/changes",
            headers={"Authorization": f"Bearer {TOKEN_A}"},
            timeout=5,
        )
        assert response.status_code == 400
        assert response.json()["field"] == "sinceTimestamp"

    def test_unauthenticated(self, running_server: ServerNode) -> None:
        response = requests.post(
            f"{running_server.url}/sync", json={"files": []}, timeout=5
        )
        assert response.status_code == 401

    def test_push_and_pull(self, running_server: ServerNode) -> None:
        headers = {"Authorization": f"Bearer {TOKEN_A}"}
        record = make_record("raw-1", ts(1)).to_dict(include_local=False)

        pushed = requests.post(
            f"{running_server.url}/sync", json={"files": [record]}, headers=headers, timeout=5
        ).json()
        changes = requests.get(
            f"{running_server.url}/sync/changes",
            params={"sinceTimestamp": ts(0)},
            headers=headers,
            timeout=5,
        ).json()

        assert pushed["conflicts"] == []
        assert [f["id"] for f in changes["files"]] == ["raw-1"]
        assert changes["files"][0]["updatedAt"] == pushed["files"][0]["updatedAt"]
