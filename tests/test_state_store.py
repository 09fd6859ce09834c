"""Tests for applied state persistence."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from helpers import BUCKET, applied

from stack_controller.state_store import (
    STATE_FORMAT_VERSION,
    AppliedState,
    FileStateStore,
    InMemoryStateStore,
    StateStoreError,
)


class TestAppliedState:
    """Tests for AppliedState serialization."""

    def test_round_trip(self) -> None:
        """Test to_dict and from_dict preserve every field."""
        state = applied(
            "A",
            BUCKET,
            properties={"Size": 10, "Tags": [{"Key": "a"}]},
            attributes={"Arn": "arn:a"},
            depends_on=["B"],
            pending_deletion=["a-0"],
        )
        restored = AppliedState.from_dict("A", json.loads(json.dumps(state.to_dict())))

        assert restored == state

    def test_missing_optional_fields(self) -> None:
        """Test older entries without optional fields still load."""
        restored = AppliedState.from_dict("A", {"type": BUCKET, "remote_id": "a-1"})
        assert restored.properties == {}
        assert restored.pending_deletion == []


class TestInMemoryStateStore:
    """Tests for the in-memory store."""

    def test_put_get_delete(self) -> None:
        """Test basic entry lifecycle."""
        store = InMemoryStateStore()
        store.put(applied("A", BUCKET))

        assert store.get("A").remote_id == "a-1"
        assert set(store.list_all()) == {"A"}

        store.delete("A")
        store.delete("A")  # Deleting twice is fine
        assert store.get("A") is None

    def test_returns_copies(self) -> None:
        """Test callers cannot mutate stored entries."""
        store = InMemoryStateStore()
        store.put(applied("A", BUCKET, properties={"Size": 1}))

        entry = store.get("A")
        entry.properties["Size"] = 2

        assert store.get("A").properties == {"Size": 1}

    def test_exports_per_owner(self) -> None:
        """Test each owner's exports are replaced as a whole."""
        store = InMemoryStateStore()
        store.put_exports("cluster", {"cluster-VpcId": "vpc-1", "cluster-Old": "x"})
        store.put_exports("nexus", {"nexus-Dns": "dns"})
        store.put_exports("cluster", {"cluster-VpcId": "vpc-2"})

        assert store.get_exports() == {"cluster-VpcId": "vpc-2", "nexus-Dns": "dns"}

    def test_stacks_are_isolated(self) -> None:
        """Test bound views share storage but only see their own stack's entries."""
        store = InMemoryStateStore(stack_name="cluster")
        app = store.bind("app")
        store.put(applied("Logs", BUCKET, remote_id="cluster-logs"))
        app.put(applied("Logs", BUCKET, remote_id="app-logs"))

        assert store.get("Logs").remote_id == "cluster-logs"
        assert app.get("Logs").remote_id == "app-logs"
        assert app.stack_name == "app"
        assert store.list_stacks() == ["app", "cluster"]

        app.delete("Logs")
        assert app.list_all() == {}
        assert store.list_stacks() == ["cluster"]
        assert set(store.list_all()) == {"Logs"}

    def test_exports_are_shared_across_stacks(self) -> None:
        """Test every bound view sees the merged exports and their owners."""
        store = InMemoryStateStore(stack_name="cluster")
        store.put_exports("cluster", {"cluster-VpcId": "vpc-1"})
        app = store.bind("app")
        app.put_exports("app", {"app-Dns": "dns"})

        assert app.get_exports() == {"cluster-VpcId": "vpc-1", "app-Dns": "dns"}
        assert store.export_owners() == {"cluster-VpcId": "cluster", "app-Dns": "app"}

        app.put_exports("app", {})
        assert store.list_exports() == {"cluster": {"cluster-VpcId": "vpc-1"}}

    def test_lock_is_reentrant(self) -> None:
        """Test a holder of the key lock can still write the key."""
        store = InMemoryStateStore()
        with store.lock("A"):
            store.put(applied("A", BUCKET))
            store.delete("A")
        assert store.get("A") is None


class TestFileStateStore:
    """Tests for the JSON file store."""

    def test_missing_file_starts_empty(self, tmp_path: Path) -> None:
        """Test a fresh path has no entries and is not created until written."""
        path = tmp_path / "state.json"
        store = FileStateStore(path)

        assert store.list_all() == {}
        assert not path.exists()

    def test_writes_are_durable(self, tmp_path: Path) -> None:
        """Test a new store instance sees what the last one wrote."""
        path = tmp_path / "nested" / "state.json"
        store = FileStateStore(path)
        store.put(applied("A", BUCKET, attributes={"Arn": "arn:a"}))
        store.put(applied("B", BUCKET, depends_on=["A"]))
        store.delete("B")
        store.put_exports("nexus", {"nexus-Arn": "arn:a"})

        reopened = FileStateStore(path)
        assert set(reopened.list_all()) == {"A"}
        assert reopened.get("A").attributes == {"Arn": "arn:a"}
        assert reopened.get_exports() == {"nexus-Arn": "arn:a"}

        document = json.loads(path.read_text())
        assert document["version"] == STATE_FORMAT_VERSION

    def test_stacks_persist_separately(self, tmp_path: Path) -> None:
        """Test entries of each stack survive reopening under their stack."""
        path = tmp_path / "state.json"
        FileStateStore(path, stack_name="cluster").put(applied("Logs", BUCKET, remote_id="c-1"))
        FileStateStore(path, stack_name="app").put(applied("Logs", BUCKET, remote_id="a-1"))

        reopened = FileStateStore(path)
        assert reopened.list_all() == {}
        assert reopened.list_stacks() == ["app", "cluster"]
        assert reopened.bind("cluster").get("Logs").remote_id == "c-1"
        assert reopened.bind("app").get("Logs").remote_id == "a-1"

        document = json.loads(path.read_text())
        assert sorted(document["resources"]) == ["app", "cluster"]

    def test_no_temporary_files_left(self, tmp_path: Path) -> None:
        """Test atomic writes clean up after themselves."""
        store = FileStateStore(tmp_path / "state.json")
        for i in range(3):
            store.put(applied(f"R{i}", BUCKET))

        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_invalid_json(self, tmp_path: Path) -> None:
        """Test a corrupt file is reported, not overwritten."""
        path = tmp_path / "state.json"
        path.write_text("{not json")

        with pytest.raises(StateStoreError, match="Invalid JSON"):
            FileStateStore(path)
        assert path.read_text() == "{not json"

    def test_unsupported_version(self, tmp_path: Path) -> None:
        """Test documents from another format version are rejected."""
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": 99, "resources": {}}))

        with pytest.raises(StateStoreError, match="Unsupported state file format"):
            FileStateStore(path)
