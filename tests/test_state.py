"""Tests for the persistent state store."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from converge.state import (
    STATE_FORMAT_VERSION,
    LockHeldError,
    RecordState,
    ResourceRecord,
    StateError,
    StateStore,
)


def _record(address: str = "fake_bucket.logs", **fields: object) -> ResourceRecord:
    resource_type = address.split(".")[0]
    return ResourceRecord(address=address, type=resource_type, **fields)


class TestStateRead:
    """Tests for reading state."""

    def test_missing_file_is_empty(self, state_path: Path) -> None:
        """Test that a missing state file reads as empty."""
        snapshot = StateStore(state_path).read()

        assert len(snapshot) == 0
        assert snapshot.serial == 0
        assert snapshot.version == STATE_FORMAT_VERSION

    def test_read_returns_copy(self, store: StateStore) -> None:
        """Test that mutating a read snapshot does not touch the store."""
        store.upsert(_record(attributes={"name": "a"}))

        snapshot = store.read()
        snapshot.resources["fake_bucket.logs"].attributes["name"] = "changed"

        assert store.read().get("fake_bucket.logs").attributes["name"] == "a"

    def test_invalid_json(self, state_path: Path) -> None:
        """Test that a corrupt file raises StateError."""
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{not json")

        with pytest.raises(StateError, match="not valid JSON"):
            StateStore(state_path).read()

    def test_newer_version_refused(self, state_path: Path) -> None:
        """Test that a state written by a newer format is not read."""
        state_path.parent.mkdir(parents=True)
        state_path.write_text(json.dumps({"version": STATE_FORMAT_VERSION + 1}))

        with pytest.raises(StateError, match="format version"):
            StateStore(state_path).read()

    def test_unknown_fields_preserved(self, state_path: Path) -> None:
        """Test that fields this version does not know survive a rewrite."""
        state_path.parent.mkdir(parents=True)
        state_path.write_text(
            json.dumps(
                {
                    "version": 1,
                    "serial": 3,
                    "lineage": "abc",
                    "future": {"x": 1},
                    "resources": {
                        "fake_vm.web": {
                            "address": "fake_vm.web",
                            "type": "fake_vm",
                            "annotation": "kept",
                        }
                    },
                }
            )
        )

        store = StateStore(state_path)
        with store.locked():
            store.upsert(_record())

        data = json.loads(state_path.read_text())
        assert data["future"] == {"x": 1}
        assert data["lineage"] == "abc"
        assert data["serial"] == 4
        assert data["resources"]["fake_vm.web"]["annotation"] == "kept"


class TestStateMutation:
    """Tests for per-node mutations."""

    def test_upsert_persists(self, store: StateStore, state_path: Path) -> None:
        """Test that every upsert is written and bumps the serial."""
        store.upsert(_record(provider_id="/fake/1"))
        store.upsert(_record("fake_vm.web", provider_id="/fake/2"))

        fresh = StateStore(state_path).read()
        assert fresh.serial == 2
        assert fresh.addresses == ["fake_bucket.logs", "fake_vm.web"]
        assert fresh.get("fake_vm.web").provider_id == "/fake/2"

    def test_delete(self, store: StateStore, state_path: Path) -> None:
        """Test that delete removes the record and persists."""
        store.upsert(_record())
        store.delete("fake_bucket.logs")

        assert "fake_bucket.logs" not in StateStore(state_path).read()

    def test_delete_missing_is_noop(self, store: StateStore, state_path: Path) -> None:
        """Test that deleting an unknown address writes nothing."""
        store.delete("fake_bucket.none")

        assert not state_path.exists()

    def test_mutation_without_lock(self, state_path: Path) -> None:
        """Test that mutations are refused without the lock."""
        store = StateStore(state_path)

        with pytest.raises(StateError, match="without holding the lock"):
            store.upsert(_record())
        with pytest.raises(StateError):
            store.delete("fake_bucket.logs")
        assert not state_path.exists()

    def test_lock_taken_over(self, store: StateStore) -> None:
        """Test that a forced unlock invalidates the previous holder."""
        StateStore(store.path).force_unlock()

        with pytest.raises(StateError, match="removed or taken over"):
            store.upsert(_record())
        assert not store.is_locked

    def test_failed_write_keeps_previous_file(
        self, store: StateStore, state_path: Path
    ) -> None:
        """Test that a failed rewrite leaves the old snapshot in place."""
        store.upsert(_record(provider_id="/fake/1"))
        before = state_path.read_text()

        with patch("converge.state.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StateError, match="disk full"):
                store.upsert(_record(provider_id="/fake/2"))

        assert state_path.read_text() == before
        assert store.read().get("fake_bucket.logs").provider_id == "/fake/1"
        assert store.read().serial == 1
        assert [p.name for p in state_path.parent.iterdir() if p.suffix == ".tmp"] == []

    def test_record_state(self, store: StateStore) -> None:
        """Test that tainted records round-trip through the file."""
        store.upsert(_record(state=RecordState.TAINTED, deposed=["/fake/old"]))

        record = store.reload().get("fake_bucket.logs")

        assert record.tainted
        assert record.deposed == ["/fake/old"]


class TestStateLock:
    """Tests for state locking."""

    def test_second_holder_fails_fast(self, store: StateStore, state_path: Path) -> None:
        """Test that a concurrent run gets LockHeldError without changes."""
        store.upsert(_record())
        before = state_path.read_text()
        other = StateStore(state_path, holder="other")

        with pytest.raises(LockHeldError) as exc_info:
            other.acquire_lock(operation="apply")

        assert exc_info.value.info.holder == "pytest"
        assert exc_info.value.info.operation == "test"
        assert "pytest" in str(exc_info.value)
        assert state_path.read_text() == before
        assert not other.is_locked

    def test_lock_timeout(self, store: StateStore) -> None:
        """Test that waiting for a held lock eventually gives up."""
        other = StateStore(store.path, holder="other")

        with patch("converge.state.LOCK_POLL_INTERVAL_SECONDS", 0.01):
            with pytest.raises(LockHeldError):
                other.acquire_lock(timeout=0.05)

    def test_release_and_reacquire(self, state_path: Path) -> None:
        """Test the lock life cycle."""
        first = StateStore(state_path, holder="first")
        second = StateStore(state_path, holder="second")

        with first.locked(operation="apply"):
            assert first.is_locked
            assert first.lock_path.exists()

        assert not first.lock_path.exists()
        second.acquire_lock()
        assert second.lock_info().holder == "second"
        second.release_lock()

    @pytest.mark.asyncio
    async def test_async_acquire_waits_for_release(self, store: StateStore) -> None:
        """Test that an async waiter takes the lock once it is released."""
        waiter = StateStore(store.path, holder="waiter")

        with patch("converge.state.LOCK_POLL_INTERVAL_SECONDS", 0.01):
            task = asyncio.create_task(waiter.acquire_lock_async(timeout=5, operation="apply"))
            await asyncio.sleep(0.05)
            assert not task.done()

            store.release_lock()
            await task

        assert waiter.is_locked
        assert waiter.lock_info().holder == "waiter"
        waiter.release_lock()

    @pytest.mark.asyncio
    async def test_async_acquire_timeout(self, store: StateStore) -> None:
        """Test that an async waiter gives up after the timeout."""
        waiter = StateStore(store.path, holder="waiter")

        with patch("converge.state.LOCK_POLL_INTERVAL_SECONDS", 0.01):
            with pytest.raises(LockHeldError):
                await waiter.acquire_lock_async(timeout=0.05)

        assert not waiter.is_locked

    @pytest.mark.asyncio
    async def test_cancelled_waiter_never_takes_lock(self, store: StateStore) -> None:
        """Test that cancelling an async waiter leaves no lock behind."""
        waiter = StateStore(store.path, holder="waiter")

        with patch("converge.state.LOCK_POLL_INTERVAL_SECONDS", 0.01):
            task = asyncio.create_task(waiter.acquire_lock_async(timeout=5))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            store.release_lock()
            await asyncio.sleep(0.05)

        assert not waiter.is_locked
        assert not store.lock_path.exists()

    def test_acquire_twice(self, store: StateStore) -> None:
        """Test that a holder cannot acquire its own lock again."""
        with pytest.raises(StateError, match="already held"):
            store.acquire_lock()

    def test_release_does_not_remove_foreign_lock(self, store: StateStore) -> None:
        """Test that a stale holder does not delete a newer lock."""
        store.force_unlock()
        newcomer = StateStore(store.path, holder="newcomer")
        newcomer.acquire_lock()

        store.release_lock()

        assert newcomer.lock_info().holder == "newcomer"
        newcomer.release_lock()

    def test_force_unlock(self, store: StateStore) -> None:
        """Test force_unlock returns the removed lock's info."""
        info = StateStore(store.path).force_unlock()

        assert info.holder == "pytest"
        assert not store.lock_path.exists()
        assert StateStore(store.path).force_unlock() is None

    def test_acquire_picks_up_new_writes(self, state_path: Path) -> None:
        """Test that acquiring the lock drops a stale cached snapshot."""
        reader = StateStore(state_path, holder="reader")
        assert len(reader.read()) == 0

        writer = StateStore(state_path, holder="writer")
        with writer.locked():
            writer.upsert(_record())

        with reader.locked():
            assert "fake_bucket.logs" in reader.read()

    def test_lock_file_content(self, store: StateStore) -> None:
        """Test the recorded lock metadata."""
        info = store.lock_info()

        assert info.pid == os.getpid()
        assert info.holder == "pytest"
