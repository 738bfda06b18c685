"""Persistent state store.

The snapshot records what the reconciler last applied, keyed by resource
address. It is a single JSON document rewritten atomically (temp file in
the same directory, then ``os.replace``) after every per-node mutation, so
a crash leaves either the previous or the next snapshot on disk, never a
partial one.

A lock file next to the state (``<state>.lock``) serializes runs. It is
created with O_EXCL; a second run fails fast with ``LockHeldError`` or
waits up to a timeout. Mutations without holding the lock are refused.

FILE LAYOUT:
```json
{
  "version": 1,
  "serial": 7,
  "lineage": "5f0c...",
  "resources": {
    "azure_virtual_network.hub": {
      "address": "azure_virtual_network.hub",
      "type": "azure_virtual_network",
      "provider_id": "/subscriptions/.../virtualNetworks/vnet-hub",
      "attributes": {"name": "vnet-hub", "location": "westeurope"},
      "outputs": {},
      "dependencies": ["azure_resource_group.core"],
      "state": "created",
      "deposed": [],
      "updated_at": "2026-01-01T00:00:00+00:00"
    }
  }
}
```
Fields this version does not know are kept on rewrite.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import socket
import tempfile
import time
import uuid
from collections.abc import Iterator
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1

LOCK_POLL_INTERVAL_SECONDS = 0.5


class StateError(Exception):
    """Raised when the state file is unreadable or a mutation is not allowed."""

    pass


class LockHeldError(StateError):
    """Raised when another run holds the state lock."""

    def __init__(self, lock_path: Path, info: LockInfo | None) -> None:
        self.lock_path = lock_path
        self.info = info
        if info is not None:
            detail = f"held by {info.holder} (pid {info.pid}) since {info.created_at}"
        else:
            detail = "held by an unknown holder"
        super().__init__(f"State lock {lock_path} is {detail}")


class RecordState(str, Enum):
    """Persisted lifecycle state of a resource record."""

    CREATED = "created"
    TAINTED = "tainted"


def _now() -> str:
    return datetime.now(UTC).isoformat()


class ResourceRecord(BaseModel):
    """Last-applied state of one resource node."""

    model_config = {"extra": "allow"}

    address: str
    type: str
    provider_id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    state: RecordState = RecordState.CREATED
    # Provider ids of replaced objects still awaiting deletion
    deposed: list[str] = Field(default_factory=list)
    updated_at: str = Field(default_factory=_now)

    @property
    def tainted(self) -> bool:
        return self.state == RecordState.TAINTED


class StateSnapshot(BaseModel):
    """Versioned record of everything the reconciler believes exists."""

    model_config = {"extra": "allow"}

    version: int = STATE_FORMAT_VERSION
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: dict[str, ResourceRecord] = Field(default_factory=dict)

    def get(self, address: object) -> ResourceRecord | None:
        return self.resources.get(str(address))

    def __contains__(self, address: object) -> bool:
        return str(address) in self.resources

    def __len__(self) -> int:
        return len(self.resources)

    @property
    def addresses(self) -> list[str]:
        return sorted(self.resources)


class LockInfo(BaseModel):
    """Content of the lock file."""

    model_config = {"extra": "ignore"}

    id: str
    holder: str
    pid: int
    created_at: str
    operation: str = ""


class StateStore:
    """Owner of the state snapshot.

    Only atomic per-node operations mutate the snapshot; ``read`` always
    returns a deep copy.
    """

    def __init__(self, path: Path, holder: str | None = None) -> None:
        """Initialize the store.

        Args:
            path: Location of the JSON state file.
            holder: Name recorded in the lock file (default: user@host).
        """
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")
        self._holder = holder or f"{os.environ.get('USER', 'converge')}@{socket.gethostname()}"
        self._snapshot: StateSnapshot | None = None
        self._lock_id: str | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    @property
    def is_locked(self) -> bool:
        """True when this store instance holds the lock."""
        return self._lock_id is not None

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    def _load(self) -> StateSnapshot:
        if not self._path.exists():
            return StateSnapshot()

        try:
            file_size = self._path.stat().st_size
            if file_size > MAX_STATE_FILE_SIZE_BYTES:
                raise StateError(
                    f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                    f"{self._path}"
                )
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateError(f"Failed to read state file {self._path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateError(f"State file {self._path} is not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise StateError(f"State file {self._path} must contain a JSON object")

        version = raw.get("version", STATE_FORMAT_VERSION)
        if not isinstance(version, int) or version > STATE_FORMAT_VERSION:
            raise StateError(
                f"State file {self._path} has format version {version}; "
                f"this version of converge supports up to {STATE_FORMAT_VERSION}"
            )

        try:
            return StateSnapshot.model_validate(raw)
        except ValidationError as e:
            raise StateError(f"State file {self._path} failed validation: {e}") from e

    def _current(self) -> StateSnapshot:
        if self._snapshot is None:
            self._snapshot = self._load()
        return self._snapshot

    def read(self) -> StateSnapshot:
        """Return a deep copy of the full snapshot.

        Raises:
            StateError: If the state file cannot be read or is too new.
        """
        return self._current().model_copy(deep=True)

    def reload(self) -> StateSnapshot:
        """Drop the cached snapshot and read the file again."""
        self._snapshot = None
        return self.read()

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def _check_lock(self) -> None:
        if self._lock_id is None:
            raise StateError("State mutation attempted without holding the lock")
        info = self.lock_info()
        if info is None or info.id != self._lock_id:
            self._lock_id = None
            raise StateError(
                f"State lock {self._lock_path} was removed or taken over by another holder"
            )

    def _write(self, snapshot: StateSnapshot) -> None:
        snapshot.serial += 1
        payload = json.dumps(snapshot.model_dump(mode="json"), indent=2, sort_keys=True)

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            snapshot.serial -= 1
            raise StateError(f"Failed to write state file {self._path}: {e}") from e

    def upsert(self, record: ResourceRecord) -> None:
        """Insert or replace one record and persist the snapshot.

        Raises:
            StateError: Without the lock, or if the write fails.
        """
        self._check_lock()
        snapshot = self._current().model_copy(deep=True)
        stored = record.model_copy(deep=True)
        stored.updated_at = _now()
        snapshot.resources[record.address] = stored
        self._write(snapshot)
        self._snapshot = snapshot
        logger.debug(
            "State record written",
            extra={
                "address": record.address,
                "state": record.state.value,
                "serial": snapshot.serial,
            },
        )

    def delete(self, address: object) -> None:
        """Remove one record and persist the snapshot.

        Deleting an address that is not present is a no-op.

        Raises:
            StateError: Without the lock, or if the write fails.
        """
        self._check_lock()
        key = str(address)
        if key not in self._current().resources:
            return
        snapshot = self._current().model_copy(deep=True)
        del snapshot.resources[key]
        self._write(snapshot)
        self._snapshot = snapshot
        logger.debug("State record removed", extra={"address": key, "serial": snapshot.serial})

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    def lock_info(self) -> LockInfo | None:
        """Read the current lock file, if any."""
        try:
            raw = self._lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateError(f"Failed to read lock file {self._lock_path}: {e}") from e
        try:
            return LockInfo.model_validate_json(raw)
        except ValidationError:
            logger.warning("Lock file is unreadable", extra={"lock_path": str(self._lock_path)})
            return None

    def _try_create_lock(self, operation: str) -> bool:
        info = LockInfo(
            id=str(uuid.uuid4()),
            holder=self._holder,
            pid=os.getpid(),
            created_at=_now(),
            operation=operation,
        )
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            raise StateError(f"Failed to create lock file {self._lock_path}: {e}") from e
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(info.model_dump_json())
        self._lock_id = info.id
        return True

    def acquire_lock(self, timeout: float = 0, operation: str = "") -> None:
        """Acquire the exclusive state lock.

        Args:
            timeout: Seconds to wait for a held lock; 0 fails immediately.
            operation: Recorded in the lock file (e.g. "apply").

        Raises:
            LockHeldError: If the lock is still held after ``timeout``.
            StateError: If this instance already holds the lock.
        """
        if self._lock_id is not None:
            raise StateError("State lock is already held by this run")

        deadline = time.monotonic() + timeout
        while not self._try_create_lock(operation):
            if time.monotonic() >= deadline:
                raise self._lock_held_error()
            time.sleep(min(LOCK_POLL_INTERVAL_SECONDS, max(deadline - time.monotonic(), 0)))
        self._lock_acquired()

    async def acquire_lock_async(self, timeout: float = 0, operation: str = "") -> None:
        """Acquire the state lock without blocking the event loop.

        Waiting happens only between attempts, so a caller cancelled while
        waiting never ends up holding the lock.

        Raises:
            LockHeldError: If the lock is still held after ``timeout``.
            StateError: If this instance already holds the lock.
        """
        if self._lock_id is not None:
            raise StateError("State lock is already held by this run")

        deadline = time.monotonic() + timeout
        while not self._try_create_lock(operation):
            if time.monotonic() >= deadline:
                raise self._lock_held_error()
            await asyncio.sleep(
                min(LOCK_POLL_INTERVAL_SECONDS, max(deadline - time.monotonic(), 0))
            )
        self._lock_acquired()

    def _lock_held_error(self) -> LockHeldError:
        info = self.lock_info()
        logger.warning(
            "State lock held by another run",
            extra={
                "lock_path": str(self._lock_path),
                "holder": info.holder if info else None,
            },
        )
        return LockHeldError(self._lock_path, info)

    def _lock_acquired(self) -> None:
        # Pick up changes a previous holder wrote
        self._snapshot = None
        logger.debug("State lock acquired", extra={"lock_path": str(self._lock_path)})

    def release_lock(self) -> None:
        """Release the lock if this instance holds it."""
        if self._lock_id is None:
            return
        info = self.lock_info()
        if info is not None and info.id == self._lock_id:
            with contextlib.suppress(FileNotFoundError):
                self._lock_path.unlink()
        self._lock_id = None
        logger.debug("State lock released", extra={"lock_path": str(self._lock_path)})

    @contextlib.contextmanager
    def locked(self, timeout: float = 0, operation: str = "") -> Iterator[StateStore]:
        """Context manager holding the lock for the duration of a run."""
        self.acquire_lock(timeout=timeout, operation=operation)
        try:
            yield self
        finally:
            self.release_lock()

    def force_unlock(self) -> LockInfo | None:
        """Remove the lock file regardless of holder.

        Returns:
            The removed lock's info, or None if no lock existed.
        """
        info = self.lock_info()
        try:
            self._lock_path.unlink()
        except FileNotFoundError:
            return None
        logger.warning(
            "State lock forcibly removed",
            extra={"lock_path": str(self._lock_path), "holder": info.holder if info else None},
        )
        return info
