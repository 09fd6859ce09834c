"""Persistence of last-applied resource state and exported values.

The state store is the only shared mutable resource across concurrently
running actions. Mutations to a key are serialized with a per-key lock, and a
``put`` returns only once the new entry is durable, so the next plan (and any
dependent action) observes it.

Several stacks can share one store. Resource entries are owned by a stack: a
store instance is bound to one stack name and its get/put/delete/list_all only
see that stack's entries. ``bind`` returns a view of the same storage for
another stack. Exports are published per stack and read merged across all of
them, so one stack can import what another exported.

The file store keeps one JSON document:

```json
{
  "version": 2,
  "resources": {"nexus": {"LoadBalancer": {"type": "...", "remote_id": "...", ...}}},
  "exports": {"nexus": {"nexus-LoadBalancerDNSName": "internal-nexus-123.elb.example"}}
}
```
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import MAX_STATE_FILE_SIZE_BYTES
from .errors import StackError

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 2

# Stack a store is bound to when none is given
DEFAULT_STACK_NAME = "default"


class StateStoreError(StackError):
    """Raised when the state document cannot be read or written."""

    pass


@dataclass
class AppliedState:
    """Last successfully applied state of one resource.

    Attributes:
        name: Logical name.
        type: Resource type tag.
        remote_id: Identifier returned by the remote store.
        properties: Resolved property snapshot that was applied.
        attributes: Remote attributes readable through GetAtt.
        depends_on: Resources this one depended on when applied.
        pending_deletion: Remote identifiers of replaced instances that still
            have to be deleted.
        updated_at: Time of the last successful apply.
    """

    name: str
    type: str
    remote_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    pending_deletion: list[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "type": self.type,
            "remote_id": self.remote_id,
            "properties": copy.deepcopy(self.properties),
            "attributes": copy.deepcopy(self.attributes),
            "depends_on": list(self.depends_on),
            "pending_deletion": list(self.pending_deletion),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> AppliedState:
        """Create from dictionary."""
        return cls(
            name=name,
            type=data["type"],
            remote_id=data["remote_id"],
            properties=copy.deepcopy(data.get("properties", {})),
            attributes=copy.deepcopy(data.get("attributes", {})),
            depends_on=list(data.get("depends_on", [])),
            pending_deletion=list(data.get("pending_deletion", [])),
            updated_at=datetime.fromisoformat(data["updated_at"])
            if "updated_at" in data
            else datetime.now(UTC),
        )



class StateStore(ABC):
    """Storage of AppliedState entries and exported values.

    Implementations must make ``put`` and ``delete`` durable before they
    return. Callers never receive shared references to stored data.
    """

    def __init__(self, stack_name: str = DEFAULT_STACK_NAME) -> None:
        self._stack = stack_name
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def stack_name(self) -> str:
        """Stack whose resource entries this store reads and writes."""
        return self._stack

    def bind(self, stack_name: str) -> StateStore:
        """Return a view of the same storage bound to ``stack_name``.

        Views share entries, exports and locks with this store.
        """
        view = copy.copy(self)
        view._stack = stack_name
        return view

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        """Serialize mutations to one key. Re-entrant, so callers may hold it
        across a read-modify-write that ends in put or delete.
        """
        with self._locks_guard:
            key_lock = self._locks.setdefault(f"{self._stack}/{name}", threading.RLock())
        with key_lock:
            yield

    @abstractmethod
    def get(self, name: str) -> AppliedState | None:
        """Return the entry for a logical name, or None."""

    @abstractmethod
    def put(self, state: AppliedState) -> None:
        """Overwrite the entry for ``state.name``."""

    @abstractmethod
    def delete(self, name: str) -> None:
        """Remove the entry for a logical name if present."""

    @abstractmethod
    def list_all(self) -> dict[str, AppliedState]:
        """Return all entries of the bound stack keyed by logical name."""

    @abstractmethod
    def list_stacks(self) -> list[str]:
        """Return the names of stacks that have resource entries."""

    @abstractmethod
    def list_exports(self) -> dict[str, dict[str, Any]]:
        """Return exported values grouped by the stack that published them."""

    @abstractmethod
    def put_exports(self, owner: str, exports: Mapping[str, Any]) -> None:
        """Replace the exports published by ``owner`` (a stack name)."""

    def get_exports(self) -> dict[str, Any]:
        """Return the exports of every stack merged into one mapping."""
        merged: dict[str, Any] = {}
        for values in self.list_exports().values():
            merged.update(values)
        return merged

    def export_owners(self) -> dict[str, str]:
        """Return the publishing stack of every export name."""
        return {
            export: owner
            for owner, values in self.list_exports().items()
            for export in values
        }


class InMemoryStateStore(StateStore):
    """Process-local state store, used for tests and dry runs."""

    def __init__(
        self,
        entries: Mapping[str, AppliedState] | None = None,
        stack_name: str = DEFAULT_STACK_NAME,
    ) -> None:
        super().__init__(stack_name)
        self._stacks: dict[str, dict[str, AppliedState]] = {}
        if entries:
            self._stacks[stack_name] = {
                name: copy.deepcopy(state) for name, state in entries.items()
            }
        self._exports: dict[str, dict[str, Any]] = {}

    def get(self, name: str) -> AppliedState | None:
        state = self._stacks.get(self._stack, {}).get(name)
        return copy.deepcopy(state) if state is not None else None

    def put(self, state: AppliedState) -> None:
        with self.lock(state.name):
            self._stacks.setdefault(self._stack, {})[state.name] = copy.deepcopy(state)

    def delete(self, name: str) -> None:
        with self.lock(name):
            entries = self._stacks.get(self._stack, {})
            entries.pop(name, None)
            if not entries:
                self._stacks.pop(self._stack, None)

    def list_all(self) -> dict[str, AppliedState]:
        entries = self._stacks.get(self._stack, {})
        return {name: copy.deepcopy(state) for name, state in entries.items()}

    def list_stacks(self) -> list[str]:
        return sorted(self._stacks)

    def list_exports(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._exports)

    def put_exports(self, owner: str, exports: Mapping[str, Any]) -> None:
        with self.lock(f"exports:{owner}"):
            if exports:
                self._exports[owner] = copy.deepcopy(dict(exports))
            else:
                self._exports.pop(owner, None)


class FileStateStore(StateStore):
    """JSON file state store with atomic, durable writes.

    Every mutation rewrites the document to a temporary file in the same
    directory, fsyncs it and renames it over the old file.
    """

    def __init__(self, path: Path, stack_name: str = DEFAULT_STACK_NAME) -> None:
        super().__init__(stack_name)
        self._path = path
        self._document_lock = threading.Lock()
        # Keyed by stack, then logical name
        self._resources: dict[str, dict[str, dict[str, Any]]] = {}
        self._exports: dict[str, dict[str, Any]] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            logger.debug("State file not found, starting empty", extra={"path": str(self._path)})
            return

        try:
            size = self._path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {self._path}: {e}") from e
        if size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                f"{self._path}"
            )

        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Invalid JSON in state file {self._path}: {e}") from e

        if not isinstance(document, dict) or document.get("version") != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"Unsupported state file format in {self._path} "
                f"(expected version {STATE_FORMAT_VERSION})"
            )
        self._resources = {
            stack: dict(entries) for stack, entries in document.get("resources", {}).items()
        }
        self._exports = dict(document.get("exports", {}))

    def _flush(self) -> None:
        """Write the document atomically. Caller holds the document lock."""
        document = {
            "version": STATE_FORMAT_VERSION,
            "resources": self._resources,
            "exports": self._exports,
        }
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, sort_keys=True, default=str)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

    def get(self, name: str) -> AppliedState | None:
        with self._document_lock:
            data = self._resources.get(self._stack, {}).get(name)
            return AppliedState.from_dict(name, data) if data is not None else None

    def put(self, state: AppliedState) -> None:
        with self.lock(state.name), self._document_lock:
            self._resources.setdefault(self._stack, {})[state.name] = state.to_dict()
            self._flush()
        logger.debug(
            "State entry written",
            extra={"stack": self._stack, "resource": state.name, "remote_id": state.remote_id},
        )

    def delete(self, name: str) -> None:
        with self.lock(name), self._document_lock:
            entries = self._resources.get(self._stack, {})
            if entries.pop(name, None) is None:
                return
            if not entries:
                self._resources.pop(self._stack, None)
            self._flush()
        logger.debug("State entry removed", extra={"stack": self._stack, "resource": name})

    def list_all(self) -> dict[str, AppliedState]:
        with self._document_lock:
            entries = self._resources.get(self._stack, {})
            return {name: AppliedState.from_dict(name, data) for name, data in entries.items()}

    def list_stacks(self) -> list[str]:
        with self._document_lock:
            return sorted(self._resources)

    def list_exports(self) -> dict[str, dict[str, Any]]:
        with self._document_lock:
            return copy.deepcopy(self._exports)

    def put_exports(self, owner: str, exports: Mapping[str, Any]) -> None:
        with self.lock(f"exports:{owner}"), self._document_lock:
            if exports:
                self._exports[owner] = copy.deepcopy(dict(exports))
            else:
                self._exports.pop(owner, None)
            self._flush()
