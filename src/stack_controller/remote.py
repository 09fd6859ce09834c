"""Remote resource store collaborator.

The executor is a client of a RemoteStore: an external system that creates,
updates, deletes and describes resources per type tag. Real implementations
wrap a cloud provider API. This module defines the interface and two
simulators:

- InMemoryRemoteStore: process-local, used by tests and dry runs
- FileRemoteStore: persists simulated resources to a JSON file so the CLI can
  be exercised across invocations

Error contract:
- TransientRemoteError: throttling or eventual consistency, retried
- PermanentRemoteError: not retried
- RemoteNotFound: the identifier does not exist (deletes treat it as done)
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import PermanentRemoteError
from .resource_types import ResourceTypeRegistry, default_registry

logger = logging.getLogger(__name__)


class RemoteNotFound(PermanentRemoteError):
    """The remote identifier does not exist."""

    pass


class ResourceStatus(str, Enum):
    """Readiness of a remote resource."""

    PENDING = "pending"  # Accepted, not yet serving
    READY = "ready"  # Readiness condition holds (e.g., tasks healthy)
    FAILED = "failed"  # Will never become ready


@dataclass
class RemoteResource:
    """Remote view of a resource."""

    remote_id: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)
    status: ResourceStatus = ResourceStatus.READY

    def to_dict(self) -> dict[str, Any]:
        return {
            "remote_id": self.remote_id,
            "type": self.type,
            "properties": copy.deepcopy(self.properties),
            "attributes": copy.deepcopy(self.attributes),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteResource:
        return cls(
            remote_id=data["remote_id"],
            type=data["type"],
            properties=copy.deepcopy(data.get("properties", {})),
            attributes=copy.deepcopy(data.get("attributes", {})),
            status=ResourceStatus(data.get("status", ResourceStatus.READY.value)),
        )


class RemoteStore(ABC):
    """Interface to the system that owns the real resources."""

    @abstractmethod
    async def create(
        self, resource_type: str, name: str, properties: dict[str, Any]
    ) -> RemoteResource:
        """Create a resource. ``name`` is the logical name, used as a hint."""

    @abstractmethod
    async def update(
        self, resource_type: str, remote_id: str, properties: dict[str, Any]
    ) -> RemoteResource:
        """Update a resource in place."""

    @abstractmethod
    async def delete(self, resource_type: str, remote_id: str) -> None:
        """Delete a resource."""

    @abstractmethod
    async def describe(self, resource_type: str, remote_id: str) -> RemoteResource:
        """Return the current remote view of a resource."""


class InMemoryRemoteStore(RemoteStore):
    """Simulated remote store.

    Resources become READY after ``polls_until_ready`` describe calls
    (types whose schema does not wait for readiness are READY at once).
    Physical names declared through a schema's name_property are unique per
    type, as in a real provider.
    """

    def __init__(
        self,
        registry: ResourceTypeRegistry | None = None,
        polls_until_ready: int = 0,
        latency_seconds: float = 0.0,
    ) -> None:
        self._registry = registry or default_registry()
        self._polls_until_ready = polls_until_ready
        self._latency = latency_seconds
        # Keyed by (type, remote_id); physical names are only unique per type
        self._resources: dict[tuple[str, str], RemoteResource] = {}
        self._pending_polls: dict[tuple[str, str], int] = {}
        self.calls: list[tuple[str, str]] = []

    @property
    def resources(self) -> list[RemoteResource]:
        """Snapshot of all simulated resources."""
        return [copy.deepcopy(r) for _, r in sorted(self._resources.items())]

    def find(self, resource_type: str, remote_id: str) -> RemoteResource | None:
        """Return a copy of one simulated resource, or None."""
        resource = self._resources.get((resource_type, remote_id))
        return copy.deepcopy(resource) if resource is not None else None

    def _physical_name(self, resource_type: str, properties: dict[str, Any]) -> str | None:
        if resource_type not in self._registry:
            return None
        name_property = self._registry.get(resource_type).name_property
        if name_property is None:
            return None
        value = properties.get(name_property)
        return str(value) if value not in (None, "") else None

    def _initial_status(self, key: tuple[str, str]) -> ResourceStatus:
        resource_type = key[0]
        waits = (
            resource_type not in self._registry
            or self._registry.get(resource_type).wait_for_ready
        )
        if waits and self._polls_until_ready > 0:
            self._pending_polls[key] = self._polls_until_ready
            return ResourceStatus.PENDING
        return ResourceStatus.READY

    def _attributes(self, resource_type: str, remote_id: str) -> dict[str, Any]:
        if resource_type not in self._registry:
            return {}
        return {
            attribute: f"{remote_id}.{attribute.lower()}"
            for attribute in sorted(self._registry.get(resource_type).attributes)
        }

    async def _simulate_latency(self) -> None:
        if self._latency > 0:
            await asyncio.sleep(self._latency)

    async def create(
        self, resource_type: str, name: str, properties: dict[str, Any]
    ) -> RemoteResource:
        self.calls.append(("create", name))
        await self._simulate_latency()

        physical_name = self._physical_name(resource_type, properties)
        if physical_name is not None:
            if (resource_type, physical_name) in self._resources:
                raise PermanentRemoteError(
                    f"{resource_type} named '{physical_name}' already exists"
                )
            remote_id = physical_name
        else:
            remote_id = f"{name.lower()}-{uuid.uuid4().hex[:12]}"

        key = (resource_type, remote_id)
        resource = RemoteResource(
            remote_id=remote_id,
            type=resource_type,
            properties=copy.deepcopy(properties),
            attributes=self._attributes(resource_type, remote_id),
            status=self._initial_status(key),
        )
        self._resources[key] = resource
        self._changed()
        logger.debug("Simulated create", extra={"type": resource_type, "remote_id": remote_id})
        return copy.deepcopy(resource)

    async def update(
        self, resource_type: str, remote_id: str, properties: dict[str, Any]
    ) -> RemoteResource:
        self.calls.append(("update", remote_id))
        await self._simulate_latency()

        key = (resource_type, remote_id)
        resource = self._resources.get(key)
        if resource is None:
            raise RemoteNotFound(f"{resource_type} '{remote_id}' not found")
        resource.properties = copy.deepcopy(properties)
        resource.status = self._initial_status(key)
        self._changed()
        return copy.deepcopy(resource)

    async def delete(self, resource_type: str, remote_id: str) -> None:
        self.calls.append(("delete", remote_id))
        await self._simulate_latency()

        key = (resource_type, remote_id)
        if self._resources.pop(key, None) is None:
            raise RemoteNotFound(f"{resource_type} '{remote_id}' not found")
        self._pending_polls.pop(key, None)
        self._changed()

    async def describe(self, resource_type: str, remote_id: str) -> RemoteResource:
        self.calls.append(("describe", remote_id))
        key = (resource_type, remote_id)
        resource = self._resources.get(key)
        if resource is None:
            raise RemoteNotFound(f"{resource_type} '{remote_id}' not found")

        remaining = self._pending_polls.get(key)
        if remaining is not None:
            if remaining <= 1:
                del self._pending_polls[key]
                resource.status = ResourceStatus.READY
                self._changed()
            else:
                self._pending_polls[key] = remaining - 1
        return copy.deepcopy(resource)

    def _changed(self) -> None:
        """Hook called after every mutation."""


class FileRemoteStore(InMemoryRemoteStore):
    """Simulated remote store persisted to a JSON file.

    Readiness is immediate; the file only has to survive between CLI runs.
    """

    def __init__(self, path: Path, registry: ResourceTypeRegistry | None = None) -> None:
        super().__init__(registry=registry)
        self._path = path
        if path.exists():
            try:
                document = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise PermanentRemoteError(f"Cannot read simulated remote store {path}: {e}") from e
            for data in document.get("resources", []):
                resource = RemoteResource.from_dict(data)
                self._resources[(resource.type, resource.remote_id)] = resource

    def _changed(self) -> None:
        document = {"resources": [resource.to_dict() for resource in self.resources]}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, sort_keys=True, default=str)
        os.replace(tmp_name, self._path)
