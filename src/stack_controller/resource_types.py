"""Resource type schemas.

The type tag of a resource selects its schema, which controls:
1. Which properties must be present (validation)
2. Default values filled in when a property is omitted
3. Which property changes force a replacement instead of an in-place update
4. The attributes GetAtt may read after the resource is applied
5. Replacement ordering and whether the executor waits for readiness

The default registry covers the resource types used by the container
service templates this controller was built for (load balancer, task
definition, service, log group, DNS record, security group). Other types
can be registered at runtime.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from .errors import SchemaViolation

logger = logging.getLogger(__name__)

# Marks every property of a type as replace-on-change
ALL_PROPERTIES = "*"


class ReplacementPolicy(str, Enum):
    """Ordering of the two halves of a replacement."""

    CREATE_BEFORE_DELETE = "create_before_delete"
    DELETE_BEFORE_CREATE = "delete_before_create"
    # Create first when other resources reference this one, else delete first
    AUTO = "auto"


@dataclass(frozen=True)
class ResourceTypeSchema:
    """Schema for one resource type tag.

    Attributes:
        type_name: Type tag (e.g., "AWS::ECS::Service").
        required: Properties that must be present.
        replace_on_change: Properties whose change forces replacement.
            ALL_PROPERTIES makes every property replace-on-change.
        defaults: Values used when a property is omitted.
        attributes: Attribute names readable through GetAtt.
        replacement_policy: Ordering of a replacement.
        name_property: Property holding a user-chosen physical name. Two
            instances cannot coexist with the same name, so a replacement with
            this property set always deletes first.
        wait_for_ready: Poll the remote store until the resource is ready.
    """

    type_name: str
    required: frozenset[str] = frozenset()
    replace_on_change: frozenset[str] = frozenset()
    defaults: Mapping[str, Any] = field(default_factory=dict)
    attributes: frozenset[str] = frozenset()
    replacement_policy: ReplacementPolicy = ReplacementPolicy.AUTO
    name_property: str | None = None
    wait_for_ready: bool = True

    def requires_replacement(self, property_name: str) -> bool:
        """Check whether changing a top-level property forces replacement."""
        return (
            ALL_PROPERTIES in self.replace_on_change
            or property_name in self.replace_on_change
        )

    def missing_required(self, properties: Mapping[str, Any]) -> list[str]:
        """Return required properties absent from a property bag."""
        return sorted(name for name in self.required if name not in properties)

    def with_defaults(self, properties: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of the property bag with schema defaults filled in."""
        merged = dict(self.defaults)
        merged.update(properties)
        return merged


def _schema(
    type_name: str,
    *,
    required: Iterable[str] = (),
    replace_on_change: Iterable[str] = (),
    defaults: Mapping[str, Any] | None = None,
    attributes: Iterable[str] = (),
    replacement_policy: ReplacementPolicy = ReplacementPolicy.AUTO,
    name_property: str | None = None,
    wait_for_ready: bool = True,
) -> ResourceTypeSchema:
    return ResourceTypeSchema(
        type_name=type_name,
        required=frozenset(required),
        replace_on_change=frozenset(replace_on_change),
        defaults=MappingProxyType(dict(defaults or {})),
        attributes=frozenset(attributes),
        replacement_policy=replacement_policy,
        name_property=name_property,
        wait_for_ready=wait_for_ready,
    )


BUILTIN_SCHEMAS: tuple[ResourceTypeSchema, ...] = (
    _schema(
        "AWS::EC2::SecurityGroup",
        required=("GroupDescription",),
        replace_on_change=("GroupDescription", "GroupName", "VpcId"),
        attributes=("GroupId", "VpcId"),
        name_property="GroupName",
        wait_for_ready=False,
    ),
    _schema(
        "AWS::ElasticLoadBalancing::LoadBalancer",
        required=("Listeners",),
        replace_on_change=("LoadBalancerName", "Scheme"),
        defaults={"Scheme": "internet-facing"},
        attributes=("CanonicalHostedZoneName", "CanonicalHostedZoneNameID", "DNSName"),
        name_property="LoadBalancerName",
    ),
    # Task definitions are immutable revisions; any change registers a new one
    _schema(
        "AWS::ECS::TaskDefinition",
        required=("ContainerDefinitions",),
        replace_on_change=(ALL_PROPERTIES,),
        attributes=("TaskDefinitionArn",),
        replacement_policy=ReplacementPolicy.CREATE_BEFORE_DELETE,
        wait_for_ready=False,
    ),
    _schema(
        "AWS::ECS::Service",
        required=("TaskDefinition",),
        replace_on_change=("Cluster", "LaunchType", "LoadBalancers", "Role", "ServiceName"),
        defaults={"DesiredCount": 1},
        attributes=("Name", "ServiceArn"),
        name_property="ServiceName",
    ),
    _schema(
        "AWS::Logs::LogGroup",
        replace_on_change=("LogGroupName",),
        attributes=("Arn",),
        name_property="LogGroupName",
        wait_for_ready=False,
    ),
    _schema(
        "AWS::Route53::RecordSet",
        required=("Name", "Type"),
        replace_on_change=("HostedZoneId", "HostedZoneName", "Name", "Type"),
        name_property="Name",
    ),
)


class ResourceTypeRegistry:
    """Lookup table of resource type schemas."""

    def __init__(self, schemas: Iterable[ResourceTypeSchema] = ()) -> None:
        self._schemas: dict[str, ResourceTypeSchema] = {}
        for schema in schemas:
            self.register(schema)

    def register(self, schema: ResourceTypeSchema) -> None:
        """Register or replace a schema."""
        if schema.type_name in self._schemas:
            logger.debug("Replacing resource type schema", extra={"type": schema.type_name})
        self._schemas[schema.type_name] = schema

    def get(self, type_name: str, owner: str = "") -> ResourceTypeSchema:
        """Return the schema for a type tag.

        Raises:
            SchemaViolation: If the type tag is not registered.
        """
        schema = self._schemas.get(type_name)
        if schema is None:
            raise SchemaViolation(
                f"{owner}: unknown resource type '{type_name}'", [owner] if owner else []
            )
        return schema

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._schemas

    def type_names(self) -> list[str]:
        return sorted(self._schemas)


def default_registry() -> ResourceTypeRegistry:
    """Build a registry holding the built-in schemas."""
    return ResourceTypeRegistry(BUILTIN_SCHEMAS)
