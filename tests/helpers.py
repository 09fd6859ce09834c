"""Shared builders for tests."""

from __future__ import annotations

from typing import Any

from stack_controller.models import Template
from stack_controller.resource_types import (
    ReplacementPolicy,
    ResourceTypeRegistry,
    ResourceTypeSchema,
    default_registry,
)
from stack_controller.state_store import AppliedState
from stack_controller.validation import ValidatedTemplate, validate_template

# Generic test types with predictable behaviour
BUCKET = "Test::Bucket"  # no replace-on-change, no readiness wait
WIDGET = "Test::Widget"  # "Size" forces replacement, waits for readiness
NAMED = "Test::Named"  # "Name" is a physical name and forces replacement

# Stack whose exports the Nexus fixture imports
CLUSTER_STACK = "ecs-cluster"


def build_registry() -> ResourceTypeRegistry:
    """Built-in schemas plus the generic test types."""
    registry = default_registry()
    registry.register(
        ResourceTypeSchema(
            type_name=BUCKET,
            attributes=frozenset({"Arn"}),
            wait_for_ready=False,
        )
    )
    registry.register(
        ResourceTypeSchema(
            type_name=WIDGET,
            replace_on_change=frozenset({"Size"}),
            attributes=frozenset({"Endpoint"}),
        )
    )
    registry.register(
        ResourceTypeSchema(
            type_name=NAMED,
            replace_on_change=frozenset({"Name", "Zone"}),
            attributes=frozenset({"Arn"}),
            replacement_policy=ReplacementPolicy.CREATE_BEFORE_DELETE,
            name_property="Name",
        )
    )
    return registry


def make_template(
    resources: dict[str, Any],
    parameters: dict[str, Any] | None = None,
    outputs: dict[str, Any] | None = None,
) -> Template:
    """Build a Template from long-form template sections."""
    data: dict[str, Any] = {"Resources": resources}
    if parameters:
        data["Parameters"] = parameters
    if outputs:
        data["Outputs"] = outputs
    return Template.from_dict(data)


def make_validated(
    resources: dict[str, Any],
    parameters: dict[str, Any] | None = None,
    outputs: dict[str, Any] | None = None,
    values: dict[str, Any] | None = None,
    exports: dict[str, Any] | None = None,
) -> ValidatedTemplate:
    """Build and validate a template against the test registry."""
    return validate_template(
        make_template(resources, parameters, outputs),
        values,
        stack_name="test",
        exports=exports,
        registry=build_registry(),
    )


def applied(
    name: str,
    resource_type: str,
    remote_id: str | None = None,
    properties: dict[str, Any] | None = None,
    attributes: dict[str, Any] | None = None,
    depends_on: list[str] | None = None,
    pending_deletion: list[str] | None = None,
) -> AppliedState:
    """Build an AppliedState entry."""
    return AppliedState(
        name=name,
        type=resource_type,
        remote_id=remote_id or f"{name.lower()}-1",
        properties=dict(properties or {}),
        attributes=dict(attributes or {}),
        depends_on=list(depends_on or []),
        pending_deletion=list(pending_deletion or []),
    )
