"""Output evaluation and export publishing.

Outputs are resolved against applied state once an apply has fully
succeeded. Outputs that declare an export name are published to the state
store under the stack's name, replacing whatever the stack exported before,
so other templates can read them through Import expressions.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .errors import UnresolvedReference
from .expressions import ResolutionContext, contains_unknown, resolve
from .state_store import AppliedState, StateStore
from .validation import ValidatedTemplate

logger = logging.getLogger(__name__)


def applied_context(
    validated: ValidatedTemplate, applied: Mapping[str, AppliedState]
) -> ResolutionContext:
    """Resolution context describing applied state."""
    return ResolutionContext(
        parameters=dict(validated.parameters),
        exports=validated.exports,
        resource_ids={name: state.remote_id for name, state in applied.items()},
        attributes={name: dict(state.attributes) for name, state in applied.items()},
    )


def evaluate_outputs(
    validated: ValidatedTemplate, applied: Mapping[str, AppliedState]
) -> dict[str, Any]:
    """Resolve every output value.

    Raises:
        UnresolvedReference: If an output refers to a resource with no
            applied state.
    """
    context = applied_context(validated, applied)
    values: dict[str, Any] = {}
    for name, output in validated.template.outputs.items():
        value = resolve(output.value, context, name)
        if contains_unknown(value):
            raise UnresolvedReference(f"{name}: output value is not known", [name])
        values[name] = value
    return values


def evaluate_exports(validated: ValidatedTemplate, values: Mapping[str, Any]) -> dict[str, Any]:
    """Map export names to output values.

    Export names were resolved and checked for clashes during validation.
    """
    return {export: values[name] for name, export in validated.export_names.items()}


def publish_outputs(
    validated: ValidatedTemplate, state_store: StateStore, owner: str
) -> dict[str, Any]:
    """Resolve outputs and publish exports for ``owner``.

    Returns:
        Output values keyed by output name.
    """
    applied = state_store.list_all()
    values = evaluate_outputs(validated, applied)
    exports = evaluate_exports(validated, values)
    state_store.put_exports(owner, exports)
    logger.info(
        "Outputs published",
        extra={"owner": owner, "outputs": len(values), "exports": sorted(exports)},
    )
    return values
