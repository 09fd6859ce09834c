"""Template validation and parameter binding.

Validation runs before the dependency graph is built and before any remote
call. It checks that:
1. Every parameter has a value (supplied or default) that meets its constraints
2. Every resource type is known and every required property is present
3. Every Ref/GetAtt/DependsOn points at something declared
4. Every Import names an export that is available
5. Export names are fixed before apply, unique within the template, and not
   already published by another stack

Failures carry the offending logical names. Nothing is silently defaulted
except where a parameter or resource type schema declares a default.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from .config import MAX_RESOURCES_PER_TEMPLATE
from .errors import ConstraintViolation, SchemaViolation, UnresolvedReference
from .expressions import (
    PSEUDO_REGION,
    PSEUDO_STACK_NAME,
    UNKNOWN,
    Import,
    ResolutionContext,
    export_name,
    iter_imports,
    iter_refs,
    resolve,
)
from .models import ParameterSpec, Resource, Template
from .resource_types import ResourceTypeRegistry, default_registry

logger = logging.getLogger(__name__)

NO_ECHO_MASK = "****"


@dataclass
class ValidatedTemplate:
    """A template whose references, parameters and schemas have been checked.

    Attributes:
        template: The parsed template. Resource property bags include schema
            defaults.
        parameters: Bound parameter values, including pseudo parameters.
        exports: Exports that Import expressions were checked against.
        registry: Resource type schemas used for validation.
        secret_parameters: Names of NoEcho parameters.
        export_names: Export name per exporting output.
    """

    template: Template
    parameters: dict[str, Any]
    exports: Mapping[str, Any] = field(default_factory=dict)
    registry: ResourceTypeRegistry = field(default_factory=default_registry)
    secret_parameters: frozenset[str] = frozenset()
    export_names: dict[str, str] = field(default_factory=dict)

    @property
    def resources(self) -> dict[str, Resource]:
        return self.template.resources

    def display_parameters(self) -> dict[str, Any]:
        """Bound parameters with NoEcho values masked."""
        return {
            name: NO_ECHO_MASK if name in self.secret_parameters else value
            for name, value in self.parameters.items()
        }


# =============================================================================
# Parameters
# =============================================================================


def _parse_number(name: str, value: Any, spec: ParameterSpec) -> int | float:
    if isinstance(value, bool):
        raise ConstraintViolation(f"Parameter '{name}' must be a number: {value!r}", [name])
    if isinstance(value, (int, float)):
        return value
    try:
        text = str(value).strip()
        number = float(text)
    except ValueError as e:
        raise ConstraintViolation(
            f"Parameter '{name}' must be a number: {value!r}"
            + (f" ({spec.constraint_description})" if spec.constraint_description else ""),
            [name],
        ) from e
    return int(number) if number.is_integer() and "." not in text else number


def coerce_parameter(name: str, spec: ParameterSpec, value: Any) -> Any:
    """Convert a raw parameter value to the declared type.

    Raises:
        ConstraintViolation: If the value cannot be converted.
    """
    if spec.is_list:
        if isinstance(value, str):
            items: list[Any] = [item.strip() for item in value.split(",")] if value else []
        elif isinstance(value, list):
            items = list(value)
        else:
            raise ConstraintViolation(f"Parameter '{name}' must be a list: {value!r}", [name])
        if spec.is_number:
            return [_parse_number(name, item, spec) for item in items]
        return [str(item) for item in items]

    if spec.is_number:
        return _parse_number(name, value, spec)

    if isinstance(value, (dict, list)):
        raise ConstraintViolation(f"Parameter '{name}' must be a string: {value!r}", [name])
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def check_constraints(name: str, spec: ParameterSpec, value: Any) -> None:
    """Check a coerced parameter value against its declared constraints.

    Raises:
        ConstraintViolation: If any constraint fails.
    """
    items = value if isinstance(value, list) else [value]
    problems: list[str] = []

    for item in items:
        shown = NO_ECHO_MASK if spec.no_echo else repr(item)
        if spec.allowed_values is not None:
            allowed = [
                _parse_number(name, v, spec) if spec.is_number else str(v)
                for v in spec.allowed_values
            ]
            if item not in allowed:
                problems.append(f"{shown} is not one of {allowed}")

        if isinstance(item, str):
            if spec.allowed_pattern is not None and not re.fullmatch(spec.allowed_pattern, item):
                problems.append(f"{shown} does not match pattern {spec.allowed_pattern}")
            if spec.min_length is not None and len(item) < spec.min_length:
                problems.append(f"length {len(item)} is below MinLength {spec.min_length}")
            if spec.max_length is not None and len(item) > spec.max_length:
                problems.append(f"length {len(item)} exceeds MaxLength {spec.max_length}")
        else:
            if spec.min_value is not None and item < spec.min_value:
                problems.append(f"{item} is below MinValue {spec.min_value:g}")
            if spec.max_value is not None and item > spec.max_value:
                problems.append(f"{item} exceeds MaxValue {spec.max_value:g}")

    if problems:
        detail = spec.constraint_description or "; ".join(problems)
        raise ConstraintViolation(f"Parameter '{name}' {detail}", [name])


def bind_parameters(
    template: Template,
    supplied: Mapping[str, Any],
    stack_name: str,
    region: str,
) -> dict[str, Any]:
    """Bind parameter values: supplied value, else default.

    Returns:
        Parameter values keyed by name, plus the pseudo parameters.

    Raises:
        SchemaViolation: If a parameter is unknown or has no value.
        ConstraintViolation: If a value fails its constraints.
    """
    unknown = sorted(set(supplied) - set(template.parameters))
    if unknown:
        raise SchemaViolation(f"Unknown parameters supplied: {unknown}", unknown)

    bound: dict[str, Any] = {PSEUDO_STACK_NAME: stack_name, PSEUDO_REGION: region}
    missing: list[str] = []
    for name, spec in template.parameters.items():
        if name in supplied:
            raw = supplied[name]
        elif spec.default is not None:
            raw = spec.default
        else:
            missing.append(name)
            continue
        value = coerce_parameter(name, spec, raw)
        check_constraints(name, spec, value)
        bound[name] = value

    if missing:
        raise SchemaViolation(f"Parameters without a value: {missing}", missing)
    return bound


# =============================================================================
# Resources and outputs
# =============================================================================


def _check_references(
    owner: str,
    value: Any,
    template: Template,
    parameters: Mapping[str, Any],
    registry: ResourceTypeRegistry,
) -> None:
    for ref in iter_refs(value):
        if ref.attribute is None:
            if ref.name not in parameters and ref.name not in template.resources:
                raise UnresolvedReference(
                    f"{owner}: Ref to undeclared name '{ref.name}'", [owner]
                )
            continue
        target = template.resources.get(ref.name)
        if target is None:
            raise UnresolvedReference(
                f"{owner}: GetAtt on undeclared resource '{ref.name}'", [owner]
            )
        schema = registry.get(target.type, ref.name)
        if ref.attribute not in schema.attributes:
            raise UnresolvedReference(
                f"{owner}: resource '{ref.name}' ({target.type}) has no attribute "
                f"'{ref.attribute}'",
                [owner],
            )


def _check_imports(
    owner: str, value: Any, parameters: dict[str, Any], exports: Mapping[str, Any]
) -> None:
    context = ResolutionContext(parameters=parameters, exports=exports)
    for expr in iter_imports(value):
        name = _import_name(owner, expr, context)
        if name not in exports:
            raise UnresolvedReference(f"{owner}: no export named '{name}'", [owner])


def _static_value(owner: str, expr: Any, context: ResolutionContext, what: str) -> Any:
    """Resolve a name that must be known before apply."""
    try:
        value = resolve(expr, context, owner)
    except UnresolvedReference as e:
        raise SchemaViolation(
            f"{owner}: {what} names may only use parameters and literals ({e})", [owner]
        ) from e
    if value is UNKNOWN or isinstance(value, (dict, list)):
        raise SchemaViolation(f"{owner}: {what} name must resolve to a string", [owner])
    return value


def _import_name(owner: str, expr: Import, context: ResolutionContext) -> str:
    key = _static_value(owner, expr.key, context, "import")
    namespace = (
        None if expr.namespace is None else _static_value(owner, expr.namespace, context, "import")
    )
    return export_name(namespace, key)


def _check_export_names(
    template: Template,
    parameters: dict[str, Any],
    stack_name: str,
    export_owners: Mapping[str, str],
) -> dict[str, str]:
    """Resolve export names and check they belong to this stack alone.

    Returns:
        Export name per exporting output.
    """
    context = ResolutionContext(parameters=parameters)
    names: dict[str, str] = {}
    declared_by: dict[str, str] = {}
    for name, output in template.outputs.items():
        if output.export_name is None:
            continue
        export = str(_static_value(name, output.export_name, context, "export"))
        if export in declared_by:
            raise SchemaViolation(
                f"Outputs '{declared_by[export]}' and '{name}' export the same name '{export}'",
                [declared_by[export], name],
            )
        owner = export_owners.get(export)
        if owner is not None and owner != stack_name:
            raise SchemaViolation(
                f"{name}: export '{export}' is already published by stack '{owner}'", [name]
            )
        declared_by[export] = name
        names[name] = export
    return names


def validate_template(
    template: Template,
    parameters: Mapping[str, Any] | None = None,
    *,
    stack_name: str,
    region: str = "us-east-1",
    exports: Mapping[str, Any] | None = None,
    export_owners: Mapping[str, str] | None = None,
    registry: ResourceTypeRegistry | None = None,
) -> ValidatedTemplate:
    """Validate a template for internal consistency and bind its parameters.

    Args:
        template: Parsed template.
        parameters: Supplied parameter values.
        stack_name: Value of the AWS::StackName pseudo parameter.
        region: Value of the AWS::Region pseudo parameter.
        exports: Exports available to Import expressions.
        export_owners: Stack that published each existing export. Outputs
            may not take over an export owned by another stack.
        registry: Resource type schemas (default: built-in schemas).

    Returns:
        ValidatedTemplate with schema defaults filled into property bags.

    Raises:
        SchemaViolation, UnresolvedReference, ConstraintViolation
    """
    registry = registry or default_registry()
    exports = dict(exports or {})

    if len(template.resources) > MAX_RESOURCES_PER_TEMPLATE:
        raise SchemaViolation(
            f"Template declares {len(template.resources)} resources, "
            f"limit is {MAX_RESOURCES_PER_TEMPLATE}"
        )

    bound = bind_parameters(template, parameters or {}, stack_name, region)

    resources: dict[str, Resource] = {}
    for name, resource in template.resources.items():
        schema = registry.get(resource.type, name)
        properties = schema.with_defaults(resource.properties)
        missing = schema.missing_required(properties)
        if missing:
            raise SchemaViolation(
                f"{name}: missing required properties {missing} for {resource.type}", [name]
            )

        for dependency in resource.depends_on:
            if dependency not in template.resources:
                raise UnresolvedReference(
                    f"{name}: DependsOn names undeclared resource '{dependency}'", [name]
                )

        _check_references(name, properties, template, bound, registry)
        _check_imports(name, properties, bound, exports)
        resources[name] = replace(resource, properties=properties)

    for name, output in template.outputs.items():
        _check_references(name, output.value, template, bound, registry)
        _check_imports(name, output.value, bound, exports)
        if output.export_name is not None:
            _check_references(name, output.export_name, template, bound, registry)
    export_names = _check_export_names(template, bound, stack_name, export_owners or {})

    secret = frozenset(n for n, spec in template.parameters.items() if spec.no_echo)
    logger.debug(
        "Template validated",
        extra={"resources": len(resources), "parameters": len(template.parameters)},
    )
    return ValidatedTemplate(
        template=replace(template, resources=resources),
        parameters=bound,
        exports=exports,
        registry=registry,
        secret_parameters=secret,
        export_names=export_names,
    )
