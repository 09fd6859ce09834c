"""Reference expressions embedded in template property values.

A property bag is a tree of dicts and lists whose leaves are expressions:

    Literal(value)          plain scalar value
    Ref(name)               parameter, pseudo parameter or resource identifier
    Ref(name, attribute)    exported attribute of a resource (GetAtt)
    Import(key, namespace)  named export published by another template
    Join(delimiter, parts)  string concatenation

Template intrinsics are parsed into this tree once, at load time. ``Fn::Sub``
strings are compiled into a Join of Literal and Ref parts, so resolution is a
plain tree walk and never interpolates strings.

EXAMPLE:
```yaml
Name: !Sub 'nexus.${HostedZoneName}'
# -> Join("", (Literal("nexus."), Ref("HostedZoneName")))
```
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import SchemaViolation, UnresolvedReference

# Pseudo parameters understood by every template
PSEUDO_STACK_NAME = "AWS::StackName"
PSEUDO_REGION = "AWS::Region"
PSEUDO_PARAMETERS = frozenset({PSEUDO_STACK_NAME, PSEUDO_REGION})

_SUB_VARIABLE = re.compile(r"\$\{([^}]*)\}")


class _Unknown:
    """Sentinel for values that are only known once a resource is applied."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Literal:
    """A plain value."""

    value: Any


@dataclass(frozen=True)
class Ref:
    """Reference to a parameter, or to a resource identifier or attribute."""

    name: str
    attribute: str | None = None

    def __str__(self) -> str:
        if self.attribute is None:
            return self.name
        return f"{self.name}.{self.attribute}"


@dataclass(frozen=True)
class Import:
    """Reference to an export published by another template.

    The export name is ``"{namespace}-{key}"`` when a namespace is given,
    otherwise the key alone.
    """

    key: Expr
    namespace: Expr | None = None


@dataclass(frozen=True)
class Join:
    """Concatenation of string parts. A part may resolve to a list."""

    delimiter: str
    parts: tuple[Expr, ...] = field(default_factory=tuple)


Expr = Union[Literal, Ref, Import, Join]

EXPRESSION_TYPES = (Literal, Ref, Import, Join)


# =============================================================================
# Parsing
# =============================================================================


def parse_value(raw: Any, owner: str) -> Any:
    """Parse a raw property value into an expression tree.

    Args:
        raw: Value as loaded from YAML/JSON. Intrinsics appear as single-key
            mappings in long form (``{"Fn::GetAtt": [...]}``).
        owner: Logical name of the owning resource or output, for errors.

    Returns:
        Nested dicts/lists with Expr leaves.

    Raises:
        SchemaViolation: If an intrinsic is malformed or not supported.
    """
    if isinstance(raw, dict):
        if len(raw) == 1:
            (key, value), = raw.items()
            if isinstance(key, str) and (key == "Ref" or key.startswith("Fn::")):
                return _parse_intrinsic(key, value, owner)
        return {str(k): parse_value(v, owner) for k, v in raw.items()}
    if isinstance(raw, list):
        return [parse_value(item, owner) for item in raw]
    return Literal(raw)


def _parse_intrinsic(function: str, value: Any, owner: str) -> Expr:
    if function == "Ref":
        if not isinstance(value, str) or not value:
            raise SchemaViolation(f"{owner}: Ref needs a name, got {value!r}", [owner])
        return Ref(value)

    if function == "Fn::GetAtt":
        if isinstance(value, str):
            target, _, attribute = value.partition(".")
        elif isinstance(value, list) and len(value) == 2:
            target, attribute = value
        else:
            raise SchemaViolation(
                f"{owner}: Fn::GetAtt expects 'Resource.Attribute' or [Resource, Attribute]",
                [owner],
            )
        if not target or not attribute:
            raise SchemaViolation(f"{owner}: Fn::GetAtt {value!r} is incomplete", [owner])
        return Ref(str(target), str(attribute))

    if function == "Fn::Sub":
        if isinstance(value, str):
            return _compile_sub(value, {}, owner)
        if isinstance(value, list) and len(value) == 2 and isinstance(value[1], dict):
            local_vars = {
                str(k): _as_expr(parse_value(v, owner), owner) for k, v in value[1].items()
            }
            return _compile_sub(str(value[0]), local_vars, owner)
        raise SchemaViolation(f"{owner}: Fn::Sub expects a string or [string, mapping]", [owner])

    if function == "Fn::ImportValue":
        if isinstance(value, dict) and set(value) == {"Namespace", "Key"}:
            return Import(
                key=_as_expr(parse_value(value["Key"], owner), owner),
                namespace=_as_expr(parse_value(value["Namespace"], owner), owner),
            )
        return Import(key=_as_expr(parse_value(value, owner), owner))

    if function == "Fn::Join":
        if not isinstance(value, list) or len(value) != 2 or not isinstance(value[0], str):
            raise SchemaViolation(f"{owner}: Fn::Join expects [delimiter, values]", [owner])
        parts = parse_value(value[1], owner)
        if isinstance(parts, list):
            return Join(value[0], tuple(_as_expr(p, owner) for p in parts))
        return Join(value[0], (_as_expr(parts, owner),))

    raise SchemaViolation(f"{owner}: unsupported intrinsic function '{function}'", [owner])


def _as_expr(value: Any, owner: str) -> Expr:
    if isinstance(value, EXPRESSION_TYPES):
        return value
    raise SchemaViolation(f"{owner}: expected a scalar or intrinsic, got {value!r}", [owner])


def _compile_sub(template: str, local_vars: dict[str, Expr], owner: str) -> Expr:
    """Compile a Sub template string into a Join of literal and reference parts."""
    parts: list[Expr] = []
    position = 0
    for match in _SUB_VARIABLE.finditer(template):
        if match.start() > position:
            parts.append(Literal(template[position : match.start()]))
        variable = match.group(1).strip()
        if variable.startswith("!"):
            # ${!Literal} escapes to the text ${Literal}
            parts.append(Literal("${" + variable[1:] + "}"))
        elif not variable:
            raise SchemaViolation(f"{owner}: empty variable in Fn::Sub '{template}'", [owner])
        elif variable in local_vars:
            parts.append(local_vars[variable])
        elif "." in variable and not variable.startswith("AWS::"):
            target, _, attribute = variable.partition(".")
            parts.append(Ref(target, attribute))
        else:
            parts.append(Ref(variable))
        position = match.end()
    if position < len(template):
        parts.append(Literal(template[position:]))

    if len(parts) == 1 and isinstance(parts[0], Literal):
        return parts[0]
    return Join("", tuple(parts))


# =============================================================================
# Traversal
# =============================================================================


def iter_expressions(value: Any) -> Iterator[Expr]:
    """Yield every expression in a property tree, including nested parts."""
    if isinstance(value, dict):
        for item in value.values():
            yield from iter_expressions(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_expressions(item)
    elif isinstance(value, Import):
        yield value
        yield from iter_expressions(value.key)
        if value.namespace is not None:
            yield from iter_expressions(value.namespace)
    elif isinstance(value, Join):
        yield value
        for part in value.parts:
            yield from iter_expressions(part)
    elif isinstance(value, (Literal, Ref)):
        yield value


def iter_refs(value: Any) -> Iterator[Ref]:
    """Yield every Ref in a property tree."""
    for expr in iter_expressions(value):
        if isinstance(expr, Ref):
            yield expr


def iter_imports(value: Any) -> Iterator[Import]:
    """Yield every Import in a property tree."""
    for expr in iter_expressions(value):
        if isinstance(expr, Import):
            yield expr


# =============================================================================
# Resolution
# =============================================================================


@dataclass
class ResolutionContext:
    """Values an expression tree is resolved against.

    Attributes:
        parameters: Bound parameter values, including pseudo parameters.
        exports: Exports available to Import expressions.
        resource_ids: Remote identifier per resource, or UNKNOWN.
        attributes: Remote attributes per resource, or UNKNOWN.
    """

    parameters: dict[str, Any] = field(default_factory=dict)
    exports: Mapping[str, Any] = field(default_factory=dict)
    resource_ids: dict[str, Any] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)


def export_name(namespace: Any, key: Any) -> str:
    """Build the flat export name used by Import expressions."""
    if namespace in (None, ""):
        return str(key)
    return f"{namespace}-{key}"


def resolve(value: Any, context: ResolutionContext, owner: str = "") -> Any:
    """Resolve an expression tree into plain values.

    Values that depend on resources not yet applied come back as UNKNOWN.

    Raises:
        UnresolvedReference: If a reference has no target in the context.
    """
    if isinstance(value, dict):
        return {k: resolve(v, context, owner) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(item, context, owner) for item in value]
    if isinstance(value, Literal):
        return value.value
    if isinstance(value, Ref):
        return _resolve_ref(value, context, owner)
    if isinstance(value, Import):
        key = resolve(value.key, context, owner)
        namespace = None if value.namespace is None else resolve(value.namespace, context, owner)
        if key is UNKNOWN or namespace is UNKNOWN:
            return UNKNOWN
        name = export_name(namespace, key)
        if name not in context.exports:
            raise UnresolvedReference(f"{owner}: no export named '{name}'", [owner])
        return context.exports[name]
    if isinstance(value, Join):
        pieces: list[str] = []
        for part in value.parts:
            resolved = resolve(part, context, owner)
            if contains_unknown(resolved):
                return UNKNOWN
            items = resolved if isinstance(resolved, list) else [resolved]
            pieces.extend(_stringify(item) for item in items)
        return value.delimiter.join(pieces)
    return value


def _resolve_ref(ref: Ref, context: ResolutionContext, owner: str) -> Any:
    if ref.attribute is None:
        if ref.name in context.parameters:
            return context.parameters[ref.name]
        if ref.name in context.resource_ids:
            return context.resource_ids[ref.name]
        raise UnresolvedReference(f"{owner}: Ref to undeclared name '{ref.name}'", [owner])

    if ref.name not in context.attributes:
        raise UnresolvedReference(f"{owner}: GetAtt on undeclared resource '{ref.name}'", [owner])
    attributes = context.attributes[ref.name]
    if attributes is UNKNOWN:
        return UNKNOWN
    if ref.attribute not in attributes:
        raise UnresolvedReference(
            f"{owner}: resource '{ref.name}' has no attribute '{ref.attribute}'", [owner]
        )
    return attributes[ref.attribute]


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value still holds an UNKNOWN leaf."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False
