"""Template models.

Two layers:
1. Pydantic document models validate the raw template structure at the
   boundary (sections, key names, parameter constraint declarations).
2. Plain dataclasses (Template, Resource, Output) hold the parsed form, with
   property values turned into expression trees, for the graph builder,
   planner and executor.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .expressions import Expr, parse_value

# Logical names: alphanumeric, as in the template format
VALID_LOGICAL_NAME_PATTERN = r"^[A-Za-z0-9]+$"
MAX_LOGICAL_NAME_LENGTH = 255

SCALAR_PARAMETER_TYPES = frozenset({"String", "Number"})
LIST_PARAMETER_TYPES = frozenset({"CommaDelimitedList", "List<Number>"})


def _check_logical_names(names: dict[str, Any], section: str) -> None:
    for name in names:
        if len(name) > MAX_LOGICAL_NAME_LENGTH or not re.match(VALID_LOGICAL_NAME_PATTERN, name):
            raise ValueError(
                f"{section} name '{name}' must match {VALID_LOGICAL_NAME_PATTERN}"
            )


# =============================================================================
# Document models
# =============================================================================


class ParameterSpec(BaseModel):
    """Declared template parameter with optional constraints."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: str = Field(alias="Type")
    description: str | None = Field(None, alias="Description")
    default: Any = Field(None, alias="Default")
    allowed_pattern: str | None = Field(None, alias="AllowedPattern")
    allowed_values: list[Any] | None = Field(None, alias="AllowedValues")
    min_length: int | None = Field(None, alias="MinLength", ge=0)
    max_length: int | None = Field(None, alias="MaxLength", ge=0)
    min_value: float | None = Field(None, alias="MinValue")
    max_value: float | None = Field(None, alias="MaxValue")
    constraint_description: str | None = Field(None, alias="ConstraintDescription")
    no_echo: bool = Field(False, alias="NoEcho")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        # Provider-specific types (AWS::EC2::Subnet::Id, List<AWS::...>) are strings
        if v in SCALAR_PARAMETER_TYPES or v in LIST_PARAMETER_TYPES:
            return v
        if v.startswith("AWS::") or (v.startswith("List<") and v.endswith(">")):
            return v
        raise ValueError(f"unsupported parameter type '{v}'")

    @field_validator("allowed_pattern")
    @classmethod
    def validate_pattern(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"AllowedPattern is not a valid regular expression: {e}") from e
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> ParameterSpec:
        if (
            self.min_length is not None
            and self.max_length is not None
            and self.min_length > self.max_length
        ):
            raise ValueError("MinLength cannot exceed MaxLength")
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValueError("MinValue cannot exceed MaxValue")
        return self

    @property
    def is_list(self) -> bool:
        return self.type in LIST_PARAMETER_TYPES or self.type.startswith("List<")

    @property
    def is_number(self) -> bool:
        return self.type in ("Number", "List<Number>")


class ResourceSpec(BaseModel):
    """Declared resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: Annotated[str, Field(min_length=1)] = Field(alias="Type")
    properties: dict[str, Any] = Field(default_factory=dict, alias="Properties")
    depends_on: list[str] = Field(default_factory=list, alias="DependsOn")

    @field_validator("depends_on", mode="before")
    @classmethod
    def normalize_depends_on(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        if v is None:
            return []
        return v

    @field_validator("properties", mode="before")
    @classmethod
    def normalize_properties(cls, v: Any) -> Any:
        return {} if v is None else v


class ExportSpec(BaseModel):
    """Export declaration of an output."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Any = Field(alias="Name")


class OutputSpec(BaseModel):
    """Declared template output."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    value: Any = Field(alias="Value")
    description: str | None = Field(None, alias="Description")
    export: ExportSpec | None = Field(None, alias="Export")


class TemplateDocument(BaseModel):
    """Top-level template document."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    format_version: str | None = Field(None, alias="AWSTemplateFormatVersion")
    description: str | None = Field(None, alias="Description")
    metadata: dict[str, Any] = Field(default_factory=dict, alias="Metadata")
    parameters: dict[str, ParameterSpec] = Field(default_factory=dict, alias="Parameters")
    resources: dict[str, ResourceSpec] = Field(default_factory=dict, alias="Resources")
    outputs: dict[str, OutputSpec] = Field(default_factory=dict, alias="Outputs")

    @field_validator("parameters", "resources", "outputs", mode="before")
    @classmethod
    def normalize_sections(cls, v: Any) -> Any:
        return {} if v is None else v

    @model_validator(mode="after")
    def validate_names(self) -> TemplateDocument:
        _check_logical_names(self.parameters, "Parameter")
        _check_logical_names(self.resources, "Resource")
        _check_logical_names(self.outputs, "Output")
        shared = sorted(set(self.parameters) & set(self.resources))
        if shared:
            raise ValueError(f"names declared as both parameter and resource: {shared}")
        return self


# =============================================================================
# Parsed template
# =============================================================================


@dataclass
class Resource:
    """A declared resource with its property bag parsed into expressions."""

    name: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)


@dataclass
class Output:
    """A declared output, optionally exported for other templates."""

    name: str
    value: Any
    description: str | None = None
    export_name: Expr | None = None


@dataclass
class Template:
    """Parsed template: parameters, resources (declaration order) and outputs."""

    parameters: dict[str, ParameterSpec] = field(default_factory=dict)
    resources: dict[str, Resource] = field(default_factory=dict)
    outputs: dict[str, Output] = field(default_factory=dict)
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: TemplateDocument) -> Template:
        """Parse property values and outputs into expression trees.

        Raises:
            SchemaViolation: If an intrinsic function is malformed.
        """
        resources = {
            name: Resource(
                name=name,
                type=spec.type,
                properties=parse_value(spec.properties, name),
                depends_on=list(spec.depends_on),
            )
            for name, spec in document.resources.items()
        }
        outputs: dict[str, Output] = {}
        for name, spec in document.outputs.items():
            export_name = None
            if spec.export is not None:
                export_name = parse_value(spec.export.name, name)
            outputs[name] = Output(
                name=name,
                value=parse_value(spec.value, name),
                description=spec.description,
                export_name=export_name,
            )
        return cls(
            parameters=dict(document.parameters),
            resources=resources,
            outputs=outputs,
            description=document.description,
            metadata=dict(document.metadata),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Template:
        """Validate a raw mapping and parse it.

        Raises:
            pydantic.ValidationError: If the document structure is invalid.
            SchemaViolation: If an intrinsic function is malformed.
        """
        return cls.from_document(TemplateDocument.model_validate(data))
