"""Template file loading with validation.

Accepts YAML (including the short-form intrinsic tags such as ``!Ref`` and
``!Sub``) and JSON. The raw document is validated by the pydantic document
models, then parsed into a Template with expression trees.

SECURITY: File size is checked before reading to bound memory use.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_TEMPLATE_FILE_SIZE_BYTES
from .errors import SchemaViolation, TemplateLoadError
from .models import Template, TemplateDocument

logger = logging.getLogger(__name__)


# yaml.safe_load rejects the short-form intrinsic tags. Every "!Tag" is turned
# into its long form ({"Ref": ...} or {"Fn::Tag": ...}) while loading, so the
# expression parser only has to understand one syntax.
class _TemplateLoader(yaml.SafeLoader):
    pass


def _intrinsic_constructor(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> Any:
    function = "Ref" if tag_suffix == "Ref" else f"Fn::{tag_suffix}"
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
        if function == "Fn::GetAtt" and isinstance(value, str):
            value = value.split(".", 1)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    return {function: value}


def _unique_mapping_constructor(loader: yaml.SafeLoader, node: yaml.MappingNode) -> Any:
    loader.flatten_mapping(node)
    seen: set[Any] = set()
    for key_node, _ in node.value:
        key = loader.construct_object(key_node, deep=True)
        if key in seen:
            raise TemplateLoadError(
                f"Duplicate key '{key}' at line {key_node.start_mark.line + 1}"
            )
        seen.add(key)
    return loader.construct_mapping(node, deep=True)


_TemplateLoader.add_multi_constructor("!", _intrinsic_constructor)
_TemplateLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _unique_mapping_constructor
)


def _reject_duplicate_json_keys(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise TemplateLoadError(f"Duplicate key '{key}'")
        result[key] = value
    return result


def parse_template_text(content: str, source: str = "<string>") -> dict[str, Any]:
    """Parse template text (YAML or JSON) into a raw mapping.

    Raises:
        TemplateLoadError: If the text is not a valid YAML/JSON mapping.
    """
    stripped = content.lstrip()
    try:
        if stripped.startswith("{"):
            raw = json.loads(content, object_pairs_hook=_reject_duplicate_json_keys)
        else:
            raw = yaml.load(content, Loader=_TemplateLoader)  # noqa: S506 - SafeLoader subclass
    except json.JSONDecodeError as e:
        raise TemplateLoadError(f"Invalid JSON in {source}: {e}") from e
    except yaml.YAMLError as e:
        raise TemplateLoadError(f"Invalid YAML in {source}: {e}") from e

    if not isinstance(raw, dict):
        raise TemplateLoadError(f"Template must contain a mapping: {source}")
    return raw


def build_template(raw: dict[str, Any], source: str = "<string>") -> Template:
    """Validate a raw mapping and parse it into a Template.

    Raises:
        SchemaViolation: If the document structure or an intrinsic is invalid.
    """
    try:
        document = TemplateDocument.model_validate(raw)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        names: list[str] = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
            if len(error["loc"]) > 1 and error["loc"][0] in ("Parameters", "Resources", "Outputs"):
                names.append(str(error["loc"][1]))

        error_list = "\n".join(errors)
        raise SchemaViolation(
            f"Validation failed for {source}:\n{error_list}", sorted(set(names))
        ) from e

    return Template.from_document(document)


def load_template(path: Path) -> Template:
    """Load and parse a template file.

    Args:
        path: Path to a YAML or JSON template.

    Returns:
        Parsed template. Parameters are not bound yet; see validation.

    Raises:
        TemplateLoadError: If the file cannot be read or parsed.
        SchemaViolation: If the document structure is invalid.
    """
    if not path.exists():
        raise TemplateLoadError(f"Template file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise TemplateLoadError(f"Failed to stat template file {path}: {e}") from e

    if file_size > MAX_TEMPLATE_FILE_SIZE_BYTES:
        raise TemplateLoadError(
            f"Template file exceeds maximum size of {MAX_TEMPLATE_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise TemplateLoadError(f"Failed to read template file {path}: {e}") from e

    template = build_template(parse_template_text(content, str(path)), str(path))
    logger.info(
        "Loaded template from %s",
        path,
        extra={
            "resources": len(template.resources),
            "parameters": len(template.parameters),
            "outputs": len(template.outputs),
        },
    )
    return template
