"""Template loading with validation.

SECURITY: File reads enforce a size limit. The YAML loader is a SafeLoader
subclass; it only adds constructors for the intrinsic-function short tags.

Templates may be YAML or JSON. Short tags (``!Ref X``, ``!GetAtt X.Arn``,
``!Sub ...``) are rewritten to their long mapping forms so the rest of the
engine sees one representation. Scalars such as ``2012-10-17`` stay strings:
the timestamp resolver is removed from the loader.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from .config import MAX_RESOURCES_PER_STACK, MAX_TEMPLATE_FILE_SIZE_BYTES
from .errors import DuplicateIdentifierError, ValidationError
from .graph import Parameter, ResourceGraph
from .models import TemplateDocument

logger = logging.getLogger(__name__)

# Sections whose keys are identifiers; a repeated key there is a duplicate id
IDENTIFIER_SECTIONS = {
    "Resources": "logical id",
    "Parameters": "parameter",
    "Outputs": "output",
}

SHORT_TAGS = {
    "Ref": "Ref",
    "GetAtt": "Fn::GetAtt",
    "Sub": "Fn::Sub",
    "Join": "Fn::Join",
    "ImportValue": "Fn::ImportValue",
}

TIMESTAMP_TAG = "tag:yaml.org,2002:timestamp"


class TemplateYamlLoader(yaml.SafeLoader):
    """SafeLoader with intrinsic short tags and no timestamp resolution."""


TemplateYamlLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != TIMESTAMP_TAG]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_intrinsic(loader: TemplateYamlLoader, suffix: str, node: yaml.Node) -> dict[str, Any]:
    function = SHORT_TAGS.get(suffix)
    if function is None:
        raise yaml.constructor.ConstructorError(
            None, None, f"unknown tag !{suffix}", node.start_mark
        )

    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
        if function == "Fn::GetAtt":
            target, sep, attribute = str(value).partition(".")
            if sep:
                value = [target, attribute]
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    return {function: value}


TemplateYamlLoader.add_multi_constructor("!", _construct_intrinsic)


@dataclass
class LoadedTemplate:
    """A validated template document with bound parameter values."""

    document: TemplateDocument
    parameters: dict[str, Parameter] = field(default_factory=dict)
    source: str = "<string>"

    def build_graph(self) -> ResourceGraph:
        return ResourceGraph.from_document(self.document, self.parameters)


# =============================================================================
# Parsing
# =============================================================================


def _check_identifier_sections(root: yaml.Node | None) -> None:
    if not isinstance(root, yaml.MappingNode):
        return
    for key_node, value_node in root.value:
        if not isinstance(key_node, yaml.ScalarNode):
            continue
        kind = IDENTIFIER_SECTIONS.get(key_node.value)
        if kind is None or not isinstance(value_node, yaml.MappingNode):
            continue
        seen: set[str] = set()
        for item_key, _ in value_node.value:
            if not isinstance(item_key, yaml.ScalarNode):
                continue
            if item_key.value in seen:
                raise DuplicateIdentifierError(item_key.value, kind=kind)
            seen.add(item_key.value)


def _parse_yaml(content: str, source: str) -> Any:
    loader = TemplateYamlLoader(content)
    try:
        root = loader.get_single_node()
        _check_identifier_sections(root)
        return None if root is None else loader.construct_document(root)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {source}: {e}") from e
    finally:
        loader.dispose()


def _parse_json(content: str, source: str) -> Any:
    duplicates: list[str] = []

    def reject_duplicates(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, value in pairs:
            if key in result:
                duplicates.append(key)
            result[key] = value
        return result

    try:
        data = json.loads(content, object_pairs_hook=reject_duplicates)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON in {source}: {e}") from e

    if isinstance(data, dict):
        for section, kind in IDENTIFIER_SECTIONS.items():
            body = data.get(section)
            if isinstance(body, dict):
                for key in duplicates:
                    if key in body:
                        raise DuplicateIdentifierError(key, kind=kind)
    return data


def parse_template(content: str, source: str = "<string>", *, is_json: bool = False) -> TemplateDocument:
    """Parse and validate template text.

    Raises:
        ValidationError: If the text is malformed or fails model validation.
        DuplicateIdentifierError: If a resource, parameter or output is
            declared twice.
    """
    raw_data = _parse_json(content, source) if is_json else _parse_yaml(content, source)

    if not isinstance(raw_data, dict):
        raise ValidationError(f"Template must contain a mapping: {source}")

    try:
        document = TemplateDocument.model_validate(raw_data)
    except PydanticValidationError as e:
        problems = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            problems.append(f"{loc}: {error['msg']}" if loc else error["msg"])
        raise ValidationError(f"Validation failed for {source}", problems) from e

    if len(document.resources) > MAX_RESOURCES_PER_STACK:
        raise ValidationError(
            f"Template declares {len(document.resources)} resources; "
            f"the maximum is {MAX_RESOURCES_PER_STACK}: {source}"
        )
    return document


def read_template_file(path: Path) -> TemplateDocument:
    """Read a template file from disk.

    Raises:
        ValidationError: If the file is missing, too large, or invalid.
    """
    if not path.exists():
        raise ValidationError(f"Template file not found: {path}")

    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Failed to stat template file {path}: {e}") from e

    if file_size > MAX_TEMPLATE_FILE_SIZE_BYTES:
        raise ValidationError(
            f"Template file exceeds maximum size of {MAX_TEMPLATE_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Failed to read template file {path}: {e}") from e

    return parse_template(content, str(path), is_json=path.suffix.lower() == ".json")


# =============================================================================
# Parameter binding
# =============================================================================


def bind_parameters(
    document: TemplateDocument, overrides: Mapping[str, Any] | None = None
) -> dict[str, Parameter]:
    """Bind override (or default) values to declared parameters.

    Every problem is collected before raising, so one run reports all of
    them.

    Raises:
        ValidationError: On an unknown override, a missing value, a value
            that cannot be coerced, or a constraint violation.
    """
    overrides = dict(overrides or {})
    problems: list[str] = []
    bound: dict[str, Parameter] = {}

    for name in overrides:
        if name not in document.parameters:
            problems.append(f"{name}: parameter is not declared by the template")

    for name, spec in document.parameters.items():
        if name in overrides:
            raw = overrides[name]
        elif spec.default is not None:
            raw = spec.default
        else:
            problems.append(f"{name}: no value supplied and no Default declared")
            continue

        try:
            value = spec.coerce(raw)
        except ValueError as e:
            problems.append(f"{name}: {e}")
            continue

        violations = spec.check(value)
        if violations:
            problems.extend(f"{name}: {v}" for v in violations)
            continue

        bound[name] = Parameter(name=name, type=spec.type, value=value, no_echo=spec.no_echo)

    if problems:
        raise ValidationError("Parameter validation failed", problems)

    logger.debug(
        "Bound parameters",
        extra={"parameters": {n: p.display_value() for n, p in bound.items()}},
    )
    return bound


def load_template(path: Path, overrides: Mapping[str, Any] | None = None) -> LoadedTemplate:
    """Read a template file and bind its parameters."""
    document = read_template_file(path)
    parameters = bind_parameters(document, overrides)
    logger.info(
        "Loaded template",
        extra={
            "template": str(path),
            "resources": len(document.resources),
            "parameters": len(parameters),
        },
    )
    return LoadedTemplate(document=document, parameters=parameters, source=str(path))
