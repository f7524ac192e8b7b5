"""Pydantic models for stack templates with validation.

These models provide:
1. Type-safe parsing of the template document
2. Validation at the boundary (fail fast, fail loudly)
3. Parameter coercion and constraint checking
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

# =============================================================================
# Parameters
# =============================================================================


class ParameterType(str, Enum):
    """Declared parameter types."""

    STRING = "String"
    NUMBER = "Number"
    COMMA_DELIMITED_LIST = "CommaDelimitedList"
    NUMBER_LIST = "List<Number>"

    @property
    def is_list(self) -> bool:
        return self in (ParameterType.COMMA_DELIMITED_LIST, ParameterType.NUMBER_LIST)


def _to_number(value: Any) -> int | float:
    """Coerce a parameter value to int or float."""
    if isinstance(value, bool):
        raise ValueError(f"expected a number, got {value!r}")
    if isinstance(value, int | float):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError as e:
        raise ValueError(f"expected a number, got {value!r}") from e


class ParameterSpec(BaseModel):
    """A declared template parameter with its constraints."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: ParameterType = Field(alias="Type")
    default: Any = Field(None, alias="Default")
    allowed_pattern: str | None = Field(None, alias="AllowedPattern")
    allowed_values: list[Any] | None = Field(None, alias="AllowedValues")
    min_value: float | None = Field(None, alias="MinValue")
    max_value: float | None = Field(None, alias="MaxValue")
    min_length: int | None = Field(None, alias="MinLength", ge=0)
    max_length: int | None = Field(None, alias="MaxLength", ge=0)
    description: str = Field("", alias="Description")
    constraint_description: str | None = Field(None, alias="ConstraintDescription")
    no_echo: bool = Field(False, alias="NoEcho")

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

    @field_validator("description", mode="before")
    @classmethod
    def collapse_description(cls, v: Any) -> str:
        return "" if v is None else str(v)

    def coerce(self, raw: Any) -> Any:
        """Convert a raw value (override string or default) to the declared type.

        Raises:
            ValueError: If the value cannot be converted.
        """
        if self.type == ParameterType.NUMBER:
            return _to_number(raw)
        if self.type.is_list:
            items = raw if isinstance(raw, list) else str(raw).split(",")
            items = [str(item).strip() for item in items]
            if self.type == ParameterType.NUMBER_LIST:
                return [_to_number(item) for item in items]
            return items
        if isinstance(raw, bool):
            return "true" if raw else "false"
        return str(raw)

    def check(self, value: Any) -> list[str]:
        """Return every constraint the coerced value violates."""
        problems: list[str] = []
        values = value if isinstance(value, list) else [value]

        for item in values:
            if self.allowed_values is not None:
                allowed = [self._coerce_scalar(a) for a in self.allowed_values]
                if item not in allowed:
                    problems.append(f"value {item!r} is not one of {self.allowed_values}")

            if isinstance(item, str):
                if self.allowed_pattern is not None and not re.fullmatch(
                    self.allowed_pattern, item
                ):
                    problems.append(
                        f"value {item!r} does not match pattern {self.allowed_pattern}"
                    )
                if self.min_length is not None and len(item) < self.min_length:
                    problems.append(f"value {item!r} is shorter than {self.min_length}")
                if self.max_length is not None and len(item) > self.max_length:
                    problems.append(f"value {item!r} is longer than {self.max_length}")
            else:
                if self.min_value is not None and item < self.min_value:
                    problems.append(f"value {item} is less than MinValue {self.min_value:g}")
                if self.max_value is not None and item > self.max_value:
                    problems.append(f"value {item} is greater than MaxValue {self.max_value:g}")

        if problems and self.constraint_description:
            return [f"{problems[0]} ({self.constraint_description})", *problems[1:]]
        return problems

    def _coerce_scalar(self, value: Any) -> Any:
        if self.type in (ParameterType.NUMBER, ParameterType.NUMBER_LIST):
            try:
                return _to_number(value)
            except ValueError:
                return value
        return str(value)


# =============================================================================
# Resources and Outputs
# =============================================================================


class ResourceSpec(BaseModel):
    """A declared resource."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: str = Field(alias="Type", min_length=1)
    properties: dict[str, Any] = Field(default_factory=dict, alias="Properties")
    depends_on: list[str] = Field(default_factory=list, alias="DependsOn")
    metadata: dict[str, Any] = Field(default_factory=dict, alias="Metadata")

    @field_validator("properties", mode="before")
    @classmethod
    def empty_properties(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("depends_on", mode="before")
    @classmethod
    def single_dependency(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class ExportSpec(BaseModel):
    """Export declaration of an output."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Any = Field(alias="Name")


class OutputSpec(BaseModel):
    """A declared stack output."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    value: Any = Field(alias="Value")
    description: str | None = Field(None, alias="Description")
    export: ExportSpec | None = Field(None, alias="Export")


class TemplateDocument(BaseModel):
    """The complete template document."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    format_version: str | None = Field(None, alias="AWSTemplateFormatVersion")
    description: str | None = Field(None, alias="Description")
    metadata: dict[str, Any] = Field(default_factory=dict, alias="Metadata")
    parameters: dict[str, ParameterSpec] = Field(default_factory=dict, alias="Parameters")
    resources: dict[str, ResourceSpec] = Field(alias="Resources")
    outputs: dict[str, OutputSpec] = Field(default_factory=dict, alias="Outputs")

    @field_validator("format_version", mode="before")
    @classmethod
    def version_as_string(cls, v: Any) -> Any:
        return None if v is None else str(v)

    @field_validator("metadata", "parameters", "outputs", mode="before")
    @classmethod
    def empty_sections(cls, v: Any) -> Any:
        return {} if v is None else v

    @model_validator(mode="after")
    def check_resources(self) -> TemplateDocument:
        if not self.resources:
            raise ValueError("Resources must declare at least one resource")
        for logical_id in self.resources:
            if not re.fullmatch(r"[A-Za-z0-9]+", logical_id):
                raise ValueError(f"logical id must be alphanumeric: {logical_id!r}")
        return self
