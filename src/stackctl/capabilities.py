"""Per-resource-type capability table.

Which properties can be changed in place and which force a replacement is
knowledge owned by the provider, not by the reconciliation engine. It is
expressed here as data: adding a resource type adds a table row, never a new
code path.

A row carries:
- replacement_properties: top-level properties whose change forces Replace
- name_property: property that pins the physical name; when it keeps its
  value across a Replace, old and new resources would collide
- attributes: names GetAtt may request (empty means unchecked)
- numeric_orderings: cross-field rules such as "transition before expiry"
- api_version: provider API version (used by the Azure provider)

EXAMPLE YAML:
```yaml
resourceTypes:
  - resourceType: AWS::S3::Bucket
    replacementProperties: [BucketName]
    nameProperty: BucketName
    attributes: [Arn, DomainName]
    numericOrderings:
      - lesser: LifecycleConfiguration.Rules.*.Transitions.*.TransitionInDays
        greater: LifecycleConfiguration.Rules.*.ExpirationInDays
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .config import MAX_CAPABILITIES_FILE_SIZE_BYTES
from .errors import ValidationError

logger = logging.getLogger(__name__)


class NumericOrdering(BaseModel):
    """Every value at ``lesser`` must be strictly below every value at ``greater``.

    Paths are dotted property paths; ``*`` matches every element of a list.
    Missing or non-numeric values are skipped.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    lesser: str
    greater: str
    description: str = ""


class ResourceTypeCapabilities(BaseModel):
    """Capability row for one resource type."""

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    resource_type: str = Field(alias="resourceType", min_length=1)
    replacement_properties: frozenset[str] = Field(
        default_factory=frozenset, alias="replacementProperties"
    )
    name_property: str | None = Field(None, alias="nameProperty")
    attributes: frozenset[str] = Field(default_factory=frozenset)
    numeric_orderings: tuple[NumericOrdering, ...] = Field(
        default_factory=tuple, alias="numericOrderings"
    )
    api_version: str | None = Field(None, alias="apiVersion")

    def requires_replacement(self, property_name: str) -> bool:
        return property_name in self.replacement_properties

    def validate_properties(self, properties: dict[str, Any]) -> list[str]:
        """Check cross-field rules against fully resolved properties."""
        problems: list[str] = []
        for rule in self.numeric_orderings:
            lesser = [v for v in _values_at(properties, rule.lesser) if _is_number(v)]
            greater = [v for v in _values_at(properties, rule.greater) if _is_number(v)]
            if lesser and greater and max(lesser) >= min(greater):
                message = (
                    f"{self.resource_type}: {rule.lesser} ({max(lesser)}) must be less than "
                    f"{rule.greater} ({min(greater)})"
                )
                if rule.description:
                    message = f"{message}: {rule.description}"
                problems.append(message)
        return problems


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _values_at(value: Any, path: str) -> list[Any]:
    """Collect values at a dotted path, expanding ``*`` over lists."""
    current = [value]
    for segment in path.split("."):
        following: list[Any] = []
        for item in current:
            if segment == "*":
                if isinstance(item, list):
                    following.extend(item)
            elif isinstance(item, dict) and segment in item:
                following.append(item[segment])
        current = following
    return current


# Rows for the resource types used by the bundled audit-trail example.
BUILTIN_CAPABILITIES: tuple[dict[str, Any], ...] = (
    {
        "resourceType": "AWS::CloudTrail::Trail",
        "replacementProperties": ["TrailName"],
        "nameProperty": "TrailName",
        "attributes": ["Arn", "SnsTopicArn"],
    },
    {
        "resourceType": "AWS::Logs::LogGroup",
        "replacementProperties": ["LogGroupName", "KmsKeyId"],
        "nameProperty": "LogGroupName",
        "attributes": ["Arn"],
    },
    {
        "resourceType": "AWS::IAM::Role",
        "replacementProperties": ["RoleName", "Path"],
        "nameProperty": "RoleName",
        "attributes": ["Arn", "RoleId"],
    },
    {
        "resourceType": "AWS::S3::Bucket",
        "replacementProperties": ["BucketName"],
        "nameProperty": "BucketName",
        "attributes": ["Arn", "DomainName", "RegionalDomainName", "WebsiteURL"],
        "numericOrderings": [
            {
                "lesser": "LifecycleConfiguration.Rules.*.Transitions.*.TransitionInDays",
                "greater": "LifecycleConfiguration.Rules.*.ExpirationInDays",
                "description": "objects must transition before they expire",
            }
        ],
    },
    {
        "resourceType": "AWS::S3::BucketPolicy",
        "replacementProperties": ["Bucket"],
    },
)


class CapabilityTable:
    """Lookup of capability rows by resource type.

    Unknown types get a permissive default row: every property is mutable in
    place and attributes are unchecked.
    """

    def __init__(self, rows: Iterable[ResourceTypeCapabilities] = ()) -> None:
        self._rows: dict[str, ResourceTypeCapabilities] = {}
        for row in rows:
            self.register(row)

    def register(self, row: ResourceTypeCapabilities) -> None:
        self._rows[row.resource_type] = row

    def get(self, resource_type: str) -> ResourceTypeCapabilities:
        row = self._rows.get(resource_type)
        if row is None:
            return ResourceTypeCapabilities(resourceType=resource_type)
        return row

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def merged(self, other: CapabilityTable) -> CapabilityTable:
        """Return a table with ``other``'s rows overriding this table's."""
        return CapabilityTable([*self._rows.values(), *other._rows.values()])

    @classmethod
    def from_data(cls, rows: Iterable[dict[str, Any]]) -> CapabilityTable:
        """Build a table from raw mappings.

        Raises:
            ValidationError: If any row is malformed.
        """
        parsed: list[ResourceTypeCapabilities] = []
        problems: list[str] = []
        for i, raw in enumerate(rows):
            try:
                parsed.append(ResourceTypeCapabilities.model_validate(raw))
            except PydanticValidationError as e:
                for error in e.errors():
                    loc = ".".join(str(x) for x in error["loc"])
                    problems.append(f"resourceTypes[{i}].{loc}: {error['msg']}")
        if problems:
            raise ValidationError("Invalid capability table", problems)
        return cls(parsed)

    @classmethod
    def builtin(cls) -> CapabilityTable:
        return cls.from_data(BUILTIN_CAPABILITIES)

    @classmethod
    def from_yaml(cls, path: Path) -> CapabilityTable:
        """Load a capability table from a YAML file.

        Raises:
            ValidationError: If the file is unreadable, too large or malformed.
        """
        try:
            size = path.stat().st_size
        except OSError as e:
            raise ValidationError(f"Failed to stat capabilities file {path}: {e}") from e
        if size > MAX_CAPABILITIES_FILE_SIZE_BYTES:
            raise ValidationError(
                f"Capabilities file exceeds maximum size of "
                f"{MAX_CAPABILITIES_FILE_SIZE_BYTES} bytes: {path}"
            )

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ValidationError(f"Failed to read capabilities file {path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("resourceTypes"), list):
            raise ValidationError(f"Capabilities file must contain a 'resourceTypes' list: {path}")

        table = cls.from_data(data["resourceTypes"])
        logger.info(
            "Loaded capability table",
            extra={"path": str(path), "resource_types": len(table)},
        )
        return table
