"""In-memory provider, optionally persisted to a JSON file.

Useful for local development of templates and for exercising the engine
end to end: physical ids, ARNs and declared attributes are synthesized, name
collisions are reported the way a real platform would, and failures can be
injected per action and resource type.
"""

from __future__ import annotations

import copy
import json
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..capabilities import CapabilityTable
from ..errors import ProviderError, ResourceNotFound
from .base import CreateResult, ResourceProvider

logger = logging.getLogger(__name__)


@dataclass
class FailureRule:
    """Injected failure for matching calls.

    Attributes:
        action: create, update, delete or describe.
        resource_type: Type to match; None matches every type.
        transient: Whether the raised ProviderError is retryable.
        times: How many calls fail; None fails forever.
        delay_seconds: Seconds to sleep before failing, or before responding
            when ``succeed_after_delay`` is set.
        succeed_after_delay: Perform the call, then respond late instead of failing.
    """

    action: str
    resource_type: str | None = None
    transient: bool = False
    times: int | None = None
    delay_seconds: float = 0.0
    succeed_after_delay: bool = False

    def matches(self, action: str, resource_type: str) -> bool:
        if self.action != action:
            return False
        if self.resource_type is not None and self.resource_type != resource_type:
            return False
        return self.times is None or self.times > 0


def _slug(resource_type: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", resource_type.lower()).strip("-")


class InMemoryProvider(ResourceProvider):
    """Provider keeping resources in a dict guarded by a lock."""

    name = "local"

    def __init__(
        self,
        capabilities: CapabilityTable | None = None,
        *,
        store_path: Path | None = None,
        partition: str = "aws",
        region: str = "local",
        account_id: str = "000000000000",
    ) -> None:
        super().__init__(capabilities)
        self._store_path = store_path
        self._partition = partition
        self._region = region
        self._account_id = account_id
        self._lock = threading.Lock()
        self._resources: dict[str, dict[str, Any]] = {}
        self._failures: list[FailureRule] = []
        self.calls: list[tuple[str, str]] = []
        self._load()

    # -------------------------------------------------------------------------
    # Test and inspection helpers
    # -------------------------------------------------------------------------

    def inject_failure(
        self,
        action: str,
        resource_type: str | None = None,
        *,
        transient: bool = False,
        times: int | None = None,
        delay_seconds: float = 0.0,
        succeed_after_delay: bool = False,
    ) -> FailureRule:
        rule = FailureRule(
            action=action,
            resource_type=resource_type,
            transient=transient,
            times=times,
            delay_seconds=delay_seconds,
            succeed_after_delay=succeed_after_delay,
        )
        with self._lock:
            self._failures.append(rule)
        return rule

    def clear_failures(self) -> None:
        with self._lock:
            self._failures.clear()

    def resources(self) -> dict[str, dict[str, Any]]:
        """Snapshot of stored resources keyed by physical id."""
        with self._lock:
            return copy.deepcopy(self._resources)

    def remove_out_of_band(self, physical_id: str) -> None:
        """Delete a resource behind the engine's back (drift)."""
        with self._lock:
            self._resources.pop(physical_id, None)
            self._save()

    # -------------------------------------------------------------------------
    # Provider operations
    # -------------------------------------------------------------------------

    def create(
        self, resource_type: str, properties: dict[str, Any], *, token: str | None = None
    ) -> CreateResult:
        rule = self._before("create", resource_type)
        row = self.capabilities(resource_type)

        if row.name_property and properties.get(row.name_property):
            physical_id = str(properties[row.name_property])
        else:
            physical_id = f"{_slug(resource_type)}-{uuid.uuid4().hex[:12]}"

        with self._lock:
            existing = self._resources.get(physical_id)
            if existing is not None and token is not None and existing.get("token") == token:
                return CreateResult(physical_id, dict(existing["attributes"]))
            if existing is not None:
                raise ProviderError(
                    f"{resource_type} '{physical_id}' already exists", code="AlreadyExists"
                )
            attributes = self._attributes(resource_type, physical_id)
            self._resources[physical_id] = {
                "type": resource_type,
                "properties": copy.deepcopy(properties),
                "attributes": attributes,
                "token": token,
            }
            self._save()

        logger.debug(
            "Local resource created",
            extra={"resource_type": resource_type, "physical_id": physical_id},
        )
        self._respond(rule)
        return CreateResult(physical_id, dict(attributes))

    def update(
        self, physical_id: str, resource_type: str, properties: dict[str, Any]
    ) -> dict[str, Any]:
        rule = self._before("update", resource_type)
        with self._lock:
            record = self._resources.get(physical_id)
            if record is None:
                raise ResourceNotFound(physical_id)
            record["properties"] = copy.deepcopy(properties)
            self._save()
            attributes = dict(record["attributes"])
        self._respond(rule)
        return attributes

    def delete(self, physical_id: str, resource_type: str) -> None:
        rule = self._before("delete", resource_type)
        with self._lock:
            self._resources.pop(physical_id, None)
            self._save()
        self._respond(rule)

    def describe(self, physical_id: str, resource_type: str) -> dict[str, Any]:
        rule = self._before("describe", resource_type)
        with self._lock:
            record = self._resources.get(physical_id)
            if record is None:
                raise ResourceNotFound(physical_id)
            attributes = dict(record["attributes"])
        self._respond(rule)
        return attributes

    def find(
        self, resource_type: str, token: str, properties: dict[str, Any]
    ) -> CreateResult | None:
        with self._lock:
            for physical_id, record in self._resources.items():
                if record.get("token") == token and record["type"] == resource_type:
                    return CreateResult(physical_id, dict(record["attributes"]))
        return None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _before(self, action: str, resource_type: str) -> FailureRule | None:
        """Record the call and apply any matching injected failure.

        A rule with ``succeed_after_delay`` is returned so the caller can
        delay its response after acting.
        """
        with self._lock:
            self.calls.append((action, resource_type))
            rule = next((r for r in self._failures if r.matches(action, resource_type)), None)
            if rule is not None and rule.times is not None:
                rule.times -= 1

        if rule is None:
            return None
        if rule.succeed_after_delay:
            return rule
        if rule.delay_seconds:
            time.sleep(rule.delay_seconds)
        raise ProviderError(
            f"Injected {action} failure for {resource_type}",
            transient=rule.transient,
            code="Injected",
        )

    @staticmethod
    def _respond(rule: FailureRule | None) -> None:
        if rule is not None and rule.delay_seconds:
            time.sleep(rule.delay_seconds)

    def _attributes(self, resource_type: str, physical_id: str) -> dict[str, Any]:
        parts = resource_type.split("::")
        service = parts[1].lower() if len(parts) > 2 else _slug(resource_type)
        kind = parts[-1].lower()
        attributes: dict[str, Any] = {
            "Arn": (
                f"arn:{self._partition}:{service}:{self._region}:{self._account_id}:"
                f"{kind}/{physical_id}"
            ),
        }
        for name in sorted(self.capabilities(resource_type).attributes):
            attributes.setdefault(name, f"{physical_id}.{name}")
        return attributes

    def _load(self) -> None:
        if self._store_path is None or not self._store_path.exists():
            return
        try:
            data = json.loads(self._store_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ProviderError(f"Failed to read local provider store {self._store_path}: {e}") from e
        self._resources = data.get("resources", {})

    def _save(self) -> None:
        # Caller holds the lock
        if self._store_path is None:
            return
        self._store_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._store_path.with_suffix(".tmp")
        tmp.write_text(json.dumps({"resources": self._resources}, indent=2), encoding="utf-8")
        tmp.replace(self._store_path)
