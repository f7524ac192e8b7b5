"""Stack outputs and the process-wide export registry.

Outputs are evaluated after a successful apply from the final applied
attributes. An output with an ``Export`` publishes its value under the export
name; export names are unique across every stack known to the process, and
``Fn::ImportValue`` resolves against them.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .errors import DuplicateIdentifierError, UnresolvedReferenceError
from .graph import ResourceGraph
from .references import DeferredValue, ReferenceResolver
from .state import AppliedState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportEntry:
    stack_name: str
    value: Any


class ExportRegistry:
    """Thread-safe mapping of export name to exporting stack and value."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, ExportEntry] = {}

    def check(self, stack_name: str, names: list[str]) -> None:
        """Verify that ``stack_name`` may publish ``names``.

        Raises:
            DuplicateIdentifierError: If a name repeats in ``names`` or is
                already exported by another stack.
        """
        seen: set[str] = set()
        with self._lock:
            for name in names:
                if name in seen:
                    raise DuplicateIdentifierError(name, kind="export name")
                seen.add(name)
                entry = self._entries.get(name)
                if entry is not None and entry.stack_name != stack_name:
                    raise DuplicateIdentifierError(
                        f"{name} (already exported by stack '{entry.stack_name}')",
                        kind="export name",
                    )

    def register(self, stack_name: str, exports: Mapping[str, Any]) -> None:
        """Replace the exports published by ``stack_name``."""
        self.check(stack_name, list(exports))
        with self._lock:
            for name in [n for n, e in self._entries.items() if e.stack_name == stack_name]:
                del self._entries[name]
            for name, value in exports.items():
                self._entries[name] = ExportEntry(stack_name, value)
        logger.debug(
            "Registered exports",
            extra={"stack": stack_name, "exports": sorted(exports)},
        )

    def unregister(self, stack_name: str) -> None:
        with self._lock:
            for name in [n for n, e in self._entries.items() if e.stack_name == stack_name]:
                del self._entries[name]

    def exporter_of(self, name: str) -> str | None:
        with self._lock:
            entry = self._entries.get(name)
        return entry.stack_name if entry else None

    def values(self) -> dict[str, Any]:
        """Snapshot of export name -> value."""
        with self._lock:
            return {name: entry.value for name, entry in self._entries.items()}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_export_registry: ExportRegistry | None = None
_registry_lock = threading.Lock()


def get_export_registry() -> ExportRegistry:
    """Get the process-wide export registry."""
    global _export_registry
    with _registry_lock:
        if _export_registry is None:
            _export_registry = ExportRegistry()
        return _export_registry


def export_names(graph: ResourceGraph, resolver: ReferenceResolver) -> list[str]:
    """Resolve the export names a graph declares.

    Export names may only reference parameters and pseudo parameters, so
    they are known before anything is applied.

    Raises:
        UnresolvedReferenceError: If an export name depends on a resource.
    """
    names: list[str] = []
    for output in graph.outputs.values():
        if output.export_name is None:
            continue
        result = resolver.resolve_value(f"Outputs.{output.name}.Export", output.export_name, {})
        if isinstance(result, DeferredValue):
            raise UnresolvedReferenceError(
                f"Outputs.{output.name}.Export",
                ", ".join(sorted(result.targets)),
                "export names cannot reference resources",
            )
        names.append(str(result.value))
    return names


def evaluate_outputs(
    graph: ResourceGraph, resolver: ReferenceResolver, state: AppliedState
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Evaluate outputs against applied state.

    Returns:
        (outputs by name, exports by export name)

    Raises:
        UnresolvedReferenceError: If an output references a resource that has
            not been applied.
    """
    outputs: dict[str, Any] = {}
    exports: dict[str, Any] = {}
    for output in graph.outputs.values():
        source = f"Outputs.{output.name}"
        result = resolver.resolve_value(source, output.value, state.resources)
        if isinstance(result, DeferredValue):
            raise UnresolvedReferenceError(
                source, ", ".join(sorted(result.targets)), "target has not been applied"
            )
        outputs[output.name] = result.value

        if output.export_name is not None:
            name = resolver.resolve_value(f"{source}.Export", output.export_name, state.resources)
            if isinstance(name, DeferredValue):
                raise UnresolvedReferenceError(
                    f"{source}.Export", ", ".join(sorted(name.targets)), "target has not been applied"
                )
            if str(name.value) in exports:
                raise DuplicateIdentifierError(str(name.value), kind="export name")
            exports[str(name.value)] = result.value
    return outputs, exports
