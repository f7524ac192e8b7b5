"""Reference expressions and two-phase resolution.

Property values in a template may embed references to parameters, to other
resources' physical ids, or to attributes a resource reports once it exists.
Resolution is explicitly two-phase:

- A reference whose target is already applied (and is not being created or
  replaced in this run) resolves immediately to a ``ResolvedValue``.
- A reference whose target is pending creation yields a ``DeferredValue``
  naming the targets it waits for. The executor resolves it just-in-time once
  those targets have committed.

References never hold the referenced node, only its logical id.

SUPPORTED FUNCTIONS:
    Ref, Fn::GetAtt, Fn::Sub, Fn::Join, Fn::ImportValue
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import UnresolvedReferenceError, ValidationError

if TYPE_CHECKING:
    from .capabilities import CapabilityTable
    from .graph import ResourceGraph

logger = logging.getLogger(__name__)

INTRINSIC_FUNCTIONS = ("Ref", "Fn::GetAtt", "Fn::Sub", "Fn::Join", "Fn::ImportValue")

# ${Name}, ${Name.Attr} and the escaped literal form ${!Name}
SUB_PLACEHOLDER = re.compile(r"\$\{([^}]*)\}")


# =============================================================================
# Expression tree
# =============================================================================


@dataclass(frozen=True)
class Ref:
    """Reference to a parameter, pseudo parameter or resource physical id."""

    target: str


@dataclass(frozen=True)
class GetAtt:
    """Reference to a named attribute of a resource."""

    target: str
    attribute: str


@dataclass(frozen=True)
class Sub:
    """String interpolation. Parts are literal text or expressions."""

    parts: tuple[Any, ...]


@dataclass(frozen=True)
class Join:
    delimiter: str
    values: Any


@dataclass(frozen=True)
class ImportValue:
    name: Any


def is_pseudo_parameter(name: str) -> bool:
    return "::" in name


def parse_expression(value: Any, location: str = "") -> Any:
    """Parse a raw template value into an expression tree.

    Mappings with a single intrinsic-function key become expression nodes;
    other mappings and lists are parsed recursively; scalars pass through.

    Raises:
        ValidationError: If an intrinsic function is malformed.
    """
    if isinstance(value, dict):
        if len(value) == 1:
            (key, arg), = value.items()
            if key in INTRINSIC_FUNCTIONS:
                return _parse_function(key, arg, location)
        return {k: parse_expression(v, f"{location}.{k}" if location else k) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_expression(v, f"{location}[{i}]") for i, v in enumerate(value)]
    return value


def _parse_function(name: str, arg: Any, location: str) -> Any:
    def fail(message: str) -> ValidationError:
        return ValidationError(f"Invalid {name} at {location or '<root>'}: {message}")

    if name == "Ref":
        if not isinstance(arg, str) or not arg:
            raise fail("expected a non-empty string")
        return Ref(arg)

    if name == "Fn::GetAtt":
        if isinstance(arg, str):
            target, sep, attribute = arg.partition(".")
            if not sep:
                raise fail("expected 'LogicalId.Attribute'")
            return GetAtt(target, attribute)
        if isinstance(arg, list) and len(arg) == 2 and all(isinstance(a, str) for a in arg):
            return GetAtt(arg[0], arg[1])
        raise fail("expected 'LogicalId.Attribute' or [LogicalId, Attribute]")

    if name == "Fn::Sub":
        if isinstance(arg, str):
            return Sub(_parse_sub_template(arg, {}))
        if (
            isinstance(arg, list)
            and len(arg) == 2
            and isinstance(arg[0], str)
            and isinstance(arg[1], dict)
        ):
            variables = {k: parse_expression(v, f"{location}.{k}") for k, v in arg[1].items()}
            return Sub(_parse_sub_template(arg[0], variables))
        raise fail("expected a string or [string, {variables}]")

    if name == "Fn::Join":
        if isinstance(arg, list) and len(arg) == 2 and isinstance(arg[0], str):
            return Join(arg[0], parse_expression(arg[1], location))
        raise fail("expected [delimiter, [values]]")

    # Fn::ImportValue
    return ImportValue(parse_expression(arg, location))


def _parse_sub_template(text: str, variables: Mapping[str, Any]) -> tuple[Any, ...]:
    """Split a Sub template into literal text and placeholder expressions.

    Literal text is kept byte for byte; ``${!Name}`` becomes literal ``${Name}``.
    """
    parts: list[Any] = []
    literal: list[str] = []
    position = 0
    for match in SUB_PLACEHOLDER.finditer(text):
        literal.append(text[position : match.start()])
        position = match.end()
        name = match.group(1)
        if name.startswith("!"):
            literal.append("${" + name[1:] + "}")
            continue
        if literal:
            parts.append("".join(literal))
            literal = []
        if name in variables:
            parts.append(variables[name])
        elif "." in name and not is_pseudo_parameter(name):
            target, _, attribute = name.partition(".")
            parts.append(GetAtt(target, attribute))
        else:
            parts.append(Ref(name))
    literal.append(text[position:])
    joined = "".join(literal)
    if joined:
        parts.append(joined)
    return tuple(parts)


def iter_references(expr: Any) -> Iterator[Ref | GetAtt | ImportValue]:
    """Yield every reference node embedded in an expression."""
    if isinstance(expr, Ref | GetAtt):
        yield expr
    elif isinstance(expr, ImportValue):
        yield expr
        yield from iter_references(expr.name)
    elif isinstance(expr, Sub):
        for part in expr.parts:
            if not isinstance(part, str):
                yield from iter_references(part)
    elif isinstance(expr, Join):
        yield from iter_references(expr.values)
    elif isinstance(expr, dict):
        for v in expr.values():
            yield from iter_references(v)
    elif isinstance(expr, list):
        for v in expr:
            yield from iter_references(v)


# =============================================================================
# Resolution results
# =============================================================================


@dataclass(frozen=True)
class ResolvedValue:
    """A value whose every reference is known."""

    value: Any


@dataclass(frozen=True)
class DeferredValue:
    """A value that waits for resources created in this run.

    Never equal to an applied value: a property carrying a deferred value is
    always treated as changing.
    """

    targets: frozenset[str]
    expression: Any = field(compare=False, hash=False, default=None)

    def __repr__(self) -> str:
        return f"DeferredValue(targets={sorted(self.targets)})"


class _Pending:
    """Sentinel for a sub-expression that cannot be evaluated yet."""


_PENDING = _Pending()


class ReferenceResolver:
    """Resolves reference expressions against parameters and applied resources.

    Args:
        graph: The resource graph whose parameters and nodes are referenced.
        pseudo_parameters: Values for ``Namespace::Name`` pseudo parameters.
        exports: Export name -> value, for ImportValue.
        capabilities: Optional capability table used to reject GetAtt of
            attributes the resource type does not report.
    """

    def __init__(
        self,
        graph: ResourceGraph,
        *,
        pseudo_parameters: Mapping[str, Any] | None = None,
        exports: Mapping[str, Any] | None = None,
        capabilities: CapabilityTable | None = None,
    ) -> None:
        self._graph = graph
        self._pseudo = dict(pseudo_parameters or {})
        self._exports = exports if exports is not None else {}
        self._capabilities = capabilities

    def references_of(self, source: str, expr: Any) -> list[str]:
        """Return the logical ids an expression depends on, validating targets.

        Raises:
            UnresolvedReferenceError: If a target is not a parameter, pseudo
                parameter or declared resource, or an attribute is unknown.
        """
        targets: list[str] = []
        for ref in iter_references(expr):
            if isinstance(ref, ImportValue):
                continue
            target = ref.target
            if isinstance(ref, Ref):
                if target in self._graph.parameters or target in self._pseudo:
                    continue
                if is_pseudo_parameter(target):
                    raise UnresolvedReferenceError(source, target, "unknown pseudo parameter")
            if target not in self._graph.nodes:
                raise UnresolvedReferenceError(source, target, "no such resource or parameter")
            if isinstance(ref, GetAtt) and self._capabilities is not None:
                node = self._graph.nodes[target]
                row = self._capabilities.get(node.resource_type)
                if row.attributes and ref.attribute not in row.attributes:
                    raise UnresolvedReferenceError(
                        source,
                        f"{target}.{ref.attribute}",
                        f"{node.resource_type} has no attribute '{ref.attribute}'",
                    )
            if target not in targets:
                targets.append(target)
        return targets

    def annotate(self) -> None:
        """Validate every reference and record implicit edges on the graph."""
        for node in self._graph.nodes.values():
            implicit = self.references_of(node.logical_id, node.properties)
            self._graph.set_references(node.logical_id, implicit)
        for output in self._graph.outputs.values():
            self.references_of(f"Outputs.{output.name}", output.value)
            if output.export_name is not None:
                self.references_of(f"Outputs.{output.name}.Export", output.export_name)
        logger.debug(
            "Annotated references",
            extra={"edges": sum(len(n.references) for n in self._graph.nodes.values())},
        )

    def resolve_value(
        self,
        source: str,
        expr: Any,
        known: Mapping[str, Any],
        pending: frozenset[str] | set[str] = frozenset(),
    ) -> ResolvedValue | DeferredValue:
        """Resolve one expression.

        Args:
            source: Logical id (or output name) owning the expression, for errors.
            expr: Parsed expression.
            known: Logical id -> object exposing ``physical_id`` and ``attributes``.
            pending: Logical ids being created or replaced in this run; their
                current values must not be used.
        """
        waiting: set[str] = set()
        value = self._evaluate(source, expr, known, pending, waiting)
        if waiting:
            return DeferredValue(frozenset(waiting), expr)
        return ResolvedValue(value)

    def resolve_properties(
        self,
        logical_id: str,
        known: Mapping[str, Any],
        pending: frozenset[str] | set[str] = frozenset(),
    ) -> dict[str, ResolvedValue | DeferredValue]:
        """Resolve every top-level property of a node."""
        node = self._graph.nodes[logical_id]
        return {
            name: self.resolve_value(logical_id, expr, known, pending)
            for name, expr in node.properties.items()
        }

    def resolve_complete(
        self, logical_id: str, known: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Resolve every property of a node, requiring all values to be known.

        Raises:
            UnresolvedReferenceError: If a referenced resource has not been applied.
        """
        resolved: dict[str, Any] = {}
        for name, result in self.resolve_properties(logical_id, known).items():
            if isinstance(result, DeferredValue):
                missing = ", ".join(sorted(result.targets))
                raise UnresolvedReferenceError(logical_id, missing, "target has not been applied")
            resolved[name] = result.value
        return resolved

    def _evaluate(
        self,
        source: str,
        expr: Any,
        known: Mapping[str, Any],
        pending: frozenset[str] | set[str],
        waiting: set[str],
    ) -> Any:
        if isinstance(expr, Ref):
            return self._evaluate_ref(source, expr, known, pending, waiting)
        if isinstance(expr, GetAtt):
            return self._evaluate_getatt(source, expr, known, pending, waiting)
        if isinstance(expr, Sub):
            rendered: list[str] = []
            for part in expr.parts:
                if isinstance(part, str):
                    rendered.append(part)
                    continue
                value = self._evaluate(source, part, known, pending, waiting)
                if value is not _PENDING:
                    rendered.append(_stringify(value))
            return _PENDING if waiting else "".join(rendered)
        if isinstance(expr, Join):
            values = self._evaluate(source, expr.values, known, pending, waiting)
            if waiting:
                return _PENDING
            if not isinstance(values, list):
                raise ValidationError(f"Fn::Join in '{source}' requires a list of values")
            return expr.delimiter.join(_stringify(v) for v in values)
        if isinstance(expr, ImportValue):
            name = self._evaluate(source, expr.name, known, pending, waiting)
            if waiting:
                return _PENDING
            if name not in self._exports:
                raise UnresolvedReferenceError(source, str(name), "no such export")
            return self._exports[name]
        if isinstance(expr, dict):
            return {k: self._evaluate(source, v, known, pending, waiting) for k, v in expr.items()}
        if isinstance(expr, list):
            return [self._evaluate(source, v, known, pending, waiting) for v in expr]
        return expr

    def _evaluate_ref(
        self,
        source: str,
        expr: Ref,
        known: Mapping[str, Any],
        pending: frozenset[str] | set[str],
        waiting: set[str],
    ) -> Any:
        target = expr.target
        parameter = self._graph.parameters.get(target)
        if parameter is not None:
            return parameter.value
        if target in self._pseudo:
            return self._pseudo[target]
        if target not in self._graph.nodes:
            raise UnresolvedReferenceError(source, target, "no such resource or parameter")
        if target in pending or target not in known:
            waiting.add(target)
            return _PENDING
        return known[target].physical_id

    def _evaluate_getatt(
        self,
        source: str,
        expr: GetAtt,
        known: Mapping[str, Any],
        pending: frozenset[str] | set[str],
        waiting: set[str],
    ) -> Any:
        target = expr.target
        if target not in self._graph.nodes:
            raise UnresolvedReferenceError(source, target, "no such resource")
        if target in pending or target not in known:
            waiting.add(target)
            return _PENDING
        attributes = known[target].attributes
        if expr.attribute not in attributes:
            raise UnresolvedReferenceError(
                source,
                f"{target}.{expr.attribute}",
                "attribute not reported by provider",
            )
        return attributes[expr.attribute]


def _stringify(value: Any) -> str:
    """Render a resolved value for string interpolation."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(_stringify(v) for v in value)
    return str(value)
