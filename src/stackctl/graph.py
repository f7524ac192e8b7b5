"""Resource graph model.

Nodes are declared resources; edges are explicit ``DependsOn`` entries plus
the implicit edges the reference resolver discovers (a reference from A to B
means A depends on B). The graph performs no ordering itself; see planner.py.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .errors import CyclicDependencyError, DuplicateIdentifierError, UnresolvedReferenceError
from .models import ParameterType, TemplateDocument
from .references import parse_expression

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Parameter:
    """A template parameter with its bound, already validated value."""

    name: str
    type: ParameterType
    value: Any
    no_echo: bool = False

    def display_value(self) -> Any:
        return "****" if self.no_echo else self.value


@dataclass
class ResourceNode:
    """A declared resource.

    Attributes:
        logical_id: Unique id within the graph.
        resource_type: Type tag, interpreted by the provider.
        properties: Property name -> parsed expression.
        depends_on: Explicit dependency ids, in declaration order.
        references: Implicit dependency ids found in property references.
        index: Declaration position, used to break ordering ties.
    """

    logical_id: str
    resource_type: str
    properties: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    references: list[str] = field(default_factory=list)
    index: int = 0

    @property
    def dependencies(self) -> list[str]:
        """All dependency ids, explicit first, without duplicates."""
        result = list(self.depends_on)
        for ref in self.references:
            if ref not in result:
                result.append(ref)
        return result


@dataclass(frozen=True)
class OutputDefinition:
    name: str
    value: Any
    export_name: Any = None
    description: str | None = None


@dataclass
class ResourceGraph:
    """Desired-state graph of resources, parameters and outputs."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    parameters: dict[str, Parameter] = field(default_factory=dict)
    outputs: dict[str, OutputDefinition] = field(default_factory=dict)

    def add_parameter(self, parameter: Parameter) -> None:
        if parameter.name in self.parameters:
            raise DuplicateIdentifierError(parameter.name, kind="parameter")
        self.parameters[parameter.name] = parameter

    def add_node(
        self,
        logical_id: str,
        resource_type: str,
        properties: dict[str, Any] | None = None,
        depends_on: list[str] | None = None,
    ) -> ResourceNode:
        """Add a resource node. Properties are parsed into expressions.

        Raises:
            DuplicateIdentifierError: If the logical id is already declared
                (as a resource or a parameter).
            CyclicDependencyError: If the node depends on itself.
        """
        if logical_id in self.nodes or logical_id in self.parameters:
            raise DuplicateIdentifierError(logical_id)
        depends_on = list(dict.fromkeys(depends_on or []))
        if logical_id in depends_on:
            raise CyclicDependencyError([logical_id, logical_id])

        node = ResourceNode(
            logical_id=logical_id,
            resource_type=resource_type,
            properties={
                name: parse_expression(value, f"{logical_id}.{name}")
                for name, value in (properties or {}).items()
            },
            depends_on=depends_on,
            index=len(self.nodes),
        )
        self.nodes[logical_id] = node
        return node

    def add_output(
        self,
        name: str,
        value: Any,
        export_name: Any = None,
        description: str | None = None,
    ) -> None:
        if name in self.outputs:
            raise DuplicateIdentifierError(name, kind="output")
        self.outputs[name] = OutputDefinition(
            name=name,
            value=parse_expression(value, f"Outputs.{name}"),
            export_name=None if export_name is None else parse_expression(export_name),
            description=description,
        )

    def set_references(self, logical_id: str, references: list[str]) -> None:
        """Record implicit edges discovered by the reference resolver."""
        node = self.nodes[logical_id]
        if logical_id in references:
            raise CyclicDependencyError([logical_id, logical_id])
        node.references = list(references)

    def validate(self) -> None:
        """Check that every explicit dependency names a declared node.

        Raises:
            UnresolvedReferenceError: On a DependsOn naming an unknown id.
        """
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep not in self.nodes:
                    raise UnresolvedReferenceError(node.logical_id, dep, "DependsOn target is not declared")

    @classmethod
    def from_document(
        cls, document: TemplateDocument, parameters: dict[str, Parameter]
    ) -> ResourceGraph:
        """Build the graph from a parsed document and bound parameters."""
        graph = cls()
        for parameter in parameters.values():
            graph.add_parameter(parameter)
        for logical_id, spec in document.resources.items():
            graph.add_node(logical_id, spec.type, spec.properties, spec.depends_on)
        for name, output in document.outputs.items():
            graph.add_output(
                name,
                output.value,
                export_name=output.export.name if output.export else None,
                description=output.description,
            )
        graph.validate()
        logger.info(
            "Built resource graph",
            extra={
                "resources": len(graph.nodes),
                "parameters": len(graph.parameters),
                "outputs": len(graph.outputs),
            },
        )
        return graph
