"""Tests for the resource graph model."""

from __future__ import annotations

import pytest

from stackctl.errors import CyclicDependencyError, DuplicateIdentifierError, UnresolvedReferenceError
from stackctl.graph import Parameter, ResourceGraph
from stackctl.models import ParameterType
from stackctl.references import GetAtt, Ref


class TestResourceGraph:
    """Tests for ResourceGraph construction."""

    def test_add_node_parses_properties(self) -> None:
        graph = ResourceGraph()

        node = graph.add_node(
            "Policy",
            "AWS::S3::BucketPolicy",
            {"Bucket": {"Ref": "Bucket"}, "Arn": {"Fn::GetAtt": ["Bucket", "Arn"]}},
        )

        assert node.properties == {"Bucket": Ref("Bucket"), "Arn": GetAtt("Bucket", "Arn")}
        assert node.index == 0

    def test_declaration_index(self) -> None:
        graph = ResourceGraph()
        graph.add_node("A", "Test::A")
        second = graph.add_node("B", "Test::B")

        assert second.index == 1

    def test_duplicate_logical_id(self) -> None:
        graph = ResourceGraph()
        graph.add_node("A", "Test::A")

        with pytest.raises(DuplicateIdentifierError, match="Duplicate logical id: A"):
            graph.add_node("A", "Test::A")

    def test_logical_id_clashes_with_parameter(self) -> None:
        """Refs could not tell a parameter from a resource of the same name."""
        graph = ResourceGraph()
        graph.add_parameter(Parameter("Name", ParameterType.STRING, "x"))

        with pytest.raises(DuplicateIdentifierError):
            graph.add_node("Name", "Test::A")

    def test_duplicate_parameter(self) -> None:
        graph = ResourceGraph()
        graph.add_parameter(Parameter("Name", ParameterType.STRING, "x"))

        with pytest.raises(DuplicateIdentifierError, match="Duplicate parameter"):
            graph.add_parameter(Parameter("Name", ParameterType.STRING, "y"))

    def test_duplicate_output(self) -> None:
        graph = ResourceGraph()
        graph.add_output("Out", "a")

        with pytest.raises(DuplicateIdentifierError, match="Duplicate output"):
            graph.add_output("Out", "b")

    def test_self_dependency(self) -> None:
        graph = ResourceGraph()

        with pytest.raises(CyclicDependencyError, match="A -> A"):
            graph.add_node("A", "Test::A", depends_on=["A"])

    def test_self_reference(self) -> None:
        graph = ResourceGraph()
        graph.add_node("A", "Test::A")

        with pytest.raises(CyclicDependencyError):
            graph.set_references("A", ["A"])

    def test_validate_unknown_depends_on(self) -> None:
        graph = ResourceGraph()
        graph.add_node("A", "Test::A", depends_on=["Ghost"])

        with pytest.raises(UnresolvedReferenceError, match="Ghost"):
            graph.validate()

    def test_dependencies_merge_explicit_and_implicit(self) -> None:
        """Explicit edges come first; duplicates are dropped."""
        graph = ResourceGraph()
        graph.add_node("A", "Test::A")
        graph.add_node("B", "Test::B")
        graph.add_node("C", "Test::C", depends_on=["B", "B"])
        graph.set_references("C", ["A", "B"])

        assert graph.nodes["C"].depends_on == ["B"]
        assert graph.nodes["C"].dependencies == ["B", "A"]

    def test_export_name_is_parsed(self) -> None:
        graph = ResourceGraph()
        graph.add_output("Out", {"Ref": "A"}, export_name={"Fn::Sub": "${AWS::StackName}-out"})

        output = graph.outputs["Out"]
        assert output.value == Ref("A")
        assert output.export_name is not None
