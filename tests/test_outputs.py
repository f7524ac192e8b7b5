"""Tests for outputs and the export registry."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from stackctl.errors import DuplicateIdentifierError, UnresolvedReferenceError
from stackctl.outputs import ExportRegistry, evaluate_outputs, export_names, get_export_registry
from stackctl.state import AppliedState, ResourceState

TEMPLATE = """
Resources:
  Bucket:
    Type: AWS::S3::Bucket
    Properties:
      BucketName: audit-logs
Outputs:
  BucketName:
    Value: !Ref Bucket
    Export:
      Name: !Sub ${AWS::StackName}-bucket
  BucketArn:
    Value: !GetAtt Bucket.Arn
"""


def applied() -> AppliedState:
    return AppliedState(
        stack_name="audit",
        resources={
            "Bucket": ResourceState(
                logical_id="Bucket",
                resource_type="AWS::S3::Bucket",
                physical_id="audit-logs",
                attributes={"Arn": "arn:aws:s3:::audit-logs"},
            )
        },
    )


class TestExportRegistry:
    """Tests for ExportRegistry."""

    def test_register_and_lookup(self) -> None:
        registry = ExportRegistry()

        registry.register("network", {"VpcId": "vpc-1"})

        assert registry.exporter_of("VpcId") == "network"
        assert registry.values() == {"VpcId": "vpc-1"}

    def test_register_replaces_stack_exports(self) -> None:
        registry = ExportRegistry()
        registry.register("network", {"VpcId": "vpc-1", "SubnetId": "subnet-1"})

        registry.register("network", {"VpcId": "vpc-2"})

        assert registry.values() == {"VpcId": "vpc-2"}

    def test_name_taken_by_another_stack(self) -> None:
        registry = ExportRegistry()
        registry.register("network", {"VpcId": "vpc-1"})

        with pytest.raises(DuplicateIdentifierError, match="already exported by stack 'network'"):
            registry.check("audit", ["VpcId"])

    def test_duplicate_within_stack(self) -> None:
        with pytest.raises(DuplicateIdentifierError, match="Duplicate export name: VpcId"):
            ExportRegistry().check("audit", ["VpcId", "VpcId"])

    def test_unregister(self) -> None:
        registry = ExportRegistry()
        registry.register("network", {"VpcId": "vpc-1"})

        registry.unregister("network")

        assert registry.exporter_of("VpcId") is None

    def test_process_wide_singleton(self) -> None:
        assert get_export_registry() is get_export_registry()


class TestOutputs:
    """Tests for export_names() and evaluate_outputs()."""

    def test_export_names(self, compile_template: Callable) -> None:
        compiled = compile_template(TEMPLATE)

        assert export_names(compiled.graph, compiled.resolver) == ["audit-bucket"]

    def test_export_name_cannot_reference_resources(self, compile_template: Callable) -> None:
        compiled = compile_template(
            """
Resources:
  Bucket:
    Type: AWS::S3::Bucket
Outputs:
  Name:
    Value: x
    Export:
      Name: !Ref Bucket
"""
        )

        with pytest.raises(UnresolvedReferenceError, match="cannot reference resources"):
            export_names(compiled.graph, compiled.resolver)

    def test_evaluate_outputs(self, compile_template: Callable) -> None:
        compiled = compile_template(TEMPLATE)

        outputs, exports = evaluate_outputs(compiled.graph, compiled.resolver, applied())

        assert outputs == {"BucketName": "audit-logs", "BucketArn": "arn:aws:s3:::audit-logs"}
        assert exports == {"audit-bucket": "audit-logs"}

    def test_evaluate_outputs_requires_applied_targets(self, compile_template: Callable) -> None:
        compiled = compile_template(TEMPLATE)

        with pytest.raises(UnresolvedReferenceError, match="has not been applied"):
            evaluate_outputs(compiled.graph, compiled.resolver, AppliedState(stack_name="audit"))
