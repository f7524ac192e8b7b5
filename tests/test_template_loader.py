"""Tests for template parsing and parameter binding."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from stackctl.errors import DuplicateIdentifierError, ValidationError
from stackctl.models import ParameterType
from stackctl.template_loader import (
    bind_parameters,
    load_template,
    parse_template,
    read_template_file,
)

MINIMAL = """
Resources:
  Bucket:
    Type: AWS::S3::Bucket
    Properties:
      BucketName: logs
"""


class TestParseTemplate:
    """Tests for parse_template()."""

    def test_minimal_template(self) -> None:
        document = parse_template(MINIMAL)

        assert list(document.resources) == ["Bucket"]
        assert document.resources["Bucket"].type == "AWS::S3::Bucket"
        assert document.resources["Bucket"].properties == {"BucketName": "logs"}

    def test_short_tags_become_long_form(self) -> None:
        """!Ref, !GetAtt and !Sub map onto the intrinsic function mappings."""
        document = parse_template(
            """
Resources:
  Group:
    Type: AWS::Logs::LogGroup
  Trail:
    Type: AWS::CloudTrail::Trail
    Properties:
      LogGroupArn: !GetAtt Group.Arn
      GroupName: !Ref Group
      Key: !Sub alias/${AWS::Region}
      Joined: !Join [",", [a, b]]
"""
        )

        properties = document.resources["Trail"].properties
        assert properties["LogGroupArn"] == {"Fn::GetAtt": ["Group", "Arn"]}
        assert properties["GroupName"] == {"Ref": "Group"}
        assert properties["Key"] == {"Fn::Sub": "alias/${AWS::Region}"}
        assert properties["Joined"] == {"Fn::Join": [",", ["a", "b"]]}

    def test_dates_stay_strings(self) -> None:
        """Policy versions such as 2012-10-17 are not parsed as dates."""
        document = parse_template(
            """
AWSTemplateFormatVersion: 2010-09-09
Resources:
  Role:
    Type: AWS::IAM::Role
    Properties:
      AssumeRolePolicyDocument:
        Version: 2012-10-17
"""
        )

        assert document.format_version == "2010-09-09"
        assert document.resources["Role"].properties["AssumeRolePolicyDocument"] == {
            "Version": "2012-10-17"
        }

    def test_single_depends_on_becomes_list(self) -> None:
        document = parse_template(
            """
Resources:
  A:
    Type: Test::A
  B:
    Type: Test::B
    DependsOn: A
"""
        )

        assert document.resources["B"].depends_on == ["A"]

    def test_duplicate_logical_id(self) -> None:
        with pytest.raises(DuplicateIdentifierError) as exc_info:
            parse_template(
                """
Resources:
  Bucket:
    Type: AWS::S3::Bucket
  Bucket:
    Type: AWS::S3::Bucket
"""
            )

        assert exc_info.value.identifier == "Bucket"
        assert exc_info.value.kind == "logical id"

    def test_duplicate_output(self) -> None:
        with pytest.raises(DuplicateIdentifierError, match="Duplicate output: Name"):
            parse_template(
                MINIMAL
                + """
Outputs:
  Name:
    Value: a
  Name:
    Value: b
"""
            )

    def test_duplicate_in_json(self) -> None:
        content = (
            '{"Resources": {"Bucket": {"Type": "AWS::S3::Bucket"},'
            ' "Bucket": {"Type": "AWS::S3::Bucket"}}}'
        )

        with pytest.raises(DuplicateIdentifierError):
            parse_template(content, is_json=True)

    def test_missing_resources(self) -> None:
        with pytest.raises(ValidationError, match="Validation failed"):
            parse_template("Description: nothing here\n")

    def test_empty_resources(self) -> None:
        with pytest.raises(ValidationError, match="at least one resource"):
            parse_template("Resources: {}\n")

    def test_non_alphanumeric_logical_id(self) -> None:
        with pytest.raises(ValidationError, match="alphanumeric"):
            parse_template("Resources:\n  my-bucket:\n    Type: AWS::S3::Bucket\n")

    @pytest.mark.parametrize("key", ["DependOn", "Propertes"])
    def test_misspelled_resource_key(self, key: str) -> None:
        """A typo in a resource must not silently drop its dependencies or properties."""
        with pytest.raises(ValidationError) as exc_info:
            parse_template(
                f"""
Resources:
  A:
    Type: Test::A
  B:
    Type: Test::B
    {key}: A
"""
            )

        assert any(p.startswith(f"Resources.B.{key}:") for p in exc_info.value.problems)

    def test_misspelled_output_key(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_template(MINIMAL + "Outputs:\n  Name:\n    Value: a\n    Exprot:\n      Name: n\n")

        assert any(p.startswith("Outputs.Name.Exprot:") for p in exc_info.value.problems)

    def test_resource_metadata_accepted(self) -> None:
        document = parse_template(
            "Resources:\n  A:\n    Type: Test::A\n    Metadata:\n      Owner: audit\n"
        )

        assert document.resources["A"].metadata == {"Owner": "audit"}

    def test_unknown_tag(self) -> None:
        with pytest.raises(ValidationError, match="Invalid YAML"):
            parse_template("Resources:\n  A:\n    Type: !Bogus x\n")

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ValidationError, match="must contain a mapping"):
            parse_template("- just\n- a list\n")


class TestReadTemplateFile:
    """Tests for read_template_file()."""

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="not found"):
            read_template_file(tmp_path / "missing.yaml")

    def test_size_limit(
        self, write_template: Callable[..., Path], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Oversized files are rejected before they are read."""
        monkeypatch.setattr("stackctl.template_loader.MAX_TEMPLATE_FILE_SIZE_BYTES", 10)
        path = write_template(MINIMAL)

        with pytest.raises(ValidationError, match="exceeds maximum size"):
            read_template_file(path)

    def test_json_suffix(self, write_template: Callable[..., Path]) -> None:
        path = write_template(
            '{"Resources": {"Bucket": {"Type": "AWS::S3::Bucket"}}}', "template.json"
        )

        document = read_template_file(path)

        assert "Bucket" in document.resources


class TestBindParameters:
    """Tests for bind_parameters()."""

    TEMPLATE = """
Parameters:
  Prefix:
    Type: String
    Default: mycompany
    AllowedPattern: ^[a-z]+$
    ConstraintDescription: lowercase letters only
  Days:
    Type: Number
    Default: 60
    AllowedValues: [30, 60, 90]
  Zones:
    Type: CommaDelimitedList
    Default: a,b
  Secret:
    Type: String
    NoEcho: true
Resources:
  Bucket:
    Type: AWS::S3::Bucket
"""

    def test_defaults_and_coercion(self) -> None:
        document = parse_template(self.TEMPLATE)

        bound = bind_parameters(document, {"Days": "90", "Secret": "hunter2"})

        assert bound["Prefix"].value == "mycompany"
        assert bound["Days"].value == 90
        assert bound["Days"].type == ParameterType.NUMBER
        assert bound["Zones"].value == ["a", "b"]
        assert bound["Secret"].display_value() == "****"

    def test_problems_are_collected(self) -> None:
        """Every parameter problem is reported, not just the first."""
        document = parse_template(self.TEMPLATE)

        with pytest.raises(ValidationError) as exc_info:
            bind_parameters(document, {"Prefix": "Bad_Name", "Days": "45", "Unknown": "x"})

        problems = exc_info.value.problems
        assert any(p.startswith("Unknown:") for p in problems)
        assert any("lowercase letters only" in p for p in problems)
        assert any(p.startswith("Days:") for p in problems)
        assert any(p.startswith("Secret:") and "no value" in p for p in problems)

    def test_number_coercion_failure(self) -> None:
        document = parse_template(self.TEMPLATE)

        with pytest.raises(ValidationError, match="expected a number"):
            bind_parameters(document, {"Days": "sixty", "Secret": "s"})

    def test_min_value(self) -> None:
        document = parse_template(
            """
Parameters:
  Days:
    Type: Number
    MinValue: 0
Resources:
  Bucket:
    Type: AWS::S3::Bucket
"""
        )

        with pytest.raises(ValidationError, match="less than MinValue"):
            bind_parameters(document, {"Days": "-1"})


class TestLoadTemplate:
    """Tests for load_template() with the audit trail fixture."""

    def test_audit_trail(self, audit_template: Path) -> None:
        loaded = load_template(audit_template)
        graph = loaded.build_graph()

        assert set(graph.nodes) == {
            "CloudTrail",
            "LogGroup",
            "LogGroupRole",
            "CloudTrailBucket",
            "CloudTrailBucketPolicy",
        }
        assert graph.nodes["CloudTrail"].depends_on == ["CloudTrailBucketPolicy"]
        assert loaded.parameters["DaysToExpire"].value == 60
        assert "CloudTrail" in graph.outputs

    def test_override_violates_allowed_values(self, audit_template: Path) -> None:
        with pytest.raises(ValidationError, match="DaysToExpire"):
            load_template(audit_template, {"DaysToExpire": "61"})
