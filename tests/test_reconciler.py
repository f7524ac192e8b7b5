"""End-to-end tests for the stack reconciler with the in-memory provider."""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from stackctl.config import Config
from stackctl.diff import ChangeAction
from stackctl.errors import (
    DuplicateIdentifierError,
    LeaseHeldError,
    PartialApplyFailure,
    StackError,
    ValidationError,
)
from stackctl.outputs import ExportRegistry
from stackctl.providers.local import InMemoryProvider
from stackctl.reconciler import Reconciler, RunAction
from stackctl.state import AppliedState, StateStore

AUDIT_RESOURCES = ["LogGroup", "LogGroupRole", "CloudTrailBucket", "CloudTrailBucketPolicy", "CloudTrail"]


@pytest.fixture
def registry() -> ExportRegistry:
    return ExportRegistry()


@pytest.fixture
def reconciler(config: Config, provider: InMemoryProvider, registry: ExportRegistry) -> Reconciler:
    return Reconciler(config, provider=provider, export_registry=registry)


class TestPlan:
    """Tests for Reconciler.plan()."""

    @pytest.mark.asyncio
    async def test_plan_fresh_stack(
        self, reconciler: Reconciler, audit_template: Path, provider: InMemoryProvider
    ) -> None:
        result = await reconciler.plan(audit_template)

        assert result.success
        assert result.action == RunAction.PLAN
        assert result.change_set.logical_ids() == AUDIT_RESOURCES
        assert all(c.action == ChangeAction.CREATE for c in result.change_set)
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_plan_does_not_take_lease(
        self, reconciler: Reconciler, audit_template: Path, config: Config
    ) -> None:
        """Plan works while another writer holds the lease."""
        other = StateStore(config.state_dir, config.stack_name, owner="someone-else")
        other.acquire_lease()

        result = await reconciler.plan(audit_template)

        assert result.success
        assert other.read_lease() is not None
        assert other.read_lease().owner == "someone-else"

    @pytest.mark.asyncio
    async def test_invalid_parameters_make_no_calls(
        self, reconciler: Reconciler, audit_template: Path, provider: InMemoryProvider
    ) -> None:
        result = await reconciler.plan(audit_template, {"DaysToInfrequentAccess": "90"})

        assert isinstance(result.error, ValidationError)
        assert "must be less than" in str(result.error)
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_cycle_is_reported(
        self, reconciler: Reconciler, write_template: Callable[..., Path]
    ) -> None:
        path = write_template(
            """
Resources:
  A:
    Type: Test::A
    Properties:
      Peer: !Ref B
  B:
    Type: Test::B
    Properties:
      Peer: !Ref A
"""
        )

        result = await reconciler.plan(path)

        assert not result.success
        assert "A -> B -> A" in str(result.error)


class TestApply:
    """Tests for Reconciler.apply()."""

    @pytest.mark.asyncio
    async def test_apply_audit_trail(
        self,
        reconciler: Reconciler,
        audit_template: Path,
        provider: InMemoryProvider,
        registry: ExportRegistry,
    ) -> None:
        result = await reconciler.apply(audit_template)

        assert result.success, result.error
        assert result.changes_applied == 5
        assert result.outputs == {"CloudTrail": "mycompany"}
        assert registry.exporter_of("CloudTrail") == "audit"
        assert set(provider.resources()) >= {"mycompany", "mycompany-cloudtrail", "cloudtrail-logs"}

        state = reconciler.state_store.read()
        assert set(state.resources) == set(AUDIT_RESOURCES)
        assert state.exports == {"CloudTrail": "mycompany"}
        role = state.resources["LogGroupRole"].properties
        statement = role["Policies"][0]["PolicyDocument"]["Statement"][0]
        assert statement["Resource"] == (
            "arn:aws:logs:local:000000000000:log-group:cloudtrail-logs:log-stream:000000000000_CloudTrail_*"
        )

    @pytest.mark.asyncio
    async def test_plan_after_apply_is_empty(self, reconciler: Reconciler, audit_template: Path) -> None:
        await reconciler.apply(audit_template)

        result = await reconciler.plan(audit_template)

        assert result.success
        assert not result.has_changes

    @pytest.mark.asyncio
    async def test_reapply_is_a_no_op(self, reconciler: Reconciler, audit_template: Path) -> None:
        """A second apply changes nothing, including the state serial."""
        await reconciler.apply(audit_template)
        serial = reconciler.state_store.read().serial

        result = await reconciler.apply(audit_template)

        assert result.success
        assert result.changes_applied == 0
        assert reconciler.state_store.read().serial == serial

    @pytest.mark.asyncio
    async def test_parameter_change_updates_in_place(
        self, reconciler: Reconciler, audit_template: Path
    ) -> None:
        await reconciler.apply(audit_template)

        result = await reconciler.apply(audit_template, {"DaysToExpire": "90"})

        assert result.success
        assert [(c.logical_id, c.action) for c in result.change_set] == [
            ("LogGroup", ChangeAction.UPDATE),
            ("CloudTrailBucket", ChangeAction.UPDATE),
        ]
        state = reconciler.state_store.read()
        assert state.resources["LogGroup"].properties["RetentionInDays"] == 90

    @pytest.mark.asyncio
    async def test_prefix_change_replaces(
        self, reconciler: Reconciler, audit_template: Path, provider: InMemoryProvider
    ) -> None:
        await reconciler.apply(audit_template)

        result = await reconciler.apply(audit_template, {"OrganizationPrefix": "acme"})

        assert result.success, result.error
        actions = {c.logical_id: c.action for c in result.change_set}
        assert actions["CloudTrailBucket"] == ChangeAction.REPLACE
        assert actions["CloudTrailBucketPolicy"] == ChangeAction.REPLACE
        assert actions["CloudTrail"] == ChangeAction.REPLACE
        stored = provider.resources()
        assert "acme-cloudtrail" in stored
        assert "mycompany-cloudtrail" not in stored
        assert result.outputs == {"CloudTrail": "acme"}

    @pytest.mark.asyncio
    async def test_failure_rolls_back_and_persists(
        self, reconciler: Reconciler, audit_template: Path, provider: InMemoryProvider
    ) -> None:
        provider.inject_failure("create", "AWS::CloudTrail::Trail")

        result = await reconciler.apply(audit_template)

        assert result.partial_failure
        assert result.to_dict()["nodes"]["failed"].keys() == {"CloudTrail"}
        assert provider.resources() == {}
        assert reconciler.state_store.read().resources == {}
        assert not reconciler.state_store.lease_path.exists()

    @pytest.mark.asyncio
    async def test_lease_held_elsewhere(
        self, reconciler: Reconciler, audit_template: Path, config: Config, provider: InMemoryProvider
    ) -> None:
        StateStore(config.state_dir, config.stack_name, owner="someone-else").acquire_lease()

        result = await reconciler.apply(audit_template)

        assert isinstance(result.error, LeaseHeldError)
        assert not result.partial_failure
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_export_collision(
        self, reconciler: Reconciler, audit_template: Path, registry: ExportRegistry
    ) -> None:
        registry.register("other", {"CloudTrail": "theirs"})

        result = await reconciler.apply(audit_template)

        assert isinstance(result.error, DuplicateIdentifierError)
        assert "already exported by stack 'other'" in str(result.error)

    @pytest.mark.asyncio
    async def test_exports_seeded_from_state_dir(
        self,
        config: Config,
        provider: InMemoryProvider,
        registry: ExportRegistry,
        write_template: Callable[..., Path],
    ) -> None:
        """ImportValue sees exports of stacks applied by earlier processes."""
        exporter = Reconciler(
            dataclasses.replace(config, stack_name="shared"), provider=provider, export_registry=ExportRegistry()
        )
        shared = write_template(
            """
Resources:
  Bucket:
    Type: AWS::S3::Bucket
    Properties:
      BucketName: shared-logs
Outputs:
  BucketName:
    Value: !Ref Bucket
    Export:
      Name: SharedBucket
""",
            "shared.yaml",
        )
        consumer = write_template(
            """
Resources:
  Trail:
    Type: AWS::CloudTrail::Trail
    Properties:
      TrailName: consumer
      S3BucketName: !ImportValue SharedBucket
""",
            "consumer.yaml",
        )
        assert (await exporter.apply(shared)).success

        result = await Reconciler(config, provider=provider, export_registry=registry).apply(consumer)

        assert result.success, result.error
        assert provider.resources()["consumer"]["properties"]["S3BucketName"] == "shared-logs"


class TestRefresh:
    """Tests for refreshing applied state from the provider."""

    @pytest.mark.asyncio
    async def test_missing_resource_recreated(
        self, config: Config, provider: InMemoryProvider, registry: ExportRegistry, audit_template: Path
    ) -> None:
        await Reconciler(config, provider=provider, export_registry=registry).apply(audit_template)
        provider.remove_out_of_band("cloudtrail-logs")
        refreshing = Reconciler(
            dataclasses.replace(config, refresh=True), provider=provider, export_registry=registry
        )

        plan = await refreshing.plan(audit_template)

        assert plan.success
        log_group = plan.change_set.get("LogGroup")
        assert log_group is not None
        assert log_group.action == ChangeAction.CREATE

        result = await refreshing.apply(audit_template)

        assert result.success, result.error
        assert "cloudtrail-logs" in provider.resources()


class TestDestroy:
    """Tests for Reconciler.destroy()."""

    @pytest.mark.asyncio
    async def test_destroy(
        self,
        reconciler: Reconciler,
        audit_template: Path,
        provider: InMemoryProvider,
        registry: ExportRegistry,
    ) -> None:
        await reconciler.apply(audit_template)
        provider.calls.clear()

        result = await reconciler.destroy()

        assert result.success, result.error
        assert result.changes_applied == 5
        assert all(c.action == ChangeAction.DELETE for c in result.change_set)
        assert provider.calls[0] == ("delete", "AWS::CloudTrail::Trail")
        assert provider.resources() == {}
        assert reconciler.outputs() == {}
        assert registry.exporter_of("CloudTrail") is None


BUCKET_AND_POLICY = """
Resources:
  Bucket:
    Type: AWS::S3::Bucket
    Properties:
      BucketName: audit-logs
  Policy:
    Type: AWS::S3::BucketPolicy
    Properties:
      Bucket: !Ref Bucket
"""


class FlakyStateStore(StateStore):
    """State store whose numbered writes fail."""

    def __init__(self, *args: Any, failing_writes: set[int], **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._failing_writes = failing_writes
        self.writes = 0

    def write(self, state: AppliedState) -> None:
        self.writes += 1
        if self.writes in self._failing_writes:
            raise StackError("state volume unavailable")
        super().write(state)


class TestStateDurability:
    """Tests for state and lease handling across long or failing runs."""

    @pytest.mark.asyncio
    async def test_run_longer_than_lease_ttl(
        self,
        config: Config,
        provider: InMemoryProvider,
        registry: ExportRegistry,
        write_template: Callable[..., Path],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Each create outlasts most of the TTL; the lease is kept alive."""
        create = provider.create

        def slow_create(*args: Any, **kwargs: Any) -> Any:
            time.sleep(0.8)
            return create(*args, **kwargs)

        monkeypatch.setattr(provider, "create", slow_create)
        store = StateStore(config.state_dir, config.stack_name, lease_ttl_seconds=1)
        reconciler = Reconciler(config, provider=provider, export_registry=registry, state_store=store)

        result = await reconciler.apply(write_template(BUCKET_AND_POLICY))

        assert result.success, result.error
        assert set(store.read().resources) == {"Bucket", "Policy"}
        assert not store.lease_path.exists()

    @pytest.mark.asyncio
    async def test_failed_checkpoints_repaired_after_rollback(
        self,
        config: Config,
        provider: InMemoryProvider,
        registry: ExportRegistry,
        write_template: Callable[..., Path],
    ) -> None:
        """Checkpoints fail mid-run; the state left on disk still matches the provider."""
        store = FlakyStateStore(config.state_dir, config.stack_name, failing_writes={2, 3, 4})
        reconciler = Reconciler(config, provider=provider, export_registry=registry, state_store=store)

        result = await reconciler.apply(write_template(BUCKET_AND_POLICY))

        assert result.partial_failure
        assert provider.resources() == {}
        assert store.read().resources == {}

    @pytest.mark.asyncio
    async def test_lost_lease_cancels_run(
        self,
        config: Config,
        provider: InMemoryProvider,
        registry: ExportRegistry,
        write_template: Callable[..., Path],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Another writer takes the lease; no further operations start."""
        store = StateStore(config.state_dir, config.stack_name, lease_ttl_seconds=1, owner="first")
        create = provider.create

        def create_then_lose_lease(*args: Any, **kwargs: Any) -> Any:
            created = create(*args, **kwargs)
            store.lease_path.unlink()
            StateStore(config.state_dir, config.stack_name, owner="second").acquire_lease()
            time.sleep(0.5)
            return created

        monkeypatch.setattr(provider, "create", create_then_lose_lease)
        reconciler = Reconciler(
            dataclasses.replace(config, rollback_on_failure=False),
            provider=provider,
            export_registry=registry,
            state_store=store,
        )

        result = await reconciler.apply(write_template(BUCKET_AND_POLICY))

        assert result.partial_failure
        assert isinstance(result.error, PartialApplyFailure)
        assert result.error.not_applied == ["Policy"]
        assert [c for c in provider.calls if c[0] == "create"] == [("create", "AWS::S3::Bucket")]
        assert store.read_lease().owner == "second"
