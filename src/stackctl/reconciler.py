"""Stack reconciler.

Drives one stack's provider state toward its template:

1. Load the template and bind parameters (fatal on any violation)
2. Build the resource graph and annotate references
3. Order nodes (fatal on a cycle)
4. Read applied state, optionally refreshing it from the provider
5. Diff desired against applied into a change set
6. Execute the change set under the state lease, checkpointing every step
7. Evaluate outputs and publish exports

Steps 1-5 make no provider changes, so a structural error leaves no partial
state behind. ``plan`` stops after step 5 and never takes the lease.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .capabilities import CapabilityTable
from .config import Config
from .diff import ChangeSet, DiffEngine
from .errors import PartialApplyFailure, ProviderError, ResourceNotFound, StackError
from .executor import ExecutionResult, Executor
from .graph import ResourceGraph
from .outputs import ExportRegistry, evaluate_outputs, export_names, get_export_registry
from .planner import DependencyPlanner
from .providers import ResourceProvider, create_provider
from .provenance import ChangeSummary, RunRecord, get_provenance_logger
from .references import ReferenceResolver
from .state import AppliedState, StateStore, read_exports
from .template_loader import load_template

logger = logging.getLogger(__name__)


class RunAction(str, Enum):
    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"


@dataclass
class ReconcileResult:
    """Result of a single plan, apply or destroy."""

    stack_name: str
    action: RunAction = RunAction.PLAN
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    change_set: ChangeSet = field(default_factory=ChangeSet)
    changes_applied: int = 0
    outputs: dict[str, Any] = field(default_factory=dict)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def has_changes(self) -> bool:
        return not self.change_set.is_empty

    @property
    def partial_failure(self) -> bool:
        return isinstance(self.error, PartialApplyFailure)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "stack": self.stack_name,
            "action": self.action.value,
            "success": self.success,
            "duration_seconds": self.duration_seconds,
            "changes_applied": self.changes_applied,
            **self.change_set.to_dict(),
        }
        if self.outputs:
            data["outputs"] = self.outputs
        if self.error is not None:
            data["error"] = str(self.error)
            data["error_type"] = type(self.error).__name__
            if isinstance(self.error, PartialApplyFailure):
                data["nodes"] = self.error.summary()
        return data


@dataclass
class _Prepared:
    graph: ResourceGraph
    resolver: ReferenceResolver
    change_set: ChangeSet


def load_capabilities(config: Config) -> CapabilityTable:
    """Built-in capability rows, overridden by the configured file."""
    table = CapabilityTable.builtin()
    if config.capabilities_file is not None:
        table = table.merged(CapabilityTable.from_yaml(config.capabilities_file))
    return table


class Reconciler:
    """Plans and applies one stack.

    Args:
        config: Validated run configuration.
        provider: Provider collaborator; built from configuration if omitted.
        export_registry: Registry for exports; the process-wide one if omitted.
        state_store: State store; a file store under ``config.state_dir`` if
            omitted.
    """

    def __init__(
        self,
        config: Config,
        provider: ResourceProvider | None = None,
        export_registry: ExportRegistry | None = None,
        state_store: StateStore | None = None,
    ) -> None:
        self._config = config
        if provider is None:
            provider = create_provider(config, load_capabilities(config))
        self._provider = provider
        self._capabilities = provider.capability_table
        self._exports = export_registry or get_export_registry()
        self._store = state_store or StateStore(
            config.state_dir, config.stack_name, lease_ttl_seconds=config.lease_ttl_seconds
        )
        self._provenance = get_provenance_logger()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def state_store(self) -> StateStore:
        return self._store

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def plan(
        self, template_path: Path, overrides: dict[str, Any] | None = None
    ) -> ReconcileResult:
        """Compute the change set without touching provider state or the lease."""
        result = ReconcileResult(self._config.stack_name, RunAction.PLAN)
        record = self._start_record(RunAction.PLAN, template_path)
        try:
            state = self._store.read()
            if self._config.refresh:
                state, _ = await self._refresh(state)
            prepared = self._prepare(template_path, overrides, state)
            result.change_set = prepared.change_set
            self._provenance.log_change_set(record, prepared.change_set)
        except StackError as e:
            self._record_error(result, e)
        self._finish(result, record)
        return result

    async def apply(
        self,
        template_path: Path,
        overrides: dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconcileResult:
        """Apply the template, rolling back on failure unless disabled."""
        result = ReconcileResult(self._config.stack_name, RunAction.APPLY)
        record = self._start_record(RunAction.APPLY, template_path)
        try:
            with self._store.lease():
                state = self._store.read()
                refreshed = False
                if self._config.refresh:
                    state, refreshed = await self._refresh(state)

                prepared = self._prepare(template_path, overrides, state)
                result.change_set = prepared.change_set
                self._provenance.log_change_set(record, prepared.change_set)

                execution = await self._execute(
                    prepared.resolver, prepared.change_set, state, cancel_event
                )
                final = execution.state
                result.changes_applied = len(execution.applied)

                outputs, exports = evaluate_outputs(prepared.graph, prepared.resolver, final)
                if execution.applied or refreshed or outputs != final.outputs or exports != final.exports:
                    final.outputs = outputs
                    final.exports = exports
                    self._store.write(final)
                self._exports.register(self._config.stack_name, exports)
                result.outputs = outputs
                record.state_serial = final.serial
        except PartialApplyFailure as e:
            result.changes_applied = len(e.committed)
            self._record_error(result, e)
        except StackError as e:
            self._record_error(result, e)
        self._finish(result, record)
        return result

    async def destroy(self, cancel_event: asyncio.Event | None = None) -> ReconcileResult:
        """Delete every applied resource, dependents first."""
        result = ReconcileResult(self._config.stack_name, RunAction.DESTROY)
        record = self._start_record(RunAction.DESTROY, None)
        try:
            with self._store.lease():
                state = self._store.read()
                graph = ResourceGraph()
                resolver = ReferenceResolver(
                    graph,
                    pseudo_parameters=self._config.pseudo_parameters,
                    capabilities=self._capabilities,
                )
                change_set = DiffEngine(self._capabilities).diff(graph, [], resolver, state)
                result.change_set = change_set
                self._provenance.log_change_set(record, change_set)

                execution = await self._execute(resolver, change_set, state, cancel_event)
                final = execution.state
                final.outputs = {}
                final.exports = {}
                self._store.write(final)
                self._exports.unregister(self._config.stack_name)
                result.changes_applied = len(execution.applied)
                record.state_serial = final.serial
        except PartialApplyFailure as e:
            result.changes_applied = len(e.committed)
            self._record_error(result, e)
        except StackError as e:
            self._record_error(result, e)
        self._finish(result, record)
        return result

    def outputs(self) -> dict[str, Any]:
        """Outputs recorded by the last successful apply."""
        return dict(self._store.read().outputs)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _prepare(
        self, template_path: Path, overrides: dict[str, Any] | None, state: AppliedState
    ) -> _Prepared:
        loaded = load_template(template_path, overrides)
        graph = loaded.build_graph()

        self._load_exports()
        resolver = ReferenceResolver(
            graph,
            pseudo_parameters=self._config.pseudo_parameters,
            exports=self._exports.values(),
            capabilities=self._capabilities,
        )
        resolver.annotate()
        order = DependencyPlanner(graph).plan()
        self._exports.check(self._config.stack_name, export_names(graph, resolver))

        change_set = DiffEngine(self._capabilities).diff(graph, order, resolver, state)
        return _Prepared(graph=graph, resolver=resolver, change_set=change_set)

    def _load_exports(self) -> None:
        for stack_name, exports in read_exports(self._config.state_dir).items():
            if stack_name == self._config.stack_name:
                continue
            self._exports.register(stack_name, exports)

    async def _execute(
        self,
        resolver: ReferenceResolver,
        change_set: ChangeSet,
        state: AppliedState,
        cancel_event: asyncio.Event | None,
    ) -> ExecutionResult:
        """Run the executor while keeping the lease alive.

        On a partial failure the state the executor ends with is persisted,
        so the state file matches the provider even if a checkpoint failed.
        """
        cancel_event = cancel_event or asyncio.Event()
        heartbeat = asyncio.create_task(self._keep_lease(cancel_event))
        try:
            return await self._executor(resolver, cancel_event).execute(change_set, state)
        except PartialApplyFailure as e:
            if e.state is not None:
                self._save_failed_run(e.state)
            raise
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def _keep_lease(self, cancel_event: asyncio.Event) -> None:
        """Renew the lease at a third of its TTL; cancel the run if it is lost."""
        interval = self._store.lease_ttl_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                self._store.renew_lease()
            except StackError as e:
                logger.error(
                    "State lease lost; cancelling run",
                    extra={"stack": self._config.stack_name, "error": str(e)},
                )
                cancel_event.set()
                return

    def _save_failed_run(self, state: AppliedState) -> None:
        try:
            self._store.write(state)
        except StackError as e:
            logger.error(
                "Could not record state after partial apply",
                extra={"stack": self._config.stack_name, "error": str(e)},
            )

    def _executor(
        self, resolver: ReferenceResolver, cancel_event: asyncio.Event | None
    ) -> Executor:
        return Executor(
            self._provider,
            resolver,
            checkpoint=self._store.write,
            stack_name=self._config.stack_name,
            parallelism=self._config.parallelism,
            operation_timeout_seconds=self._config.operation_timeout_seconds,
            max_retries=self._config.max_retries,
            retry_backoff_base_seconds=self._config.retry_backoff_base_seconds,
            rollback_on_failure=self._config.rollback_on_failure,
            cancel_event=cancel_event,
        )

    async def _refresh(self, state: AppliedState) -> tuple[AppliedState, bool]:
        """Re-read applied resources from the provider.

        Resources the provider no longer has are dropped so the diff
        re-creates them.
        """
        refreshed = state.copy_state()
        changed = False
        loop = asyncio.get_running_loop()
        for logical_id, resource in state.resources.items():
            try:
                attributes = await asyncio.wait_for(
                    loop.run_in_executor(
                        None, self._provider.describe, resource.physical_id, resource.resource_type
                    ),
                    timeout=self._config.operation_timeout_seconds,
                )
            except ResourceNotFound:
                logger.warning(
                    "Applied resource missing from provider",
                    extra={"logical_id": logical_id, "physical_id": resource.physical_id},
                )
                del refreshed.resources[logical_id]
                changed = True
                continue
            except TimeoutError:
                raise ProviderError(
                    f"describe of '{logical_id}' timed out during refresh", transient=True
                ) from None
            if attributes != resource.attributes:
                refreshed.resources[logical_id].attributes = dict(attributes)
                changed = True
        return refreshed, changed

    def _start_record(self, action: RunAction, template_path: Path | None) -> RunRecord:
        return self._provenance.create_record(
            stack_name=self._config.stack_name,
            action=action.value,
            provider=self._provider.name,
            template_path=template_path,
        )

    def _record_error(self, result: ReconcileResult, error: StackError) -> None:
        result.error = error
        logger.error(
            "Reconciliation failed",
            extra={
                "stack": result.stack_name,
                "action": result.action.value,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )

    def _finish(self, result: ReconcileResult, record: RunRecord) -> None:
        result.end_time = datetime.now(UTC)
        record.change_summary = ChangeSummary.from_change_set(result.change_set)
        record.changes_applied = result.changes_applied
        record.duration_seconds = result.duration_seconds
        if result.error is not None:
            record.error = str(result.error)
            record.error_type = type(result.error).__name__
        self._provenance.log_record(record)
