"""Change set execution with bounded parallelism and rollback.

The executor applies a change set against the provider in two phases:

1. Create, Update and Replace operations, dependencies first. An operation
   starts only after every predecessor in this phase has committed. Deferred
   property values are resolved just before the provider call, from the
   attributes committed so far.
2. Delete operations, plus retirement of originals replaced with
   create-before-delete, dependents first.

Provider calls are blocking; they run in the loop's default thread pool under
a per-call deadline. Transient provider errors are retried with exponential
backoff and jitter. A timeout is an operation failure, but the executor first
waits one more deadline for the abandoned call, then re-queries the provider
(``find`` after a create, ``describe`` after a delete) so a call that
completed anyway is recorded and rolled back rather than created twice. A
call still running after that is reported as inconsistent.

Every committed step is appended to a journal and checkpointed through the
caller's callback. On failure or cancellation no new operations start;
in-flight calls finish, then the journal is compensated in reverse commit
order (created -> delete, updated -> revert, deleted -> recreate).
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_PARALLELISM,
    DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
)
from .diff import Change, ChangeAction, ChangeSet, ReplaceStrategy
from .errors import PartialApplyFailure, ProviderError, ResourceNotFound, StackError, ValidationError
from .providers.base import CreateResult, ResourceProvider
from .references import ReferenceResolver
from .state import AppliedState, ResourceState

logger = logging.getLogger(__name__)

Checkpoint = Callable[[AppliedState], None]


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    RETIRE = "retire"


class CommitKind(str, Enum):
    """Kinds of journal entry; each has one compensation."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass
class Operation:
    """One schedulable unit of work.

    Attributes:
        change: The change being applied.
        kind: What the operation does to the provider.
        waits_for: Logical ids in the same phase that must commit first.
    """

    change: Change
    kind: OperationKind
    waits_for: set[str] = field(default_factory=set)

    @property
    def logical_id(self) -> str:
        return self.change.logical_id


@dataclass
class Commit:
    """A journal entry for a provider change made in this run."""

    logical_id: str
    kind: CommitKind
    before: ResourceState | None = None
    after: ResourceState | None = None


@dataclass
class ExecutionResult:
    """Outcome of a successful run."""

    state: AppliedState
    applied: list[str] = field(default_factory=list)


class OperationTimeout(StackError):
    """A provider call exceeded its deadline."""

    def __init__(self, logical_id: str, action: str, timeout_seconds: float) -> None:
        self.logical_id = logical_id
        super().__init__(f"{action} of '{logical_id}' timed out after {timeout_seconds:g}s")


class DeadlineExceeded(TimeoutError):
    """A provider call missed its deadline; ``worker`` is still the live call."""

    def __init__(self, worker: asyncio.Future[Any]) -> None:
        super().__init__()
        self.worker = worker


def _consume_result(worker: asyncio.Future[Any]) -> None:
    # Marks a late failure as retrieved
    if not worker.cancelled():
        worker.exception()


def build_operations(change_set: ChangeSet) -> tuple[list[Operation], list[Operation]]:
    """Split a change set into the two execution phases."""
    first: list[Operation] = []
    second: list[Operation] = []

    for change in change_set:
        if change.action == ChangeAction.CREATE:
            first.append(Operation(change, OperationKind.CREATE))
        elif change.action == ChangeAction.UPDATE:
            first.append(Operation(change, OperationKind.UPDATE))
        elif change.action == ChangeAction.REPLACE:
            first.append(Operation(change, OperationKind.REPLACE))
            if change.strategy == ReplaceStrategy.CREATE_BEFORE_DELETE:
                second.append(Operation(change, OperationKind.RETIRE))
        else:
            second.append(Operation(change, OperationKind.DELETE))

    first_ids = {op.logical_id for op in first}
    for op in first:
        op.waits_for = {dep for dep in op.change.depends_on if dep in first_ids}

    # Removal runs dependents first: X waits for every removal of a node
    # whose applied snapshot depended on X.
    for op in second:
        op.waits_for = {
            other.logical_id
            for other in second
            if other is not op
            and other.change.prior is not None
            and op.logical_id in other.change.prior.depends_on
        }
    return first, second


class Executor:
    """Applies a change set and maintains the applied state.

    Args:
        provider: Provider collaborator.
        resolver: Resolver bound to the desired graph.
        checkpoint: Called with the applied state after every committed step.
        stack_name: Used to derive idempotency tokens.
        parallelism: Maximum concurrent provider operations.
        operation_timeout_seconds: Deadline for each provider call.
        max_retries: Retries for transient provider errors.
        retry_backoff_base_seconds: Base of the exponential backoff.
        rollback_on_failure: Compensate committed steps when the run fails.
        cancel_event: Set to stop scheduling and roll back.
    """

    def __init__(
        self,
        provider: ResourceProvider,
        resolver: ReferenceResolver,
        *,
        checkpoint: Checkpoint | None = None,
        stack_name: str = "stack",
        parallelism: int = DEFAULT_PARALLELISM,
        operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
        rollback_on_failure: bool = True,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._provider = provider
        self._resolver = resolver
        self._checkpoint = checkpoint
        self._stack_name = stack_name
        self._parallelism = max(1, parallelism)
        self._timeout = operation_timeout_seconds
        self._max_retries = max_retries
        self._backoff_base = retry_backoff_base_seconds
        self._rollback_on_failure = rollback_on_failure
        self._cancel_event = cancel_event or asyncio.Event()

        self._state: AppliedState = AppliedState(stack_name=stack_name)
        self._journal: list[Commit] = []
        self._failed: dict[str, str] = {}
        self._unknown: dict[str, str] = {}
        self._reverted: list[str] = []
        self._inconsistent: dict[str, str] = {}
        self._recreated: dict[str, ResourceState] = {}
        self._value_remap: dict[str, Any] = {}

    async def execute(self, change_set: ChangeSet, state: AppliedState) -> ExecutionResult:
        """Apply ``change_set`` starting from ``state``.

        The passed state is not mutated; the returned (or attached to the
        failure) state reflects what the provider actually holds.

        Raises:
            PartialApplyFailure: If any operation failed or the run was
                cancelled. Rollback has been attempted when enabled.
        """
        self._state = state.copy_state()
        first, second = build_operations(change_set)

        logger.info(
            "Executing change set",
            extra={
                "stack": self._stack_name,
                "operations": len(first) + len(second),
                "parallelism": self._parallelism,
            },
        )

        await self._run_phase(first)
        if not self._halted():
            await self._run_phase(second)

        if not self._halted():
            applied = list(dict.fromkeys(c.logical_id for c in self._journal))
            logger.info(
                "Change set applied",
                extra={"stack": self._stack_name, "applied": applied},
            )
            return ExecutionResult(state=self._state, applied=applied)

        if self._rollback_on_failure:
            await self._rollback()

        raise self._failure(change_set)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _halted(self) -> bool:
        return bool(self._failed or self._unknown) or self._cancel_event.is_set()

    async def _run_phase(self, operations: list[Operation]) -> None:
        pending = list(operations)
        completed: set[str] = set()
        running: dict[asyncio.Task[bool], Operation] = {}

        while pending or running:
            if not self._halted():
                for op in list(pending):
                    if len(running) >= self._parallelism:
                        break
                    if not op.waits_for <= completed:
                        continue
                    pending.remove(op)
                    task = asyncio.create_task(self._run_operation(op))
                    running[task] = op

            if not running:
                # Halted, or nothing left can become ready
                break

            done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                op = running.pop(task)
                if task.result():
                    completed.add(op.logical_id)

    async def _run_operation(self, op: Operation) -> bool:
        lid = op.logical_id
        logger.info(
            "Starting operation",
            extra={"logical_id": lid, "operation": op.kind.value, "type": op.change.resource_type},
        )
        try:
            if op.kind == OperationKind.CREATE:
                await self._create(op.change)
            elif op.kind == OperationKind.UPDATE:
                await self._update(op.change)
            elif op.kind == OperationKind.REPLACE:
                await self._replace(op.change)
            elif op.kind == OperationKind.DELETE:
                await self._delete(lid, op.change.prior, remove_from_state=True)
            else:
                await self._delete(lid, op.change.prior, remove_from_state=False)
        except (StackError, TimeoutError) as e:
            self._failed[lid] = str(e)
            logger.error(
                "Operation failed",
                extra={"logical_id": lid, "operation": op.kind.value, "error": str(e)},
            )
            return False
        except Exception as e:
            self._failed[lid] = f"{type(e).__name__}: {e}"
            logger.exception(
                "Operation raised an unexpected error",
                extra={"logical_id": lid, "operation": op.kind.value},
            )
            return False

        logger.info(
            "Operation committed",
            extra={"logical_id": lid, "operation": op.kind.value},
        )
        return True

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def _desired_properties(self, change: Change) -> dict[str, Any]:
        properties = self._resolver.resolve_complete(change.logical_id, self._state.resources)
        problems = self._provider.capabilities(change.resource_type).validate_properties(properties)
        if problems:
            raise ValidationError(
                f"Resource '{change.logical_id}' violates type constraints", problems
            )
        return properties

    async def _create(self, change: Change) -> None:
        properties = self._desired_properties(change)
        await self._create_resource(change, properties, before=None)

    async def _create_resource(
        self, change: Change, properties: dict[str, Any], before: ResourceState | None
    ) -> None:
        lid = change.logical_id
        token = self._token(lid)
        try:
            result = await self._call(
                "create", lid, self._provider.create, change.resource_type, properties, token=token
            )
        except DeadlineExceeded as e:
            found = await self._settle_create(change, token, properties, e.worker)
            if found is not None:
                self._commit_created(change, properties, found, before)
            raise OperationTimeout(lid, "create", self._timeout) from None

        self._commit_created(change, properties, result, before)

    async def _update(self, change: Change) -> None:
        lid = change.logical_id
        prior = change.prior
        assert prior is not None, "Update without a prior snapshot"
        properties = self._desired_properties(change)

        after = ResourceState(
            logical_id=lid,
            resource_type=change.resource_type,
            physical_id=prior.physical_id,
            properties=properties,
            attributes=dict(prior.attributes),
            depends_on=list(change.depends_on),
        )
        try:
            attributes = await self._call(
                "update", lid, self._provider.update, prior.physical_id, change.resource_type, properties
            )
        except TimeoutError:
            # Outcome unknown; reverting to the prior snapshot is idempotent
            self._commit(Commit(lid, CommitKind.UPDATED, before=prior, after=after))
            raise OperationTimeout(lid, "update", self._timeout) from None

        after.attributes = dict(attributes or {})
        self._commit(Commit(lid, CommitKind.UPDATED, before=prior, after=after))

    async def _replace(self, change: Change) -> None:
        prior = change.prior
        assert prior is not None, "Replace without a prior snapshot"
        properties = self._desired_properties(change)

        if change.strategy == ReplaceStrategy.DELETE_BEFORE_CREATE:
            await self._delete(change.logical_id, prior, remove_from_state=True)
            await self._create_resource(change, properties, before=None)
        else:
            # The original stays live until the removal phase retires it
            await self._create_resource(change, properties, before=prior)

    async def _delete(
        self, logical_id: str, prior: ResourceState | None, *, remove_from_state: bool
    ) -> None:
        assert prior is not None, "Delete without a prior snapshot"
        try:
            await self._call(
                "delete", logical_id, self._provider.delete, prior.physical_id, prior.resource_type
            )
        except DeadlineExceeded as e:
            if await self._settle_delete(logical_id, prior, e.worker):
                self._commit_deleted(logical_id, prior, remove_from_state)
            raise OperationTimeout(logical_id, "delete", self._timeout) from None

        self._commit_deleted(logical_id, prior, remove_from_state)

    async def _late_outcome(self, worker: asyncio.Future[Any]) -> tuple[bool, Any]:
        """Give a timed-out call one more deadline to finish.

        Returns (True, result) when it completed successfully, else
        (False, None). A failed late call counts as not completed.
        """
        done, _ = await asyncio.wait({worker}, timeout=self._timeout)
        if not done or worker.cancelled() or worker.exception() is not None:
            return False, None
        return True, worker.result()

    async def _settle_create(
        self, change: Change, token: str, properties: dict[str, Any], worker: asyncio.Future[Any]
    ) -> CreateResult | None:
        """Decide what a timed-out create did.

        The late result wins when the call finishes within the grace period.
        Otherwise the provider is asked for a resource carrying ``token``; a
        miss while the call is still running leaves the node inconsistent,
        since the resource may still appear.
        """
        lid = change.logical_id
        completed, result = await self._late_outcome(worker)
        if completed:
            logger.warning("Create completed after its deadline", extra={"logical_id": lid})
            return result

        try:
            found = await self._call(
                "find", lid, self._provider.find, change.resource_type, token, properties
            )
        except (StackError, TimeoutError) as e:
            self._unknown[lid] = f"create timed out and re-query failed: {e}"
            return None
        logger.warning(
            "Create timed out; re-queried provider",
            extra={"logical_id": lid, "found": found is not None},
        )
        if found is None and not worker.done():
            self._unknown[lid] = "create timed out and is still in progress on the provider"
        return found

    async def _settle_delete(
        self, logical_id: str, prior: ResourceState, worker: asyncio.Future[Any]
    ) -> bool:
        completed, _ = await self._late_outcome(worker)
        if completed:
            logger.warning("Delete completed after its deadline", extra={"logical_id": logical_id})
            return True

        gone = await self._gone_after_timeout(logical_id, prior)
        if not gone and not worker.done() and logical_id not in self._unknown:
            self._unknown[logical_id] = "delete timed out and is still in progress on the provider"
        return gone

    async def _gone_after_timeout(self, logical_id: str, prior: ResourceState) -> bool:
        try:
            await self._call(
                "describe",
                logical_id,
                self._provider.describe,
                prior.physical_id,
                prior.resource_type,
            )
        except ResourceNotFound:
            return True
        except (StackError, TimeoutError) as e:
            self._unknown[logical_id] = f"delete timed out and re-query failed: {e}"
            return False
        return False

    # -------------------------------------------------------------------------
    # Journal and state
    # -------------------------------------------------------------------------

    def _commit_created(
        self,
        change: Change,
        properties: dict[str, Any],
        result: CreateResult,
        before: ResourceState | None,
    ) -> None:
        after = ResourceState(
            logical_id=change.logical_id,
            resource_type=change.resource_type,
            physical_id=result.physical_id,
            properties=properties,
            attributes=dict(result.attributes),
            depends_on=list(change.depends_on),
        )
        self._commit(Commit(change.logical_id, CommitKind.CREATED, before=before, after=after))

    def _commit_deleted(self, logical_id: str, prior: ResourceState, remove_from_state: bool) -> None:
        commit = Commit(logical_id, CommitKind.DELETED, before=prior)
        if not remove_from_state:
            # Retiring a replaced original; the replacement stays in state
            self._journal.append(commit)
            return
        self._commit(commit)

    def _commit(self, commit: Commit) -> None:
        self._journal.append(commit)
        if commit.after is not None:
            self._state.resources[commit.logical_id] = commit.after
        else:
            self._state.resources.pop(commit.logical_id, None)
        self._save()

    def _save(self) -> None:
        if self._checkpoint is not None:
            self._checkpoint(self._state)

    def _token(self, logical_id: str) -> str:
        return f"{self._stack_name}-{logical_id}-{uuid.uuid4().hex[:12]}"

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def _rollback(self) -> None:
        logger.warning(
            "Rolling back committed operations",
            extra={"stack": self._stack_name, "commits": len(self._journal)},
        )
        compensated: dict[str, bool] = {}
        for commit in reversed(self._journal):
            lid = commit.logical_id
            try:
                await self._compensate(commit)
            except (StackError, TimeoutError) as e:
                self._inconsistent[lid] = f"{commit.kind.value} rollback failed: {e}"
                compensated[lid] = False
                logger.error(
                    "Rollback step failed",
                    extra={"logical_id": lid, "commit": commit.kind.value, "error": str(e)},
                )
                continue
            compensated.setdefault(lid, True)
            logger.info(
                "Rolled back",
                extra={"logical_id": lid, "commit": commit.kind.value},
            )

        self._reverted = [lid for lid, ok in compensated.items() if ok]

    async def _compensate(self, commit: Commit) -> None:
        lid = commit.logical_id

        if commit.kind == CommitKind.CREATED:
            assert commit.after is not None
            await self._call(
                "delete",
                lid,
                self._provider.delete,
                commit.after.physical_id,
                commit.after.resource_type,
            )
            if commit.before is None:
                self._state.resources.pop(lid, None)
            else:
                self._state.resources[lid] = self._recreated.get(
                    commit.before.physical_id, commit.before
                )
            self._save()
            return

        before = commit.before
        assert before is not None

        if commit.kind == CommitKind.UPDATED:
            properties = self._remap(before.properties)
            attributes = await self._call(
                "update", lid, self._provider.update, before.physical_id, before.resource_type, properties
            )
            self._state.resources[lid] = before.model_copy(
                update={"properties": properties, "attributes": dict(attributes or before.attributes)}
            )
            self._save()
            return

        # DELETED: recreate from the snapshot
        properties = self._remap(before.properties)
        result = await self._call(
            "create",
            lid,
            self._provider.create,
            before.resource_type,
            properties,
            token=self._token(lid),
        )
        recreated = before.model_copy(
            update={
                "physical_id": result.physical_id,
                "properties": properties,
                "attributes": dict(result.attributes),
            }
        )
        self._recreated[before.physical_id] = recreated
        self._value_remap[before.physical_id] = result.physical_id
        for name, old in before.attributes.items():
            new = result.attributes.get(name)
            if isinstance(old, str) and new is not None and new != old:
                self._value_remap[old] = new
        if lid not in self._state.resources:
            self._state.resources[lid] = recreated
        self._save()

    def _remap(self, value: Any) -> Any:
        """Rewrite references to resources recreated during rollback."""
        if isinstance(value, str):
            return self._value_remap.get(value, value)
        if isinstance(value, dict):
            return {k: self._remap(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._remap(v) for v in value]
        return value

    def _failure(self, change_set: ChangeSet) -> PartialApplyFailure:
        committed_ids = {c.logical_id for c in self._journal}
        committed: list[str] = []
        not_applied: list[str] = []
        inconsistent = dict(self._unknown)
        inconsistent.update(self._inconsistent)

        reverted_ids = set(self._reverted)
        for lid in dict.fromkeys(change_set.logical_ids()):
            if lid in inconsistent:
                continue
            if lid in reverted_ids:
                continue
            if lid in committed_ids:
                committed.append(lid)
            else:
                not_applied.append(lid)
        reverted = [lid for lid in self._reverted if lid not in inconsistent]

        cancelled = self._cancel_event.is_set() and not self._failed
        message = "Apply cancelled" if cancelled else "Apply failed"
        if self._rollback_on_failure:
            message += "; rolled back" if not inconsistent else "; rollback incomplete"

        failure = PartialApplyFailure(
            message,
            failed=self._failed,
            reverted=reverted,
            committed=committed,
            not_applied=not_applied,
            inconsistent=inconsistent,
            cancelled=cancelled,
            state=self._state,
        )
        logger.error(
            "Partial apply",
            extra={"stack": self._stack_name, **failure.summary()},
        )
        return failure

    # -------------------------------------------------------------------------
    # Provider calls
    # -------------------------------------------------------------------------

    async def _call(self, action: str, logical_id: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking provider call with a deadline and transient retries.

        Raises:
            DeadlineExceeded: If an attempt exceeds the deadline (not retried).
            ProviderError: If the error is permanent or retries are exhausted.
        """
        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            attempt += 1
            # The thread keeps running past the deadline; shield keeps its future
            worker = loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
            try:
                return await asyncio.wait_for(asyncio.shield(worker), timeout=self._timeout)
            except TimeoutError:
                worker.add_done_callback(_consume_result)
                raise DeadlineExceeded(worker) from None
            except ProviderError as e:
                if not e.transient or attempt > self._max_retries:
                    raise

                # Exponential backoff with jitter
                backoff = self._backoff_base * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Transient provider error, retrying",
                    extra={
                        "logical_id": logical_id,
                        "action": action,
                        "attempt": attempt,
                        "max_retries": self._max_retries,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)
