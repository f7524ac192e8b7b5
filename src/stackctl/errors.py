"""Error taxonomy for stack reconciliation.

Structural errors (validation, duplicate ids, unresolved references, cycles)
are raised before any provider call is made, so they never leave partial
state behind. Execution errors are raised by the executor after rollback has
been attempted.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any


class StackError(Exception):
    """Base class for all reconciliation errors."""

    pass


class ValidationError(StackError):
    """Raised when a template or parameter binding is malformed.

    Carries every problem found, not just the first.
    """

    def __init__(self, message: str, problems: Iterable[str] | None = None) -> None:
        self.problems = list(problems or [])
        if self.problems:
            message = message + ":\n  - " + "\n  - ".join(self.problems)
        super().__init__(message)


class DuplicateIdentifierError(StackError):
    """Raised when a logical id or export name is declared twice."""

    def __init__(self, identifier: str, kind: str = "logical id") -> None:
        self.identifier = identifier
        self.kind = kind
        super().__init__(f"Duplicate {kind}: {identifier}")


class UnresolvedReferenceError(StackError):
    """Raised when a reference targets something that does not exist."""

    def __init__(self, source: str, target: str, detail: str = "") -> None:
        self.source = source
        self.target = target
        message = f"Unresolved reference from '{source}' to '{target}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CyclicDependencyError(StackError):
    """Raised when the dependency graph has no topological order."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class ProviderError(StackError):
    """Wraps a failure reported by the provider collaborator.

    Attributes:
        transient: True if retrying the same call may succeed.
    """

    def __init__(self, message: str, *, transient: bool = False, code: str | None = None) -> None:
        self.transient = transient
        self.code = code
        super().__init__(message)


class ResourceNotFound(ProviderError):
    """Raised by ``describe`` when the physical resource does not exist."""

    def __init__(self, physical_id: str) -> None:
        self.physical_id = physical_id
        super().__init__(f"Resource not found: {physical_id}", code="NotFound")


class LeaseHeldError(StackError):
    """Raised when another writer holds the state lease."""

    def __init__(self, stack_name: str, owner: str, expires_at: str) -> None:
        self.stack_name = stack_name
        self.owner = owner
        super().__init__(
            f"State for stack '{stack_name}' is leased by {owner} until {expires_at}"
        )


class StateCorruptError(StackError):
    """Raised when the persisted state document cannot be parsed."""

    pass


class PartialApplyFailure(StackError):
    """Raised after a failed apply once rollback has been attempted.

    Every node in the change set appears in exactly one of reverted,
    committed, not_applied or inconsistent. Nodes whose operation failed are
    also listed under ``failed``.

    Attributes:
        failed: Logical id -> error message for operations that failed.
        reverted: Nodes whose committed changes were compensated.
        committed: Nodes whose changes remain applied (rollback disabled
            or not reached).
        not_applied: Nodes with pending operations that never started.
        inconsistent: Logical id -> error message for compensations that failed.
        cancelled: True if the run stopped on a cancellation signal.
        state: Applied state as it stood when the run halted.
    """

    def __init__(
        self,
        message: str,
        *,
        failed: dict[str, str] | None = None,
        reverted: list[str] | None = None,
        committed: list[str] | None = None,
        not_applied: list[str] | None = None,
        inconsistent: dict[str, str] | None = None,
        cancelled: bool = False,
        state: Any = None,
    ) -> None:
        self.failed = dict(failed or {})
        self.reverted = list(reverted or [])
        self.committed = list(committed or [])
        self.not_applied = list(not_applied or [])
        self.inconsistent = dict(inconsistent or {})
        self.cancelled = cancelled
        self.state = state
        super().__init__(message)

    def summary(self) -> dict[str, object]:
        """Return a JSON-serializable summary of node outcomes."""
        return {
            "failed": self.failed,
            "reverted": self.reverted,
            "committed": self.committed,
            "not_applied": self.not_applied,
            "inconsistent": self.inconsistent,
            "cancelled": self.cancelled,
        }

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.failed:
            parts.append(f"failed={sorted(self.failed)}")
        if self.reverted:
            parts.append(f"reverted={self.reverted}")
        if self.committed:
            parts.append(f"committed={self.committed}")
        if self.not_applied:
            parts.append(f"not_applied={self.not_applied}")
        if self.inconsistent:
            parts.append(f"inconsistent={sorted(self.inconsistent)}")
        return " ".join(parts)
