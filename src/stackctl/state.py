"""Applied state persistence with a single-writer lease.

The applied state records, per logical id, the physical id the provider
assigned and the property snapshot last applied. It is read once at the start
of a run and written after every successful operation, so a crash mid-run
loses at most the in-flight operation.

Concurrent runs against the same stack are refused: a writer must hold the
stack's lease, an exclusively created file with an owner and an expiry. An
expired lease may be broken by the next writer.
"""

from __future__ import annotations

import logging
import os
import socket
import tempfile
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import LeaseHeldError, StateCorruptError, StackError

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class ResourceState(BaseModel):
    """Last-applied snapshot of one resource."""

    model_config = {"extra": "ignore"}

    logical_id: str
    resource_type: str
    physical_id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AppliedState(BaseModel):
    """Everything known about a stack's applied resources."""

    model_config = {"extra": "ignore"}

    version: int = STATE_FORMAT_VERSION
    stack_name: str
    serial: int = 0
    resources: dict[str, ResourceState] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    exports: dict[str, Any] = Field(default_factory=dict)

    def copy_state(self) -> AppliedState:
        return self.model_copy(deep=True)

    def dependencies(self) -> dict[str, list[str]]:
        return {lid: list(r.depends_on) for lid, r in self.resources.items()}


class StateLease(BaseModel):
    owner: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at


def default_lease_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class StateStore:
    """File-backed state store for one stack.

    Layout:
        <state_dir>/<stack>.state.json
        <state_dir>/<stack>.lease
    """

    def __init__(
        self,
        state_dir: Path,
        stack_name: str,
        lease_ttl_seconds: int = 3600,
        owner: str | None = None,
    ) -> None:
        self._state_dir = state_dir
        self._stack_name = stack_name
        self._lease_ttl = timedelta(seconds=lease_ttl_seconds)
        self._owner = owner or default_lease_owner()

    @property
    def state_path(self) -> Path:
        return self._state_dir / f"{self._stack_name}.state.json"

    @property
    def lease_path(self) -> Path:
        return self._state_dir / f"{self._stack_name}.lease"

    @property
    def owner(self) -> str:
        return self._owner

    def read(self) -> AppliedState:
        """Read the applied state; an absent file is an empty state.

        Raises:
            StateCorruptError: If the file exists but cannot be parsed.
        """
        if not self.state_path.exists():
            return AppliedState(stack_name=self._stack_name)
        try:
            content = self.state_path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateCorruptError(f"Failed to read state file {self.state_path}: {e}") from e
        try:
            state = AppliedState.model_validate_json(content)
        except PydanticValidationError as e:
            raise StateCorruptError(f"Invalid state file {self.state_path}: {e}") from e
        if state.stack_name != self._stack_name:
            raise StateCorruptError(
                f"State file {self.state_path} belongs to stack '{state.stack_name}'"
            )
        return state

    def write(self, state: AppliedState) -> None:
        """Atomically persist state, renewing this owner's lease.

        Raises:
            LeaseHeldError: If the lease is missing or now held by another owner.
        """
        self.renew_lease()
        state.serial += 1
        self._write_atomic(self.state_path, state.model_dump_json(indent=2))

        logger.debug(
            "State written",
            extra={"stack": self._stack_name, "serial": state.serial},
        )

    def _write_atomic(self, path: Path, payload: str) -> None:
        self._state_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._state_dir, prefix=f".{self._stack_name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # -------------------------------------------------------------------------
    # Lease
    # -------------------------------------------------------------------------

    def read_lease(self) -> StateLease | None:
        try:
            content = self.lease_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return StateLease.model_validate_json(content)
        except PydanticValidationError:
            # A torn lease write is treated as expired
            return StateLease(
                owner="unknown",
                acquired_at=datetime.min.replace(tzinfo=UTC),
                expires_at=datetime.min.replace(tzinfo=UTC),
            )

    def acquire_lease(self) -> StateLease:
        """Take the stack's lease, breaking it if expired.

        Raises:
            LeaseHeldError: If another owner holds a live lease.
        """
        self._state_dir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(UTC)
        lease = StateLease(owner=self._owner, acquired_at=now, expires_at=now + self._lease_ttl)

        for _ in range(2):
            try:
                fd = os.open(self.lease_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                existing = self.read_lease()
                if existing is None:
                    continue
                if existing.owner == self._owner:
                    return existing
                if not existing.is_expired(now):
                    raise LeaseHeldError(
                        self._stack_name, existing.owner, existing.expires_at.isoformat()
                    ) from None
                logger.warning(
                    "Breaking expired state lease",
                    extra={
                        "stack": self._stack_name,
                        "previous_owner": existing.owner,
                        "expired_at": existing.expires_at.isoformat(),
                    },
                )
                self.lease_path.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(lease.model_dump_json())
            logger.info(
                "Acquired state lease",
                extra={"stack": self._stack_name, "owner": self._owner},
            )
            return lease

        raise LeaseHeldError(self._stack_name, "unknown", "unknown")

    def release_lease(self) -> None:
        """Release the lease if this store owns it."""
        existing = self.read_lease()
        if existing is None or existing.owner != self._owner:
            return
        self.lease_path.unlink(missing_ok=True)
        logger.info(
            "Released state lease",
            extra={"stack": self._stack_name, "owner": self._owner},
        )

    @contextmanager
    def lease(self) -> Generator[StateLease, None, None]:
        """Hold the lease for the duration of a block."""
        held = self.acquire_lease()
        try:
            yield held
        finally:
            self.release_lease()

    def renew_lease(self) -> StateLease:
        """Move this owner's lease expiry a full TTL into the future.

        A lease that expired but was not broken is still ours and is renewed.

        Raises:
            StackError: If there is no lease.
            LeaseHeldError: If another owner holds the lease.
        """
        existing = self.read_lease()
        if existing is None:
            raise StackError(f"State write for stack '{self._stack_name}' without a lease")
        if existing.owner != self._owner:
            raise LeaseHeldError(self._stack_name, existing.owner, existing.expires_at.isoformat())
        if existing.is_expired():
            logger.warning(
                "Renewing expired state lease",
                extra={"stack": self._stack_name, "expired_at": existing.expires_at.isoformat()},
            )
        renewed = existing.model_copy(update={"expires_at": datetime.now(UTC) + self._lease_ttl})
        self._write_atomic(self.lease_path, renewed.model_dump_json())
        return renewed

    @property
    def lease_ttl_seconds(self) -> float:
        return self._lease_ttl.total_seconds()


def read_exports(state_dir: Path) -> dict[str, dict[str, Any]]:
    """Exports recorded by every stack in ``state_dir``, keyed by stack name.

    Unreadable state files of other stacks are skipped with a warning.
    """
    exports: dict[str, dict[str, Any]] = {}
    if not state_dir.is_dir():
        return exports
    for path in sorted(state_dir.glob("*.state.json")):
        try:
            state = AppliedState.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, PydanticValidationError) as e:
            logger.warning(
                "Skipping unreadable state file",
                extra={"path": str(path), "error": str(e)},
            )
            continue
        if state.exports:
            exports[state.stack_name] = dict(state.exports)
    return exports
