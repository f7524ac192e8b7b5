"""Run records for audit.

Every plan, apply or destroy emits one structured ``Run record`` log entry
answering: which stack, which template content, what changed, how long it
took, and how it ended. Per-resource entries are logged as operations commit
or are planned.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .diff import ChangeAction, ChangeSet

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
STACKCTL_VERSION = os.environ.get("STACKCTL_VERSION", "dev")


@dataclass
class ChangeSummary:
    """Counts of planned changes per action."""

    create_count: int = 0
    update_count: int = 0
    replace_count: int = 0
    delete_count: int = 0

    @property
    def total(self) -> int:
        return self.create_count + self.update_count + self.replace_count + self.delete_count

    @classmethod
    def from_change_set(cls, change_set: ChangeSet) -> ChangeSummary:
        counts = change_set.counts()
        return cls(
            create_count=counts[ChangeAction.CREATE.value],
            update_count=counts[ChangeAction.UPDATE.value],
            replace_count=counts[ChangeAction.REPLACE.value],
            delete_count=counts[ChangeAction.DELETE.value],
        )


@dataclass
class RunRecord:
    """Provenance of one run against a stack."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    stack_name: str = ""
    action: str = "plan"
    stackctl_version: str = STACKCTL_VERSION
    provider: str = ""

    # Source of truth
    template_path: str = ""
    template_sha256: str = ""
    git_commit_sha: str = ""

    # Outcome
    change_summary: ChangeSummary = field(default_factory=ChangeSummary)
    changes_applied: int = 0
    state_serial: int = 0
    duration_seconds: float = 0.0
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


def file_sha256(path: Path) -> str:
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return ""


class ProvenanceLogger:
    """Logs run records to the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    def create_record(
        self,
        stack_name: str,
        action: str,
        provider: str,
        template_path: Path | None = None,
    ) -> RunRecord:
        return RunRecord(
            stack_name=stack_name,
            action=action,
            provider=provider,
            template_path=str(template_path) if template_path else "",
            template_sha256=file_sha256(template_path) if template_path else "",
            git_commit_sha=self._git_commit_sha,
        )

    def log_record(self, record: RunRecord) -> None:
        """Log a completed run record.

        Key fields are flattened next to the full record so they can be
        filtered on directly.
        """
        log_level = logging.ERROR if record.error else logging.INFO
        logger.log(
            log_level,
            "Run record",
            extra={
                "run": record.to_dict(),
                "stack": record.stack_name,
                "action": record.action,
                "changes": record.change_summary.total,
                "changes_applied": record.changes_applied,
                "duration_seconds": record.duration_seconds,
            },
        )

    def log_change_set(self, record: RunRecord, change_set: ChangeSet) -> None:
        """Log one entry per planned change."""
        for change in change_set:
            logger.info(
                "Resource change",
                extra={
                    "stack": record.stack_name,
                    "action": record.action,
                    "logical_id": change.logical_id,
                    "change_type": change.action.value,
                    "resource_type": change.resource_type,
                    "changed_properties": change.changed_properties,
                },
            )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
