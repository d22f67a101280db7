"""Run provenance for audit.

Every apply or destroy run is stamped with a provenance record that answers:
- "Which resources did run X touch, and what happened to each?"
- "Which version of the engine and which declaration produced them?"

Apply records are logged one per resource as they are appended, followed
by a single summary line when the run finishes. Outputs are never logged,
only their keys, since they may carry tokens.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .executor import ApplyRecord

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ENGINE_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")


@dataclass
class RunProvenance:
    """Provenance record for one run."""

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    operation: str = "apply"

    engine_version: str = ENGINE_VERSION
    git_commit_sha: str = ""
    declaration_hash: str = ""  # SHA256 of the declaration file content

    location: str = ""
    identifier: str = ""

    status: str = ""
    applied: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0

    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Writes the audit trail of runs to the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    def create_provenance(
        self,
        operation: str,
        location: str | None,
        identifier: str,
        declaration_hash: str = "",
    ) -> RunProvenance:
        """Create a new provenance record for a run."""
        return RunProvenance(
            operation=operation,
            git_commit_sha=self._git_commit_sha,
            declaration_hash=declaration_hash,
            location=location or "",
            identifier=identifier,
        )

    def log_record(self, provenance: RunProvenance, record: ApplyRecord) -> None:
        """Log a single per-resource apply record."""
        log_level = logging.ERROR if record.error else logging.INFO
        logger.log(
            log_level,
            "Apply record",
            extra={
                "run_id": provenance.run_id,
                "operation": provenance.operation,
                "resource": record.resource,
                "kind": record.kind,
                "outcome": record.outcome.value,
                "state": record.state.value,
                "action": record.action.value if record.action else None,
                "batch": record.batch,
                "output_keys": sorted(record.outputs),
                "error": record.error,
                "error_type": record.error_type,
            },
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log the completed run summary."""
        log_level = logging.INFO
        if provenance.failed:
            log_level = logging.ERROR
        elif provenance.skipped or provenance.cancelled:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                "run_id": provenance.run_id,
                "status": provenance.status,
                "applied": provenance.applied,
                "failed": provenance.failed,
                "skipped": provenance.skipped,
                "duration_seconds": provenance.duration_seconds,
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
