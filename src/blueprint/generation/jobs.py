"""
Generation job lifecycle.

Tracks one attempt-series per artifact (pending -> retrying -> succeeded |
failed). The JobRegistry is the mutual-exclusion point: a second start for
the same artifact kind and conversation while one is in flight is rejected.
Single-owner module: all job mutations go through the methods here.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from blueprint.errors import GenerationInProgress

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


class JobStatus(Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ArtifactKind(Enum):
    MEAL_PLAN = "meal_plan"
    SHOPPING_LIST = "shopping_list"


class Operation(Enum):
    CREATE = "create"
    REVISE = "revise"
    APPROVE = "approve"


@dataclass
class GenerationJob:
    kind: ArtifactKind
    operation: Operation
    conversation_id: str
    artifact_id: str | None = None
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    retry_count: int = 0
    last_error: str | None = None
    reconciled: bool = False
    created_at: str = field(default_factory=_utc_now)
    finished_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.SUCCEEDED, JobStatus.FAILED)

    def record_attempt(self) -> None:
        self.attempts += 1

    def mark_retrying(self, error: str | None) -> None:
        self.status = JobStatus.RETRYING
        self.retry_count += 1
        if error:
            self.last_error = error

    def succeed(self, artifact_id: str | None, reconciled: bool = False) -> None:
        self.status = JobStatus.SUCCEEDED
        self.artifact_id = artifact_id or self.artifact_id
        self.reconciled = reconciled
        self.finished_at = _utc_now()

    def fail(self, error: str) -> None:
        self.status = JobStatus.FAILED
        self.last_error = error
        self.finished_at = _utc_now()

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "operation": self.operation.value,
            "conversation_id": self.conversation_id,
            "artifact_id": self.artifact_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "reconciled": self.reconciled,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


class JobRegistry:
    """In-flight jobs keyed by (artifact kind, conversation id)."""

    def __init__(self):
        self._active: dict[tuple[ArtifactKind, str], GenerationJob] = {}

    def begin(
        self,
        kind: ArtifactKind,
        operation: Operation,
        conversation_id: str,
        artifact_id: str | None = None,
    ) -> GenerationJob:
        running = self.active(kind, conversation_id)
        if running is not None and not running.is_terminal:
            logger.warning(
                f"Rejected duplicate {kind.value} {operation.value} for conversation "
                f"{conversation_id} (job {running.job_id} is {running.status.value})"
            )
            raise GenerationInProgress(
                f"A {kind.value.replace('_', ' ')} is already being generated for this conversation"
            )

        job = GenerationJob(
            kind=kind,
            operation=operation,
            conversation_id=conversation_id,
            artifact_id=artifact_id,
        )
        self._active[(kind, conversation_id)] = job
        return job

    def finish(self, job: GenerationJob) -> None:
        """Release the slot. Called once per job, success or not."""
        key = (job.kind, job.conversation_id)
        if self._active.get(key) is job:
            del self._active[key]

    def active(self, kind: ArtifactKind, conversation_id: str) -> GenerationJob | None:
        return self._active.get((kind, conversation_id))
