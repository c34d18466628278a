"""Job data models and the export-job state machine."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.completed, JobStatus.failed})

# Legal predecessors for every target status.  ``processing -> processing``
# is stale-lock reclamation by another worker.  Terminal states never appear
# on the right-hand side, which makes completion write-once.
PREDECESSORS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.pending: frozenset({JobStatus.processing}),
    JobStatus.processing: frozenset({JobStatus.pending, JobStatus.processing}),
    JobStatus.completed: frozenset({JobStatus.processing}),
    JobStatus.failed: frozenset({JobStatus.processing}),
}


class Artifact(BaseModel):
    """Storage locator for a finished export."""

    locator: str
    size_bytes: int
    expires_at: datetime


class JobRequest(BaseModel):
    """Validated submission accepted by ``JobStore.create_job``."""

    tenant_id: str
    requested_by: str
    job_type: str
    format: str
    params: Dict[str, Any] = Field(default_factory=dict)
    max_attempts: int = 3
    idempotency_key: Optional[str] = None
    # First claim is deferred until this time; ``None`` means immediately.
    scheduled_at: Optional[datetime] = None


class JobSpec(BaseModel):
    """Immutable descriptor handed to the generation collaborator."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    tenant_id: str
    requested_by: str
    job_type: str
    format: str
    params: Dict[str, Any] = Field(default_factory=dict)


class JobRecord(BaseModel):
    """Persistent representation of an export job."""

    job_id: str
    tenant_id: str
    requested_by: str
    job_type: str
    format: str
    params: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.pending
    progress: int = 0
    attempt_count: int = 0
    max_attempts: int = 3
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    artifact: Optional[Artifact] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0
    idempotency_key: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def spec(self) -> JobSpec:
        return JobSpec(
            job_id=self.job_id,
            tenant_id=self.tenant_id,
            requested_by=self.requested_by,
            job_type=self.job_type,
            format=self.format,
            params=dict(self.params),
        )

    def is_stale(self, stale_before: datetime) -> bool:
        return (
            self.status == JobStatus.processing
            and self.locked_at is not None
            and self.locked_at < stale_before
        )

    def is_claimable(self, now: datetime, stale_before: datetime) -> bool:
        """Pending and due, or processing under an abandoned lock."""
        if self.status == JobStatus.pending:
            return self.next_run_at is None or self.next_run_at <= now
        return self.is_stale(stale_before)


@dataclass(frozen=True)
class JobMutation:
    """One state-machine transition: the target status plus the fields it sets.

    ``changes`` maps ``JobRecord`` field names to their new values.  Build
    mutations through the classmethods so each transition always writes the
    full set of fields its invariants require.
    """

    status: JobStatus
    changes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def claim(cls, job: JobRecord, worker_id: str, now: datetime) -> "JobMutation":
        return cls(JobStatus.processing, {
            "locked_by": worker_id,
            "locked_at": now,
            "attempt_count": job.attempt_count + 1,
            "last_error": None,
            "next_run_at": None,
            "started_at": job.started_at or now,
        })

    @classmethod
    def complete(cls, artifact: Artifact, now: datetime) -> "JobMutation":
        return cls(JobStatus.completed, {
            "artifact": artifact,
            "progress": 100,
            "locked_by": None,
            "locked_at": None,
            "next_run_at": None,
            "completed_at": now,
        })

    @classmethod
    def retry(cls, error: str, next_run_at: datetime) -> "JobMutation":
        return cls(JobStatus.pending, {
            "locked_by": None,
            "locked_at": None,
            "next_run_at": next_run_at,
            "last_error": error,
        })

    @classmethod
    def fail(cls, error: str, now: datetime) -> "JobMutation":
        return cls(JobStatus.failed, {
            "locked_by": None,
            "locked_at": None,
            "next_run_at": None,
            "last_error": error,
            "completed_at": now,
        })

    @property
    def predecessors(self) -> FrozenSet[JobStatus]:
        return PREDECESSORS[self.status]

    def apply(self, job: JobRecord, now: datetime) -> JobRecord:
        """Return the in-memory projection of *job* after this transition."""
        update = dict(self.changes)
        update.update(status=self.status, version=job.version + 1, updated_at=now)
        return job.model_copy(update=update)
