"""Request/response schemas for the export endpoints.

Field names on the wire are camelCase; Python attributes stay snake_case.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..jobs.models import JobRecord, JobStatus


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CreateExportRequest(_CamelModel):
    """Request body for POST /api/exports."""

    job_type: str
    format: str
    tenant_id: str
    requested_by: str
    max_attempts: Optional[int] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class PollHint(_CamelModel):
    """How often, and for how long, clients should poll the status endpoint."""

    interval_seconds: int
    timeout_seconds: int
    status_url: str


class CreateExportResponse(_CamelModel):
    job_id: str
    status: JobStatus
    poll: PollHint


class ExportStatusResponse(_CamelModel):
    """Polling view of a job.  ``errorMessage`` is present only for failed jobs."""

    job_id: str
    status: JobStatus
    progress: int
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, rec: JobRecord) -> "ExportStatusResponse":
        return cls(
            job_id=rec.job_id,
            status=rec.status,
            progress=rec.progress,
            error_message=rec.last_error if rec.status == JobStatus.failed else None,
        )


class ExportSummary(_CamelModel):
    """List-view of a job for the tenant listing and the failed-job queue."""

    job_id: str
    job_type: str
    format: str
    requested_by: str
    status: JobStatus
    progress: int
    attempt_count: int
    max_attempts: int
    created_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, rec: JobRecord) -> "ExportSummary":
        return cls(
            job_id=rec.job_id,
            job_type=rec.job_type,
            format=rec.format,
            requested_by=rec.requested_by,
            status=rec.status,
            progress=rec.progress,
            attempt_count=rec.attempt_count,
            max_attempts=rec.max_attempts,
            created_at=rec.created_at,
            completed_at=rec.completed_at,
            error_message=rec.last_error if rec.status == JobStatus.failed else None,
        )


class DownloadTokenResponse(_CamelModel):
    token: str
    expires_at: datetime
    download_url: str
