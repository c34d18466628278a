"""Business logic behind the export endpoints.

Submission validates and throttles before touching the store; every read is
tenant-scoped; the download gateway turns a token into an artifact locator
or a typed error.  Nothing here mutates job state after creation.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import (
    ArtifactExpiredError,
    ArtifactNotFoundError,
    ArtifactUnavailableError,
    ExportFailedError,
    ExportNotReadyError,
    InvalidTokenError,
    JobNotFoundError,
    JobValidationError,
    TenantMismatchError,
    TenantThrottledError,
)
from ..jobs.models import JobRecord, JobRequest, JobStatus
from ..jobs.store import JobStore
from ..schemas.exports import (
    CreateExportRequest,
    CreateExportResponse,
    DownloadTokenResponse,
    ExportStatusResponse,
    ExportSummary,
    PollHint,
)
from ..tokens import DownloadTokenIssuer, DownloadTokenPayload

logger = logging.getLogger(__name__)

DOWNLOAD_PATH = "/api/exports/download"


class ExportService:
    """Submission, polling, token issuance and download resolution."""

    def __init__(
        self,
        store: JobStore,
        issuer: DownloadTokenIssuer,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        artifact_base_url: Optional[str] = None,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Locators under this prefix are served by this process and are
        # only reachable through a signed, short-lived link.
        self._artifact_base_url = artifact_base_url.rstrip("/") if artifact_base_url else None

    # ── Submission ───────────────────────────────────────────────────

    def validate(self, req: CreateExportRequest, caller_tenant: Optional[str] = None) -> JobRequest:
        """Check a submission synchronously and build the store request.

        Raises
        ------
        JobValidationError
            Unknown job type or format, bad tenant id, out-of-range attempts.
        TenantMismatchError
            ``X-Tenant-Id`` was sent and names a different tenant.
        """
        import audit_export.config as cfg

        tenant_id = (req.tenant_id or "").strip()
        if not tenant_id or len(tenant_id) > cfg.MAX_TENANT_ID_LENGTH:
            raise JobValidationError(
                f"tenantId must be 1-{cfg.MAX_TENANT_ID_LENGTH} characters"
            )
        if caller_tenant is not None and caller_tenant != tenant_id:
            raise TenantMismatchError("tenantId does not match the calling tenant")
        if not (req.requested_by or "").strip():
            raise JobValidationError("requestedBy is required")
        if req.job_type not in cfg.SUPPORTED_JOB_TYPES:
            raise JobValidationError(
                f"Unsupported jobType '{req.job_type}'. "
                f"Expected one of: {', '.join(sorted(cfg.SUPPORTED_JOB_TYPES))}"
            )
        if req.format not in cfg.SUPPORTED_FORMATS:
            raise JobValidationError(
                f"Unsupported format '{req.format}'. "
                f"Expected one of: {', '.join(sorted(cfg.SUPPORTED_FORMATS))}"
            )
        max_attempts = req.max_attempts if req.max_attempts is not None else cfg.DEFAULT_MAX_ATTEMPTS
        if not 1 <= max_attempts <= cfg.MAX_ATTEMPTS_LIMIT:
            raise JobValidationError(
                f"maxAttempts must be between 1 and {cfg.MAX_ATTEMPTS_LIMIT}, got {max_attempts}"
            )
        key = (req.idempotency_key or "").strip() or None
        if key is not None and len(key) > 128:
            raise JobValidationError("idempotencyKey must be at most 128 characters")
        scheduled_at = req.scheduled_at
        if scheduled_at is not None:
            if scheduled_at.tzinfo is None:
                scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
            horizon = self._clock() + timedelta(seconds=cfg.MAX_SCHEDULE_AHEAD_SECONDS)
            if scheduled_at > horizon:
                raise JobValidationError(
                    f"scheduledAt may be at most {cfg.MAX_SCHEDULE_AHEAD_SECONDS} seconds ahead"
                )
        return JobRequest(
            tenant_id=tenant_id,
            requested_by=req.requested_by.strip(),
            job_type=req.job_type,
            format=req.format,
            params=req.params,
            max_attempts=max_attempts,
            idempotency_key=key,
            scheduled_at=scheduled_at,
        )

    async def submit(
        self,
        req: CreateExportRequest,
        caller_tenant: Optional[str] = None,
    ) -> Tuple[JobRecord, bool]:
        """Create a pending job.  Returns ``(record, created)``.

        ``created`` is ``False`` when an idempotency key matched an earlier
        submission, in which case the earlier job is returned unchanged and
        the throttle is not consulted.
        """
        import audit_export.config as cfg

        request = self.validate(req, caller_tenant)
        if request.idempotency_key:
            existing = await self._store.get_by_idempotency_key(
                request.tenant_id, request.idempotency_key
            )
            if existing is not None:
                logger.info(
                    "Idempotent replay of export %s for tenant %s", existing.job_id, request.tenant_id
                )
                return existing, False

        active = await self._store.count_active(request.tenant_id)
        if active >= cfg.MAX_ACTIVE_JOBS_PER_TENANT:
            raise TenantThrottledError(
                f"Tenant already has {active} active exports "
                f"(limit {cfg.MAX_ACTIVE_JOBS_PER_TENANT}). Try again once one finishes."
            )
        rec = await self._store.create_job(request)
        return rec, True

    @staticmethod
    def created_response(rec: JobRecord) -> CreateExportResponse:
        import audit_export.config as cfg

        return CreateExportResponse(
            job_id=rec.job_id,
            status=rec.status,
            poll=PollHint(
                interval_seconds=cfg.POLL_INTERVAL_SECONDS,
                timeout_seconds=cfg.POLL_TIMEOUT_SECONDS,
                status_url=f"/api/exports/{rec.job_id}",
            ),
        )

    async def resubmit(self, job_id: str, tenant_id: str) -> JobRecord:
        """Queue a fresh job with the same descriptors as a failed one.

        The failed job is left untouched; terminal records are never reopened.
        """
        import audit_export.config as cfg

        rec = await self._require(job_id, tenant_id)
        if rec.status != JobStatus.failed:
            raise JobValidationError(
                f"Only failed exports can be resubmitted; job '{job_id}' is {rec.status.value}"
            )
        active = await self._store.count_active(tenant_id)
        if active >= cfg.MAX_ACTIVE_JOBS_PER_TENANT:
            raise TenantThrottledError(
                f"Tenant already has {active} active exports "
                f"(limit {cfg.MAX_ACTIVE_JOBS_PER_TENANT}). Try again once one finishes."
            )
        fresh = await self._store.create_job(JobRequest(
            tenant_id=rec.tenant_id,
            requested_by=rec.requested_by,
            job_type=rec.job_type,
            format=rec.format,
            params=rec.params,
            max_attempts=rec.max_attempts,
        ))
        logger.info("Resubmitted failed export %s as %s", job_id, fresh.job_id)
        return fresh

    # ── Reads ────────────────────────────────────────────────────────

    async def _require(self, job_id: str, tenant_id: str) -> JobRecord:
        rec = await self._store.get_job(job_id, tenant_id)
        if rec is None:
            raise JobNotFoundError(f"Export '{job_id}' not found")
        return rec

    async def status(self, job_id: str, tenant_id: str) -> ExportStatusResponse:
        return ExportStatusResponse.from_record(await self._require(job_id, tenant_id))

    async def list_exports(
        self,
        tenant_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 50,
    ) -> List[ExportSummary]:
        jobs = await self._store.list_jobs(tenant_id, status=status, limit=limit)
        return [ExportSummary.from_record(j) for j in jobs]

    async def list_failed(self, tenant_id: str, limit: int = 50) -> List[ExportSummary]:
        jobs = await self._store.list_failed(tenant_id, limit=limit)
        return [ExportSummary.from_record(j) for j in jobs]

    async def queue_stats(self) -> Dict[str, int]:
        return await self._store.stats()

    # ── Download channel ─────────────────────────────────────────────

    async def issue_download_token(self, job_id: str, tenant_id: str) -> DownloadTokenResponse:
        """Mint a token for a job the caller owns.

        Tokens may be issued before the job completes; the gateway answers
        202 until it does.  Failed jobs never will, so they are refused.
        """
        rec = await self._require(job_id, tenant_id)
        if rec.status == JobStatus.failed:
            raise ExportFailedError(f"Export '{job_id}' failed: {rec.last_error or 'unknown error'}")
        token, payload = self._issuer.mint(rec.job_id, rec.tenant_id)
        logger.info("Issued download token for export %s (tenant %s)", rec.job_id, rec.tenant_id)
        return DownloadTokenResponse(
            token=token,
            expires_at=payload.expires_at_datetime,
            download_url=f"{DOWNLOAD_PATH}?token={token}",
        )

    async def resolve_download(self, token: Optional[str]) -> str:
        """Validate *token* and return the URL to redirect to.

        Locally served artifacts get a signed link that expires with the
        artifact or after ``ARTIFACT_LINK_TTL_SECONDS``, whichever is first.

        Checks run in a fixed order: token, ownership, state, expiry, locator.
        """
        payload: Optional[DownloadTokenPayload] = self._issuer.validate(token)
        if payload is None:
            logger.warning("Rejected download: invalid token")
            raise InvalidTokenError("Download token is invalid or expired")

        rec = await self._store.get_job(payload.job_id, payload.tenant_id)
        if rec is None:
            owner = await self._store.get_job_tenant(payload.job_id)
            if owner is None:
                raise JobNotFoundError(f"Export '{payload.job_id}' not found")
            logger.warning(
                "Rejected download of export %s: token tenant does not own it", payload.job_id
            )
            raise TenantMismatchError("Download token does not grant access to this export")

        if rec.status == JobStatus.failed:
            raise ExportFailedError(f"Export '{rec.job_id}' failed: {rec.last_error or 'unknown error'}")
        if rec.status != JobStatus.completed:
            raise ExportNotReadyError(
                f"Export '{rec.job_id}' is not ready yet",
                data={"jobId": rec.job_id, "status": rec.status.value, "progress": rec.progress},
            )

        artifact = rec.artifact
        if artifact is not None and artifact.expires_at <= self._clock():
            raise ArtifactExpiredError(f"Export '{rec.job_id}' has expired")
        if artifact is None or not artifact.locator:
            logger.error("Completed export %s has no artifact locator", rec.job_id)
            raise ArtifactUnavailableError("Export artifact is unavailable")
        logger.info("Download of export %s granted", rec.job_id)
        if self._is_local(artifact.locator):
            return self._signed_link(artifact.locator, artifact.expires_at)
        return artifact.locator

    def _is_local(self, locator: str) -> bool:
        return self._artifact_base_url is not None and locator.startswith(self._artifact_base_url + "/")

    def _signed_link(self, locator: str, artifact_expires_at: datetime) -> str:
        import audit_export.config as cfg

        link_deadline = self._clock() + timedelta(seconds=cfg.ARTIFACT_LINK_TTL_SECONDS)
        expires = int(min(artifact_expires_at, link_deadline).timestamp())
        signature = self._issuer.sign_link(locator, expires)
        return f"{locator}?expires={expires}&signature={signature}"

    def check_artifact_link(
        self,
        filename: str,
        expires: Optional[int],
        signature: Optional[str],
    ) -> None:
        """Admit a fetch of a locally served artifact through a gateway-issued link.

        Raises
        ------
        ArtifactNotFoundError
            No artifacts are served by this process.
        InvalidTokenError
            The link was not signed by the gateway (or was altered).
        ArtifactExpiredError
            The link has passed its expiry, which never exceeds the artifact's.
        """
        if self._artifact_base_url is None:
            raise ArtifactNotFoundError("Artifact not found")
        path = f"{self._artifact_base_url}/{filename}"
        if not self._issuer.verify_link(path, expires, signature):
            logger.warning("Rejected artifact fetch: invalid link")
            raise InvalidTokenError("Artifact link is invalid")
        if self._clock().timestamp() >= expires:
            raise ArtifactExpiredError("Artifact link has expired")
