"""Tests for submission, polling and the download gateway at the service layer."""
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest

from audit_export.api.errors import (
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
from audit_export.api.jobs.backoff import BackoffPolicy
from audit_export.api.jobs.collaborators import Permanent, Retryable, StoredArtifact
from audit_export.api.jobs.models import JobStatus
from audit_export.api.jobs.worker import ClaimProcessor
from audit_export.api.schemas.exports import CreateExportRequest
from audit_export.api.services.export_service import ExportService
from audit_export.api.tokens import DownloadTokenIssuer


class FixedSizeGenerator:
    def __init__(self, *failures, size=1024):
        self.failures = list(failures)
        self.size = size

    def generate(self, spec, progress):
        if self.failures:
            return self.failures.pop(0)
        progress(50)
        return b"\x00" * self.size


class OneHourStorage:
    def __init__(self, clock, locator=None):
        self.clock = clock
        self.locator = locator

    def store(self, spec, content):
        return StoredArtifact(
            locator=self.locator if self.locator is not None else f"https://cdn.example.com/{spec.job_id}.pdf",
            size_bytes=len(content),
            expires_at=self.clock() + timedelta(seconds=3600),
        )


@pytest.fixture
def issuer(clock):
    return DownloadTokenIssuer("service-test-secret", clock=clock)


@pytest.fixture
def service(store, issuer, clock):
    return ExportService(store, issuer, clock=clock)


def _worker(store, clock, generator, storage=None):
    return ClaimProcessor(
        store,
        generator,
        storage or OneHourStorage(clock),
        worker_id="svc-worker",
        policy=BackoffPolicy(base=5, cap=300, jitter=2),
        clock=clock,
        rand=lambda: 0.5,
    )


def _submission(**overrides):
    body = {
        "jobType": "soc2",
        "format": "pdf",
        "tenantId": "tenant-a",
        "requestedBy": "auditor@example.com",
    }
    body.update(overrides)
    return CreateExportRequest.model_validate(body)


# ── End-to-end scenarios ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_happy_path_download_then_expiry(service, store, clock):
    rec, created = await service.submit(_submission())
    assert created
    assert rec.status == JobStatus.pending

    result = await _worker(store, clock, FixedSizeGenerator()).run_once()
    assert result.succeeded == 1

    status = await service.status(rec.job_id, "tenant-a")
    assert status.status == JobStatus.completed
    assert status.progress == 100
    assert status.error_message is None
    done = await store.load_job(rec.job_id)
    assert done.artifact.size_bytes == 1024
    assert done.artifact.expires_at == clock() + timedelta(seconds=3600)

    issued = await service.issue_download_token(rec.job_id, "tenant-a")
    clock.advance(minutes=10)
    assert await service.resolve_download(issued.token) == f"https://cdn.example.com/{rec.job_id}.pdf"

    clock.advance(seconds=3601 - 600)
    with pytest.raises(ArtifactExpiredError):
        await service.resolve_download(issued.token)


@pytest.mark.asyncio
async def test_transient_failure_then_success(service, store, clock):
    rec, _ = await service.submit(_submission())
    worker = _worker(store, clock, FixedSizeGenerator(Retryable("pdf renderer busy")))

    assert (await worker.run_once()).retried == 1
    polled = await service.status(rec.job_id, "tenant-a")
    assert polled.status == JobStatus.pending
    assert polled.error_message is None

    clock.advance(seconds=60)
    assert (await worker.run_once()).succeeded == 1
    done = await store.load_job(rec.job_id)
    assert done.status == JobStatus.completed
    assert done.attempt_count == 2


@pytest.mark.asyncio
async def test_exhaustion_surfaces_error_message(service, store, clock):
    rec, _ = await service.submit(_submission(maxAttempts=3))
    worker = _worker(store, clock, FixedSizeGenerator(*[Retryable("scoring service down")] * 5))

    for _ in range(5):
        await worker.run_once()
        clock.advance(seconds=600)

    status = await service.status(rec.job_id, "tenant-a")
    assert status.status == JobStatus.failed
    assert status.error_message == "scoring service down"
    final = await store.load_job(rec.job_id)
    assert final.attempt_count == 3
    assert final.last_error is not None


# ── Submission ───────────────────────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"jobType": "tax_return"},
        {"format": "docx"},
        {"tenantId": ""},
        {"tenantId": "t" * 65},
        {"requestedBy": "  "},
        {"maxAttempts": 0},
        {"maxAttempts": 11},
    ],
)
async def test_invalid_submissions_rejected(service, store, overrides):
    with pytest.raises(JobValidationError):
        await service.submit(_submission(**overrides))
    assert (await store.stats())["total"] == 0


@pytest.mark.asyncio
async def test_submission_for_other_tenant_rejected(service):
    with pytest.raises(TenantMismatchError):
        await service.submit(_submission(), caller_tenant="tenant-b")


@pytest.mark.asyncio
async def test_default_max_attempts_from_config(service):
    import audit_export.config as cfg

    cfg.DEFAULT_MAX_ATTEMPTS = 5
    rec, _ = await service.submit(_submission())
    assert rec.max_attempts == 5


@pytest.mark.asyncio
async def test_throttle_counts_active_jobs(service):
    import audit_export.config as cfg

    cfg.MAX_ACTIVE_JOBS_PER_TENANT = 2
    await service.submit(_submission())
    await service.submit(_submission())
    with pytest.raises(TenantThrottledError):
        await service.submit(_submission())
    # Other tenants are unaffected
    await service.submit(_submission(tenantId="tenant-b"))


@pytest.mark.asyncio
async def test_idempotent_replay_skips_throttle(service):
    import audit_export.config as cfg

    cfg.MAX_ACTIVE_JOBS_PER_TENANT = 1
    first, created = await service.submit(_submission(idempotencyKey="weekly-soc2"))
    again, created_again = await service.submit(_submission(idempotencyKey="weekly-soc2"))
    assert created and not created_again
    assert again.job_id == first.job_id


@pytest.mark.asyncio
async def test_resubmit_creates_new_job_and_leaves_failed_one(service, store, clock):
    rec, _ = await service.submit(_submission())
    await _worker(store, clock, FixedSizeGenerator(Permanent("bad template"))).run_once()
    failed = await store.load_job(rec.job_id)

    fresh = await service.resubmit(rec.job_id, "tenant-a")
    assert fresh.job_id != rec.job_id
    assert fresh.status == JobStatus.pending
    assert fresh.job_type == failed.job_type
    assert (await store.load_job(rec.job_id)).model_dump() == failed.model_dump()


@pytest.mark.asyncio
async def test_resubmit_requires_failed_job(service):
    rec, _ = await service.submit(_submission())
    with pytest.raises(JobValidationError):
        await service.resubmit(rec.job_id, "tenant-a")
    with pytest.raises(JobNotFoundError):
        await service.resubmit(rec.job_id, "tenant-b")


# ── Gateway ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_status_of_other_tenant_job_is_not_found(service):
    rec, _ = await service.submit(_submission())
    with pytest.raises(JobNotFoundError):
        await service.status(rec.job_id, "tenant-b")


@pytest.mark.asyncio
@pytest.mark.parametrize("token", [None, "", "garbage", "a.b"])
async def test_gateway_rejects_invalid_tokens(service, token):
    with pytest.raises(InvalidTokenError):
        await service.resolve_download(token)


@pytest.mark.asyncio
async def test_gateway_rejects_expired_token(service, store, clock):
    rec, _ = await service.submit(_submission())
    await _worker(store, clock, FixedSizeGenerator()).run_once()
    issued = await service.issue_download_token(rec.job_id, "tenant-a")
    clock.advance(seconds=7201)
    with pytest.raises(InvalidTokenError):
        await service.resolve_download(issued.token)


@pytest.mark.asyncio
async def test_gateway_distinguishes_mismatch_from_missing(service, issuer):
    rec, _ = await service.submit(_submission())
    with pytest.raises(TenantMismatchError):
        await service.resolve_download(issuer.issue(rec.job_id, "tenant-b"))
    with pytest.raises(JobNotFoundError):
        await service.resolve_download(issuer.issue("0" * 32, "tenant-a"))


@pytest.mark.asyncio
async def test_gateway_reports_not_ready_with_progress(service, store, clock):
    rec, _ = await service.submit(_submission())
    issued = await service.issue_download_token(rec.job_id, "tenant-a")
    with pytest.raises(ExportNotReadyError) as excinfo:
        await service.resolve_download(issued.token)
    assert excinfo.value.data == {"jobId": rec.job_id, "status": "pending", "progress": 0}

    await _worker(store, clock, FixedSizeGenerator()).claim()
    with pytest.raises(ExportNotReadyError) as excinfo:
        await service.resolve_download(issued.token)
    assert excinfo.value.data["status"] == "processing"


@pytest.mark.asyncio
async def test_gateway_and_issuance_refuse_failed_jobs(service, store, clock):
    rec, _ = await service.submit(_submission())
    issued = await service.issue_download_token(rec.job_id, "tenant-a")
    await _worker(store, clock, FixedSizeGenerator(Permanent("no evidence found"))).run_once()

    with pytest.raises(ExportFailedError):
        await service.resolve_download(issued.token)
    with pytest.raises(ExportFailedError):
        await service.issue_download_token(rec.job_id, "tenant-a")


@pytest.mark.asyncio
async def test_gateway_reports_missing_locator(service, store, clock):
    rec, _ = await service.submit(_submission())
    await _worker(store, clock, FixedSizeGenerator(), storage=OneHourStorage(clock, locator="")).run_once()
    issued = await service.issue_download_token(rec.job_id, "tenant-a")
    with pytest.raises(ArtifactUnavailableError):
        await service.resolve_download(issued.token)


@pytest.mark.asyncio
async def test_token_for_other_tenant_not_issued(service):
    rec, _ = await service.submit(_submission())
    with pytest.raises(JobNotFoundError):
        await service.issue_download_token(rec.job_id, "tenant-b")


# ── Scheduled submissions ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_scheduled_submission_waits_for_its_time(service, store, clock):
    at = clock() + timedelta(minutes=5)
    rec, _ = await service.submit(_submission(scheduledAt=at.isoformat()))
    assert rec.next_run_at == at

    worker = _worker(store, clock, FixedSizeGenerator())
    assert (await worker.run_once()).processed == 0
    clock.advance(minutes=5)
    assert (await worker.run_once()).succeeded == 1


@pytest.mark.asyncio
async def test_naive_scheduled_time_is_read_as_utc(service, clock):
    naive = (clock() + timedelta(hours=1)).replace(tzinfo=None)
    rec, _ = await service.submit(_submission(scheduledAt=naive.isoformat()))
    assert rec.next_run_at == clock() + timedelta(hours=1)


@pytest.mark.asyncio
async def test_schedule_beyond_horizon_rejected(service, store, clock):
    too_late = clock() + timedelta(days=30, seconds=1)
    with pytest.raises(JobValidationError, match="scheduledAt"):
        await service.submit(_submission(scheduledAt=too_late.isoformat()))
    assert (await store.stats())["total"] == 0


# ── Locally served artifacts ─────────────────────────────────────────

LOCAL_BASE = "/api/exports/artifacts"


class LocalLocatorStorage(OneHourStorage):
    def store(self, spec, content):
        stored = super().store(spec, content)
        return StoredArtifact(
            locator=f"{LOCAL_BASE}/{spec.job_id}.pdf",
            size_bytes=stored.size_bytes,
            expires_at=stored.expires_at,
        )


@pytest.fixture
def local_service(store, issuer, clock):
    return ExportService(store, issuer, clock=clock, artifact_base_url=LOCAL_BASE)


async def _local_download(local_service, store, clock):
    rec, _ = await local_service.submit(_submission())
    await _worker(store, clock, FixedSizeGenerator(), storage=LocalLocatorStorage(clock)).run_once()
    issued = await local_service.issue_download_token(rec.job_id, "tenant-a")
    return rec, issued


def _link_parts(url):
    parts = urlsplit(url)
    query = parse_qs(parts.query)
    return parts.path, int(query["expires"][0]), query["signature"][0]


@pytest.mark.asyncio
async def test_local_locator_gets_short_lived_signed_link(local_service, store, clock):
    rec, issued = await _local_download(local_service, store, clock)
    url = await local_service.resolve_download(issued.token)

    path, expires, signature = _link_parts(url)
    assert path == f"{LOCAL_BASE}/{rec.job_id}.pdf"
    assert expires == int((clock() + timedelta(seconds=300)).timestamp())
    local_service.check_artifact_link(f"{rec.job_id}.pdf", expires, signature)

    clock.advance(seconds=300)
    with pytest.raises(ArtifactExpiredError):
        local_service.check_artifact_link(f"{rec.job_id}.pdf", expires, signature)


@pytest.mark.asyncio
async def test_local_link_never_outlives_the_artifact(local_service, store, clock):
    rec, issued = await _local_download(local_service, store, clock)
    artifact_expiry = (await store.load_job(rec.job_id)).artifact.expires_at

    clock.advance(seconds=3500)
    _, expires, signature = _link_parts(await local_service.resolve_download(issued.token))
    assert expires == int(artifact_expiry.timestamp())

    clock.advance(seconds=100)
    with pytest.raises(ArtifactExpiredError):
        local_service.check_artifact_link(f"{rec.job_id}.pdf", expires, signature)


@pytest.mark.asyncio
async def test_altered_local_link_rejected(local_service, store, clock):
    rec, issued = await _local_download(local_service, store, clock)
    _, expires, signature = _link_parts(await local_service.resolve_download(issued.token))

    with pytest.raises(InvalidTokenError):
        local_service.check_artifact_link(f"{rec.job_id}.pdf", expires + 3600, signature)
    with pytest.raises(InvalidTokenError):
        local_service.check_artifact_link("someone-else.pdf", expires, signature)
    with pytest.raises(InvalidTokenError):
        local_service.check_artifact_link(f"{rec.job_id}.pdf", None, None)


@pytest.mark.asyncio
async def test_artifact_links_refused_without_local_storage(service, clock):
    with pytest.raises(ArtifactNotFoundError):
        service.check_artifact_link("x.pdf", int(clock().timestamp()) + 60, "sig")


@pytest.mark.asyncio
async def test_remote_locator_is_returned_unsigned(local_service, store, clock):
    rec, _ = await local_service.submit(_submission())
    await _worker(store, clock, FixedSizeGenerator()).run_once()
    issued = await local_service.issue_download_token(rec.job_id, "tenant-a")
    assert await local_service.resolve_download(issued.token) == f"https://cdn.example.com/{rec.job_id}.pdf"
