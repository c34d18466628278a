"""Shared test fixtures for the audit_export test suite."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest


def pytest_sessionfinish(session, exitstatus):
    """Spawn a watchdog that force-exits if the process hangs at shutdown.

    aiosqlite worker threads and ThreadPoolExecutor atexit handlers can
    block interpreter shutdown.  This watchdog ensures pytest exits within a
    few seconds of test completion.
    """
    import os
    import threading
    import time

    def _watchdog():
        time.sleep(5)
        os._exit(exitstatus)

    t = threading.Thread(target=_watchdog, daemon=True)
    t.start()


# ── Time ─────────────────────────────────────────────────────────────


class FakeClock:
    """Manually advanced UTC clock shared by store, worker and issuer."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def restore_engine_config():
    """Undo runtime config patches made by a test."""
    import audit_export.config as cfg
    from audit_export.api.config import _ADJUSTABLE_KEYS

    saved = {key: getattr(cfg, key) for key in _ADJUSTABLE_KEYS}
    yield
    for key, value in saved.items():
        setattr(cfg, key, value)


# ── Store / worker fixtures ──────────────────────────────────────────


@pytest.fixture
async def store(tmp_path, clock):
    from audit_export.api.jobs.store import JobStore

    s = JobStore(str(tmp_path / "jobs.db"), clock=clock)
    await s.initialize()
    yield s
    await s.close()


def make_request(tenant_id: str = "tenant-a", **overrides):
    from audit_export.api.jobs.models import JobRequest

    fields = {
        "tenant_id": tenant_id,
        "requested_by": "auditor@example.com",
        "job_type": "soc2",
        "format": "pdf",
        "max_attempts": 3,
    }
    fields.update(overrides)
    return JobRequest(**fields)


@pytest.fixture
def job_request():
    return make_request


# ── API fixtures ─────────────────────────────────────────────────────


@pytest.fixture
async def app(tmp_path, clock):
    """Create a test FastAPI app with a fresh per-test store and fake clock."""
    import audit_export.api.deps.auth as _auth
    import audit_export.api.deps.providers as _prov
    from audit_export.api.config import ApiSettings
    from audit_export.api.jobs.collaborators import (
        GeneratorRegistry,
        LocalArtifactStorage,
        ManifestGenerator,
    )
    from audit_export.api.jobs.store import JobStore
    from audit_export.api.jobs.worker import ClaimProcessor
    from audit_export.api.main import create_app
    from audit_export.api.services.export_service import ExportService
    from audit_export.api.tokens import DownloadTokenIssuer

    # Disable auth for tests so mutation endpoints are accessible
    _orig_auth_enabled = _auth.API_AUTH_ENABLED
    _auth.API_AUTH_ENABLED = False

    settings = ApiSettings(
        job_db_path=str(tmp_path / "test_jobs.db"),
        artifact_dir=str(tmp_path / "artifacts"),
        download_token_secret="test-download-secret",
    )

    store = JobStore(settings.job_db_path, clock=clock)
    await store.initialize()
    issuer = DownloadTokenIssuer(settings.download_token_secret, clock=clock)
    generator = GeneratorRegistry(default=ManifestGenerator(clock=clock))
    storage = LocalArtifactStorage(
        settings.artifact_dir, base_url=settings.artifact_base_url, clock=clock
    )

    # Inject into the provider module
    _prov._job_store = store
    _prov._token_issuer = issuer
    _prov._generator = generator
    _prov._artifact_storage = storage
    _prov._claim_processor = ClaimProcessor(
        store, generator, storage, worker_id="test-worker", clock=clock, rand=lambda: 0.0
    )
    _prov._export_service = ExportService(
        store, issuer, clock=clock, artifact_base_url=settings.artifact_base_url
    )

    application = create_app(settings)
    yield application

    # Cleanup
    await store.close()
    _auth.API_AUTH_ENABLED = _orig_auth_enabled
    _prov.reset_providers()


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
