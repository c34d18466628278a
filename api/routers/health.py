"""Service health endpoint."""
from __future__ import annotations

import time

from fastapi import APIRouter, Depends

from ..deps.providers import get_job_store, get_settings
from ..jobs.store import JobStore, StoreUnavailableError
from ..schemas.envelope import ApiResponse

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health(store: JobStore = Depends(get_job_store)) -> ApiResponse:
    """Liveness plus a job-store probe.  Always 200; ``status`` says how healthy."""
    t0 = time.monotonic()
    settings = get_settings()
    warnings = []
    try:
        stats = await store.stats()
        status = "ok"
    except StoreUnavailableError as exc:
        stats = None
        status = "degraded"
        warnings.append(str(exc))
    if stats and stats.get("stale"):
        warnings.append(f"{stats['stale']} processing job(s) hold a stale lock")
    if not settings.download_token_secret:
        warnings.append("Download token secret not configured; using a per-process secret")
    elapsed = (time.monotonic() - t0) * 1000
    return ApiResponse.success(
        {
            "status": status,
            "queue": stats,
            "workerEnabled": settings.worker_enabled,
        },
        elapsed_ms=elapsed,
        warnings=warnings,
    )
