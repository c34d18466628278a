"""Queue inspection and worker-driving endpoints."""
from __future__ import annotations

import time

from fastapi import APIRouter, Depends, Query

from ..deps.auth import get_tenant_id, require_auth
from ..deps.providers import get_claim_processor, get_export_service
from ..jobs.worker import ClaimProcessor
from ..schemas.envelope import ApiResponse
from ..services.export_service import ExportService

router = APIRouter(prefix="/api/queue", tags=["queue"])


@router.get("/stats", dependencies=[Depends(require_auth)])
async def queue_stats(svc: ExportService = Depends(get_export_service)) -> ApiResponse:
    t0 = time.monotonic()
    stats = await svc.queue_stats()
    elapsed = (time.monotonic() - t0) * 1000
    return ApiResponse.success(stats, elapsed_ms=elapsed)


@router.get("/failed")
async def failed_exports(
    limit: int = Query(50, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    svc: ExportService = Depends(get_export_service),
) -> ApiResponse:
    jobs = await svc.list_failed(tenant_id, limit=limit)
    return ApiResponse.success([j.to_wire() for j in jobs])


@router.post("/run-once", dependencies=[Depends(require_auth)])
async def run_worker_batch(
    batch_size: int = Query(10, ge=1, le=500),
    processor: ClaimProcessor = Depends(get_claim_processor),
) -> ApiResponse:
    t0 = time.monotonic()
    result = await processor.run_once(batch_size)
    elapsed = (time.monotonic() - t0) * 1000
    return ApiResponse.success(
        {"workerId": processor.worker_id, **result.as_dict()}, elapsed_ms=elapsed
    )
