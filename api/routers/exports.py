"""Export submission, status polling and download endpoints."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import FileResponse, RedirectResponse

from ..deps.auth import get_optional_tenant_id, get_tenant_id, require_auth
from ..deps.providers import get_artifact_storage, get_export_service
from ..errors import ArtifactNotFoundError
from ..jobs.collaborators import LocalArtifactStorage
from ..jobs.models import JobStatus
from ..schemas.envelope import ApiResponse
from ..schemas.exports import CreateExportRequest
from ..services.export_service import ExportService

router = APIRouter(prefix="/api/exports", tags=["exports"])


@router.post("", status_code=201, dependencies=[Depends(require_auth)])
async def create_export(
    body: CreateExportRequest,
    response: Response,
    caller_tenant: Optional[str] = Depends(get_optional_tenant_id),
    svc: ExportService = Depends(get_export_service),
) -> ApiResponse:
    rec, created = await svc.submit(body, caller_tenant)
    if not created:
        response.status_code = 200
    return ApiResponse.success(svc.created_response(rec).to_wire())


@router.get("")
async def list_exports(
    status: Optional[JobStatus] = None,
    limit: int = Query(50, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    svc: ExportService = Depends(get_export_service),
) -> ApiResponse:
    jobs = await svc.list_exports(tenant_id, status=status, limit=limit)
    return ApiResponse.success([j.to_wire() for j in jobs])


# Declared before /{job_id} so "download" is not captured as a job id.
@router.get("/download")
async def download_export(
    token: Optional[str] = None,
    svc: ExportService = Depends(get_export_service),
) -> RedirectResponse:
    locator = await svc.resolve_download(token)
    return RedirectResponse(url=locator, status_code=307)


@router.get("/artifacts/{filename}")
async def fetch_artifact(
    filename: str,
    expires: Optional[int] = None,
    signature: Optional[str] = None,
    svc: ExportService = Depends(get_export_service),
    storage: LocalArtifactStorage = Depends(get_artifact_storage),
) -> FileResponse:
    """Serve a locally stored artifact to a holder of a gateway-signed link."""
    svc.check_artifact_link(filename, expires, signature)
    path = storage.path_for(filename)
    if path is None:
        raise ArtifactNotFoundError("Artifact not found")
    return FileResponse(path)


@router.get("/{job_id}")
async def get_export_status(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    svc: ExportService = Depends(get_export_service),
) -> ApiResponse:
    status = await svc.status(job_id, tenant_id)
    return ApiResponse.success(status.to_wire())


@router.post("/{job_id}/download-token")
async def create_download_token(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    svc: ExportService = Depends(get_export_service),
) -> ApiResponse:
    issued = await svc.issue_download_token(job_id, tenant_id)
    return ApiResponse.success(issued.to_wire())


@router.post("/{job_id}/resubmit", status_code=201, dependencies=[Depends(require_auth)])
async def resubmit_export(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    svc: ExportService = Depends(get_export_service),
) -> ApiResponse:
    rec = await svc.resubmit(job_id, tenant_id)
    return ApiResponse.success(svc.created_response(rec).to_wire())
