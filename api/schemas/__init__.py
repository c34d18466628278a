"""Pydantic schemas for API request/response models."""
from .envelope import ApiResponse, ResponseMeta
from .exports import (
    CreateExportRequest,
    CreateExportResponse,
    DownloadTokenResponse,
    ExportStatusResponse,
    ExportSummary,
)

__all__ = [
    "ApiResponse",
    "CreateExportRequest",
    "CreateExportResponse",
    "DownloadTokenResponse",
    "ExportStatusResponse",
    "ExportSummary",
    "ResponseMeta",
]
