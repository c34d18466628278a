"""Custom exceptions and FastAPI error handler registration."""
from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .jobs.store import StoreUnavailableError
from .schemas.envelope import ApiResponse

logger = logging.getLogger(__name__)


# ── Custom Exceptions ────────────────────────────────────────────────


class ApiError(Exception):
    """Base for errors that carry structured detail for the response body."""

    def __init__(self, message: str, *, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.data = data


class JobValidationError(ApiError):
    """Export submission has an unknown type/format or out-of-range options."""


class InvalidTokenError(ApiError):
    """Download token is missing, malformed, forged, or expired."""


class TenantMismatchError(ApiError):
    """Caller's tenant does not own the requested job."""


class JobNotFoundError(ApiError):
    """Requested job ID does not exist."""


class ExportNotReadyError(ApiError):
    """Job exists but has not completed yet; ``data`` carries status and progress."""


class ExportFailedError(ApiError):
    """Job reached the failed state and will never produce an artifact."""


class ArtifactExpiredError(ApiError):
    """Artifact existed but is past its retention window."""


class ArtifactNotFoundError(ApiError):
    """Signed artifact link names a file this process does not hold."""


class ArtifactUnavailableError(ApiError):
    """Completed job has no usable artifact locator."""


class TenantThrottledError(ApiError):
    """Tenant already has the maximum number of active exports."""


class ConfigValidationError(ApiError):
    """Runtime config patch contains invalid keys or values."""


class ServiceUnavailableError(ApiError):
    """A dependency is not ready (e.g. the job database)."""


# ── Error → HTTP mapping ────────────────────────────────────────────

_EXCEPTION_STATUS = {
    JobValidationError: 422,
    InvalidTokenError: 401,
    TenantMismatchError: 403,
    JobNotFoundError: 404,
    ExportNotReadyError: 202,
    ExportFailedError: 409,
    ArtifactExpiredError: 410,
    ArtifactNotFoundError: 404,
    ArtifactUnavailableError: 500,
    TenantThrottledError: 429,
    ConfigValidationError: 422,
    ServiceUnavailableError: 503,
    StoreUnavailableError: 503,
}


def _make_handler(status_code: int):
    """Create a handler that wraps an exception in ApiResponse."""

    async def _handler(request: Request, exc: Exception) -> JSONResponse:
        resp = ApiResponse.fail(str(exc), data=getattr(exc, "data", None))
        return JSONResponse(status_code=status_code, content=resp.model_dump())

    return _handler


def register_error_handlers(app: FastAPI) -> None:
    """Register custom exception handlers on the FastAPI app."""
    for exc_cls, status in _EXCEPTION_STATUS.items():
        app.add_exception_handler(exc_cls, _make_handler(status))

    # Catch-all for unexpected errors (also handles module-aliased exceptions)
    _NAME_STATUS = {cls.__name__: code for cls, code in _EXCEPTION_STATUS.items()}

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        # Known exceptions can bypass registered handlers through module
        # aliasing (api.errors.X vs audit_export.api.errors.X)
        status = _NAME_STATUS.get(type(exc).__name__)
        if status is not None:
            resp = ApiResponse.fail(str(exc), data=getattr(exc, "data", None))
            return JSONResponse(status_code=status, content=resp.model_dump())
        logger.error("Unhandled error: %s\n%s", exc, traceback.format_exc())
        resp = ApiResponse.fail("Internal server error")
        return JSONResponse(status_code=500, content=resp.model_dump())
