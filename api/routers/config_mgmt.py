"""Runtime config management endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from ..config import RuntimeConfig
from ..deps.auth import require_auth
from ..deps.providers import get_runtime_config
from ..errors import ConfigValidationError
from ..schemas.envelope import ApiResponse

router = APIRouter(prefix="/api/config", tags=["config"])


@router.get("")
async def get_config(rc: RuntimeConfig = Depends(get_runtime_config)) -> ApiResponse:
    return ApiResponse.success(rc.get_adjustable())


@router.get("/validate")
async def validate_config_endpoint() -> ApiResponse:
    """Run config validation and return any issues found.

    Each issue has a ``level`` (WARNING or ERROR) and a ``message``
    describing what is wrong and how to fix it.
    """
    from audit_export.config import validate_config
    issues = validate_config()
    return ApiResponse.success({
        "issues": issues,
        "count": len(issues),
        "errors": sum(1 for i in issues if i.get("level") == "ERROR"),
        "warnings": sum(1 for i in issues if i.get("level") == "WARNING"),
    })


@router.patch("", dependencies=[Depends(require_auth)])
async def patch_config(
    updates: dict = Body(...),
    rc: RuntimeConfig = Depends(get_runtime_config),
) -> ApiResponse:
    try:
        new_state = rc.patch(updates)
    except KeyError as exc:
        raise ConfigValidationError(exc.args[0]) from exc
    except ValueError as exc:
        raise ConfigValidationError(str(exc)) from exc
    return ApiResponse.success(new_state)
