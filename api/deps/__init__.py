"""Dependency injection providers."""
from .auth import get_optional_tenant_id, get_tenant_id, require_auth
from .providers import (
    get_artifact_storage,
    get_claim_processor,
    get_export_service,
    get_generator,
    get_job_store,
    get_runtime_config,
    get_settings,
    get_token_issuer,
)

__all__ = [
    "get_artifact_storage",
    "get_claim_processor",
    "get_export_service",
    "get_generator",
    "get_job_store",
    "get_optional_tenant_id",
    "get_runtime_config",
    "get_settings",
    "get_tenant_id",
    "get_token_issuer",
    "require_auth",
]
