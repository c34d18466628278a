"""Runtime-adjustable configuration for the API layer."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Set

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Keys that may be patched at runtime via the /api/config endpoint.
_ADJUSTABLE_KEYS: Set[str] = {
    "BACKOFF_BASE_SECONDS",
    "BACKOFF_CAP_SECONDS",
    "BACKOFF_JITTER_SECONDS",
    "DEFAULT_MAX_ATTEMPTS",
    "STALE_LOCK_SECONDS",
    "DOWNLOAD_TOKEN_TTL_SECONDS",
    "MAX_ACTIVE_JOBS_PER_TENANT",
    "WORKER_BATCH_SIZE",
}

# Semantic validators: key -> (validator_fn, human-readable description).
# Validator returns True if the value is acceptable.
CONFIG_VALIDATORS: Dict[str, tuple[Callable[[Any], bool], str]] = {
    "BACKOFF_BASE_SECONDS": (
        lambda v: 0.0 < v <= 3600.0,
        "Must be between 0 (exclusive) and 3600 seconds",
    ),
    "BACKOFF_CAP_SECONDS": (
        lambda v: 0.0 < v <= 86400.0,
        "Must be between 0 (exclusive) and 86400 seconds",
    ),
    "BACKOFF_JITTER_SECONDS": (
        lambda v: 0.0 <= v <= 600.0,
        "Must be between 0 and 600 seconds",
    ),
    "DEFAULT_MAX_ATTEMPTS": (
        lambda v: 1 <= v <= 10,
        "Must be between 1 and 10",
    ),
    "STALE_LOCK_SECONDS": (
        lambda v: 30 <= v <= 86400,
        "Must be between 30 and 86400 seconds",
    ),
    "DOWNLOAD_TOKEN_TTL_SECONDS": (
        lambda v: 60 <= v <= 86400,
        "Must be between 60 and 86400 seconds",
    ),
    "MAX_ACTIVE_JOBS_PER_TENANT": (
        lambda v: 1 <= v <= 1000,
        "Must be between 1 and 1000",
    ),
    "WORKER_BATCH_SIZE": (
        lambda v: 1 <= v <= 500,
        "Must be between 1 and 500",
    ),
}


class ApiSettings(BaseSettings):
    """Immutable settings loaded from environment / .env file."""

    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: str = "http://localhost:5173,http://localhost:8000"
    job_db_path: str = "export_jobs.db"
    log_level: str = "INFO"
    download_token_secret: Optional[str] = None
    artifact_dir: Optional[str] = None
    artifact_base_url: str = "/api/exports/artifacts"
    worker_enabled: bool = False
    worker_id: Optional[str] = None

    model_config = {"env_prefix": "AUDIT_EXPORT_API_"}


class RuntimeConfig:
    """Thin wrapper around engine ``config.py`` module-level variables.

    Provides get/patch semantics restricted to the adjustable whitelist.
    """

    def __init__(self) -> None:
        import audit_export.config as _cfg

        self._cfg = _cfg

    def get_adjustable(self) -> Dict[str, Any]:
        """Return the current value of every adjustable key."""
        out: Dict[str, Any] = {}
        for key in sorted(_ADJUSTABLE_KEYS):
            out[key] = getattr(self._cfg, key, None)
        return out

    def patch(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply validated updates and return the new state.

        All values are coerced and validated before any is applied, so a
        rejected patch leaves the config untouched.

        Raises ``KeyError`` for unknown keys and ``ValueError`` for bad values.
        """
        bad = set(updates) - _ADJUSTABLE_KEYS
        if bad:
            raise KeyError(f"Keys not adjustable: {sorted(bad)}")
        staged: Dict[str, Any] = {}
        for key, value in updates.items():
            current = getattr(self._cfg, key)
            # Coerce to same type as current value
            target_type = type(current)
            if isinstance(value, bool) or (target_type is int and isinstance(value, float) and not value.is_integer()):
                raise ValueError(f"Cannot coerce {key}={value!r} to {target_type.__name__}")
            try:
                coerced = target_type(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Cannot coerce {key}={value!r} to {target_type.__name__}") from exc
            # Semantic validation
            validator = CONFIG_VALIDATORS.get(key)
            if validator is not None:
                check_fn, description = validator
                if not check_fn(coerced):
                    raise ValueError(
                        f"Invalid value for {key}: {coerced!r}. {description}"
                    )
            staged[key] = coerced
        for key, coerced in staged.items():
            setattr(self._cfg, key, coerced)
            logger.info("RuntimeConfig patched %s = %r", key, coerced)
        return self.get_adjustable()
