"""Singleton dependency providers for FastAPI ``Depends()``."""
from __future__ import annotations

import logging
import secrets
from functools import lru_cache

from ..config import ApiSettings, RuntimeConfig

logger = logging.getLogger(__name__)


_settings_override: ApiSettings | None = None


@lru_cache
def _load_settings() -> ApiSettings:
    return ApiSettings()


def get_settings() -> ApiSettings:
    """Settings the app was built with, else the environment-derived ones."""
    return _settings_override or _load_settings()


def use_settings(settings: ApiSettings | None) -> None:
    """Make *settings* what every provider reads.  ``None`` restores the env."""
    global _settings_override
    _settings_override = settings


@lru_cache
def get_runtime_config() -> RuntimeConfig:
    return RuntimeConfig()


# Lazy singletons - initialised at first call rather than import time
# so the event loop is already running when async resources are needed.

_job_store = None
_token_issuer = None
_generator = None
_artifact_storage = None
_claim_processor = None
_export_service = None


def get_job_store():
    """Return the singleton ``JobStore``."""
    global _job_store
    if _job_store is None:
        from ..jobs.store import JobStore

        _job_store = JobStore(get_settings().job_db_path)
    return _job_store


def get_token_issuer():
    """Return the singleton ``DownloadTokenIssuer``."""
    global _token_issuer
    if _token_issuer is None:
        from ..tokens import DownloadTokenIssuer

        secret = get_settings().download_token_secret
        if not secret:
            logger.warning(
                "AUDIT_EXPORT_API_DOWNLOAD_TOKEN_SECRET is not set. Using a random "
                "per-process secret; download tokens will not survive a restart "
                "or work across server processes."
            )
            secret = secrets.token_urlsafe(32)
        _token_issuer = DownloadTokenIssuer(secret)
    return _token_issuer


def get_generator():
    """Return the singleton ``GeneratorRegistry``."""
    global _generator
    if _generator is None:
        from ..jobs.collaborators import GeneratorRegistry, ManifestGenerator

        _generator = GeneratorRegistry(default=ManifestGenerator())
    return _generator


def get_artifact_storage():
    """Return the singleton ``LocalArtifactStorage``."""
    global _artifact_storage
    if _artifact_storage is None:
        import audit_export.config as cfg

        from ..jobs.collaborators import LocalArtifactStorage

        settings = get_settings()
        _artifact_storage = LocalArtifactStorage(
            settings.artifact_dir or cfg.ARTIFACT_DIR,
            base_url=settings.artifact_base_url,
        )
    return _artifact_storage


def get_claim_processor():
    """Return the singleton in-process ``ClaimProcessor``."""
    global _claim_processor
    if _claim_processor is None:
        from ..jobs.worker import ClaimProcessor

        _claim_processor = ClaimProcessor(
            get_job_store(),
            get_generator(),
            get_artifact_storage(),
            worker_id=get_settings().worker_id,
        )
    return _claim_processor


def get_export_service():
    """Return the singleton ``ExportService``."""
    global _export_service
    if _export_service is None:
        from ..services.export_service import ExportService

        _export_service = ExportService(
            get_job_store(),
            get_token_issuer(),
            artifact_base_url=get_settings().artifact_base_url,
        )
    return _export_service


def reset_providers() -> None:
    """Drop every singleton so the next call rebuilds it from settings."""
    global _job_store, _token_issuer, _generator, _artifact_storage
    global _claim_processor, _export_service
    _job_store = None
    _token_issuer = None
    _generator = None
    _artifact_storage = None
    _claim_processor = None
    _export_service = None
    use_settings(None)
    _load_settings.cache_clear()
    get_runtime_config.cache_clear()
