"""FastAPI application factory and server entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import ApiSettings
from .deps.providers import get_claim_processor, get_job_store, get_settings, use_settings
from .errors import register_error_handlers

logger = logging.getLogger(__name__)


def _configure_logging(settings: ApiSettings) -> None:
    """Apply the engine's log level and format to the root logger."""
    import audit_export.config as cfg

    level_name = settings.log_level or cfg.LOG_LEVEL
    effective_level = getattr(logging, level_name.upper(), logging.INFO)

    logging.basicConfig(
        level=effective_level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    if cfg.LOG_FORMAT == "json":
        from ..utils.logging import StructuredFormatter

        for handler in logging.getLogger().handlers:
            handler.setFormatter(StructuredFormatter())


def _log_config_issues() -> None:
    from audit_export.config import validate_config

    issues = validate_config()
    for issue in issues:
        level = issue.get("level", "WARNING")
        msg = issue.get("message", "")
        if level == "ERROR":
            logger.error("Config validation: %s", msg)
        else:
            logger.warning("Config validation: %s", msg)
    if not issues:
        logger.info("Config validation: all checks passed")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    settings: ApiSettings = get_settings()

    _configure_logging(settings)
    logger.info("Starting audit_export API on %s:%s", settings.host, settings.port)
    _log_config_issues()

    # Attach log buffer handler
    from .routers.logs import setup_log_buffer, teardown_log_buffer
    setup_log_buffer()

    # Initialise async resources
    store = get_job_store()
    await store.initialize()

    # Optional in-process worker; production deployments run run_worker.py
    stop_event = asyncio.Event()
    worker_task = None
    if settings.worker_enabled:
        processor = get_claim_processor()
        worker_task = asyncio.create_task(processor.run_forever(stop_event))
        logger.info("In-process worker %s enabled", processor.worker_id)

    yield

    # Cleanup
    stop_event.set()
    if worker_task is not None:
        try:
            await asyncio.wait_for(worker_task, timeout=30)
        except asyncio.TimeoutError:
            logger.warning("In-process worker did not stop in time; cancelling")
            worker_task.cancel()
    await store.close()
    teardown_log_buffer()
    logger.info("Shutting down audit_export API")


def create_app(settings: ApiSettings | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = get_settings()
    else:
        use_settings(settings)

    app = FastAPI(
        title="Audit Export API",
        description="Asynchronous compliance export jobs: submission, status polling and signed downloads.",
        version="1.0.0",
        lifespan=_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS
    origins = [o.strip() for o in settings.cors_origins.split(",")]
    allow_creds = "*" not in origins
    if not allow_creds:
        logger.warning(
            "CORS_ORIGINS contains '*'. Credentials will NOT be allowed. "
            "Set explicit origins (e.g. 'http://localhost:5173') for "
            "credentialed cross-origin requests."
        )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_creds,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handlers
    register_error_handlers(app)

    # Routers - imported lazily by module path
    from .routers import all_routers

    for router in all_routers():
        app.include_router(router)

    return app


def run_server() -> None:
    """CLI entry point: ``python -m audit_export.api.main``."""
    import uvicorn

    settings = get_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run_server()
