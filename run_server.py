"""API server entry point.

Usage:
    # Development (API only, no background worker):
    python run_server.py

    # Single-process deployment with an in-process claim processor:
    python run_server.py --worker

    # Custom host/port:
    python run_server.py --host 0.0.0.0 --port 9000
"""
from __future__ import annotations

import argparse
import logging

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Audit Export API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--db", default=None, help="Job database path (default: AUDIT_EXPORT_API_JOB_DB_PATH)")
    parser.add_argument("--worker", action="store_true", help="Run a claim processor inside the server")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    import uvicorn

    from audit_export.api.config import ApiSettings
    from audit_export.api.main import create_app

    overrides = {"host": args.host, "port": args.port, "log_level": args.log_level}
    if args.db:
        overrides["job_db_path"] = args.db
    if args.worker:
        overrides["worker_enabled"] = True
    settings = ApiSettings(**overrides)
    app = create_app(settings)

    logger.info("Starting Audit Export API on %s:%s", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
