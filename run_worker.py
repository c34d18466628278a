"""Standalone claim-processor entry point.

Usage:
    # Two workers polling the default job database until Ctrl+C:
    python run_worker.py --workers 2

    # Drain whatever is due right now and exit:
    python run_worker.py --once

    # Plug in a real renderer (any object with generate(spec, progress)):
    python run_worker.py --generator mypkg.reports:PdfGenerator
"""
from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import signal

logger = logging.getLogger(__name__)


def _load_generator(path: str):
    """Resolve ``module:attr``; classes are instantiated with no arguments."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise SystemExit(f"--generator must look like 'module:attr', got {path!r}")
    obj = getattr(importlib.import_module(module_name), attr)
    return obj() if isinstance(obj, type) else obj


async def _run(args: argparse.Namespace) -> int:
    import audit_export.config as cfg
    from audit_export.api.config import ApiSettings
    from audit_export.api.jobs.collaborators import (
        GeneratorRegistry,
        LocalArtifactStorage,
        ManifestGenerator,
    )
    from audit_export.api.jobs.store import JobStore
    from audit_export.api.jobs.worker import ClaimProcessor, ProcessResult

    settings = ApiSettings()
    db_path = args.db or settings.job_db_path
    generator = GeneratorRegistry(
        default=_load_generator(args.generator) if args.generator else ManifestGenerator()
    )
    storage = LocalArtifactStorage(
        settings.artifact_dir or cfg.ARTIFACT_DIR,
        base_url=settings.artifact_base_url,
    )

    # Each worker holds its own connection, like separate processes would
    stores = [JobStore(db_path) for _ in range(args.workers)]
    processors = [
        ClaimProcessor(store, generator, storage, worker_id=(f"{args.worker_id}-{i}" if args.worker_id else None))
        for i, store in enumerate(stores)
    ]
    for store in stores:
        await store.initialize()

    try:
        if args.once:
            results = await asyncio.gather(*(p.run_once(args.batch_size) for p in processors))
            total = ProcessResult()
            for r in results:
                for key, value in r.as_dict().items():
                    setattr(total, key, getattr(total, key) + value)
            logger.info("Drained queue", extra={"metrics": total.as_dict()})
            return 1 if total.failed else 0

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C still raises
                pass
        logger.info("Starting %d worker(s) on %s", len(processors), db_path)
        await asyncio.gather(*(p.run_forever(stop_event, args.poll_interval) for p in processors))
        return 0
    finally:
        for store in stores:
            await store.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Audit Export claim processor")
    parser.add_argument("--workers", type=int, default=1, help="Independent workers to run (default: 1)")
    parser.add_argument("--db", default=None, help="Job database path (default: AUDIT_EXPORT_API_JOB_DB_PATH)")
    parser.add_argument("--worker-id", default=None, help="Worker id prefix (default: random)")
    parser.add_argument("--generator", default=None, help="Generator as module:attr (default: JSON manifest)")
    parser.add_argument("--batch-size", type=int, default=None, help="Jobs per batch (default: WORKER_BATCH_SIZE)")
    parser.add_argument("--poll-interval", type=float, default=None, help="Idle sleep in seconds")
    parser.add_argument("--once", action="store_true", help="Process one batch per worker and exit")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()
    if args.workers < 1:
        parser.error("--workers must be at least 1")

    from audit_export.utils.logging import get_logger

    get_logger("audit_export", args.log_level)
    get_logger(__name__, args.log_level)

    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
