"""Claim processor: moves export jobs from pending to a terminal state.

Workers are independent and uncoordinated.  Each one claims a job with a
version-conditioned ``transition``; whoever loses the race moves on to the
next candidate.  Generation and storage run in threads via
``asyncio.to_thread`` and never hold a store lock.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import enum
import logging
import random
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .backoff import BackoffPolicy
from .collaborators import (
    ArtifactGenerator,
    ArtifactStorage,
    Failure,
    Permanent,
    Retryable,
    StoredArtifact,
)
from .models import Artifact, JobMutation, JobRecord, JobStatus
from .store import JobStore, StoreUnavailableError

logger = logging.getLogger(__name__)

PROCESSING_TIMEOUT_ERROR = "processing timeout: worker lock expired after final attempt"


class Outcome(str, enum.Enum):
    succeeded = "succeeded"
    retried = "retried"
    failed = "failed"
    discarded = "discarded"


@dataclass
class ProcessResult:
    """Tally of one ``run_once`` batch."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    discarded: int = 0

    def record(self, outcome: Outcome) -> None:
        self.processed += 1
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def _truncate(message: str) -> str:
    import audit_export.config as cfg

    limit = int(cfg.LAST_ERROR_MAX_CHARS)
    return message if len(message) <= limit else message[: limit - 3] + "..."


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class ClaimProcessor:
    """Claims due jobs and drives them through generation and storage."""

    def __init__(
        self,
        store: JobStore,
        generator: ArtifactGenerator,
        storage: ArtifactStorage,
        *,
        worker_id: Optional[str] = None,
        policy: Optional[BackoffPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rand: Optional[Callable[[], float]] = None,
        stale_lock_seconds: Optional[float] = None,
    ) -> None:
        self._store = store
        self._generator = generator
        self._storage = storage
        self.worker_id = worker_id or f"w-{uuid.uuid4().hex[:8]}"
        self._policy = policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rand = rand or random.random
        self._stale_lock_seconds = stale_lock_seconds

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy or BackoffPolicy.from_config()

    @property
    def stale_lock_seconds(self) -> float:
        if self._stale_lock_seconds is not None:
            return self._stale_lock_seconds
        import audit_export.config as cfg

        return float(cfg.STALE_LOCK_SECONDS)

    # ── Claim ────────────────────────────────────────────────────────

    async def claim(self, result: Optional[ProcessResult] = None) -> Optional[JobRecord]:
        """Atomically take ownership of one claimable job.

        Returns the claimed record as it now stands in the store, or
        ``None`` when nothing is due or every candidate was taken by another
        worker first.  A stale job that has already used its last attempt is
        failed with a timeout error instead of being reclaimed.
        """
        now = self._clock()
        stale_before = now - timedelta(seconds=self.stale_lock_seconds)
        candidates = await self._store.find_claimable(now, stale_before, limit=10)
        for job in candidates:
            if job.status == JobStatus.processing and job.attempts_exhausted:
                mutation = JobMutation.fail(PROCESSING_TIMEOUT_ERROR, now)
                if await self._store.transition(job.job_id, job.version, mutation):
                    logger.warning(
                        "Job %s timed out in processing (held by %s) after %d/%d attempts",
                        job.job_id, job.locked_by, job.attempt_count, job.max_attempts,
                    )
                    if result is not None:
                        result.record(Outcome.failed)
                continue

            mutation = JobMutation.claim(job, self.worker_id, now)
            if not await self._store.transition(job.job_id, job.version, mutation):
                continue
            claimed = mutation.apply(job, now)
            if job.status == JobStatus.processing:
                logger.warning(
                    "Worker %s reclaimed stale job %s from %s (attempt %d/%d)",
                    self.worker_id, job.job_id, job.locked_by,
                    claimed.attempt_count, claimed.max_attempts,
                )
            else:
                logger.info(
                    "Worker %s claimed job %s (attempt %d/%d)",
                    self.worker_id, job.job_id, claimed.attempt_count, claimed.max_attempts,
                )
            return claimed
        return None

    # ── Execute ──────────────────────────────────────────────────────

    async def process(self, job: JobRecord) -> Outcome:
        """Run generation and storage for a claimed job and record the result."""
        loop = asyncio.get_running_loop()
        spec = job.spec()

        progress_updates: List[concurrent.futures.Future] = []

        def progress_callback(pct: int) -> None:
            progress_updates.append(
                asyncio.run_coroutine_threadsafe(self._on_progress(job, pct), loop)
            )

        try:
            content = await asyncio.to_thread(self._generator.generate, spec, progress_callback)
        except Exception as exc:
            logger.exception("Generator raised for job %s", job.job_id)
            content = Retryable(_describe(exc))
        finally:
            await self._drain_progress(job, progress_updates)
        if isinstance(content, (Retryable, Permanent)):
            return await self.record_failure(job, content)
        if isinstance(content, (bytearray, memoryview)):
            content = bytes(content)
        if not isinstance(content, bytes):
            return await self.record_failure(
                job, Permanent(f"Generator returned {type(content).__name__}, expected bytes")
            )

        try:
            stored = await asyncio.to_thread(self._storage.store, spec, content)
        except Exception as exc:
            logger.exception("Storage raised for job %s", job.job_id)
            stored = Retryable(_describe(exc))
        if isinstance(stored, (Retryable, Permanent)):
            return await self.record_failure(job, stored)

        if await self.record_success(job, stored):
            return Outcome.succeeded
        return Outcome.discarded

    async def _drain_progress(
        self, job: JobRecord, updates: List[concurrent.futures.Future]
    ) -> None:
        """Wait for progress writes scheduled by the generator thread to settle."""
        if not updates:
            return
        pending = list(updates)
        updates.clear()
        results = await asyncio.gather(
            *(asyncio.wrap_future(f) for f in pending), return_exceptions=True
        )
        for res in results:
            if isinstance(res, BaseException):
                logger.warning("Progress update for job %s failed: %r", job.job_id, res)

    async def _on_progress(self, job: JobRecord, pct: int) -> None:
        try:
            await self._store.report_progress(job.job_id, self.worker_id, job.version, pct)
        except StoreUnavailableError as exc:
            logger.warning("Progress update for job %s dropped: %s", job.job_id, exc)

    # ── Resolve ──────────────────────────────────────────────────────

    async def record_success(self, job: JobRecord, stored: StoredArtifact) -> bool:
        """Complete *job* under the version it was claimed at.

        ``False`` means another worker reclaimed the job in the meantime; the
        result is discarded and the job is left as the winner recorded it.
        """
        artifact = Artifact(
            locator=stored.locator,
            size_bytes=stored.size_bytes,
            expires_at=stored.expires_at,
        )
        now = self._clock()
        if await self._store.transition(job.job_id, job.version, JobMutation.complete(artifact, now)):
            logger.info(
                "Job %s completed by %s (%d bytes)", job.job_id, self.worker_id, stored.size_bytes
            )
            return True
        logger.warning(
            "Discarding result of job %s from %s: claim at version %d was superseded",
            job.job_id, self.worker_id, job.version,
        )
        return False

    async def record_failure(self, job: JobRecord, failure: Failure) -> Outcome:
        """Send *job* back to pending with a backoff, or fail it for good."""
        error = _truncate(failure.error)
        now = self._clock()
        if isinstance(failure, Retryable) and job.attempt_count < job.max_attempts:
            delay = self.policy.delay(job.attempt_count, self._rand)
            mutation = JobMutation.retry(error, now + delay)
            outcome = Outcome.retried
        else:
            mutation = JobMutation.fail(error, now)
            outcome = Outcome.failed

        if not await self._store.transition(job.job_id, job.version, mutation):
            logger.warning(
                "Discarding failure of job %s from %s: claim at version %d was superseded",
                job.job_id, self.worker_id, job.version,
            )
            return Outcome.discarded
        if outcome is Outcome.retried:
            logger.info(
                "Job %s attempt %d/%d failed, retrying in %.1fs: %s",
                job.job_id, job.attempt_count, job.max_attempts, delay.total_seconds(), error,
            )
        else:
            logger.error(
                "Job %s failed after %d/%d attempts: %s",
                job.job_id, job.attempt_count, job.max_attempts, error,
            )
        return outcome

    # ── Loops ────────────────────────────────────────────────────────

    async def process_one(self, result: Optional[ProcessResult] = None) -> Optional[Outcome]:
        """Claim and process a single job; ``None`` when nothing was claimable."""
        job = await self.claim(result)
        if job is None:
            return None
        outcome = await self.process(job)
        if result is not None:
            result.record(outcome)
        return outcome

    async def run_once(self, batch_size: Optional[int] = None) -> ProcessResult:
        """Process up to *batch_size* jobs sequentially."""
        if batch_size is None:
            import audit_export.config as cfg

            batch_size = int(cfg.WORKER_BATCH_SIZE)
        result = ProcessResult()
        for _ in range(batch_size):
            if await self.process_one(result) is None:
                break
        if result.processed:
            logger.info("Worker %s batch: %s", self.worker_id, result.as_dict())
        return result

    async def run_forever(
        self,
        stop_event: asyncio.Event,
        poll_interval: Optional[float] = None,
    ) -> None:
        """Loop ``run_once`` until *stop_event* is set, sleeping while idle."""
        import audit_export.config as cfg

        logger.info("Worker %s started", self.worker_id)
        while not stop_event.is_set():
            try:
                result = await self.run_once()
            except StoreUnavailableError as exc:
                logger.error("Worker %s: %s", self.worker_id, exc)
                result = ProcessResult()
            if result.processed:
                continue
            interval = poll_interval if poll_interval is not None else cfg.WORKER_POLL_INTERVAL_SECONDS
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Worker %s stopped", self.worker_id)
