"""SQLite-backed persistence for export job records.

The table is the only shared mutable state between workers.  Every status
change goes through ``transition``, a single conditional ``UPDATE`` keyed on
the row's version and on the legal predecessor statuses of the target, so
any number of uncoordinated workers (sharing a connection or each holding
their own) can race on the same job and at most one of them wins.
"""
from __future__ import annotations

import asyncio
import functools
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import aiosqlite

from .models import Artifact, JobMutation, JobRecord, JobRequest, JobStatus

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Columns a mutation may write.  status, version and updated_at are managed
# by ``transition`` itself.
_MUTABLE_COLUMNS = frozenset({
    "progress",
    "attempt_count",
    "locked_by",
    "locked_at",
    "next_run_at",
    "last_error",
    "artifact",
    "started_at",
    "completed_at",
})


class StoreUnavailableError(Exception):
    """The job database cannot be opened or written."""


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC text so lexicographic order matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _encode(column: str, value: Any) -> Any:
    if column == "artifact":
        if value is None:
            return None
        artifact = value if isinstance(value, Artifact) else Artifact(**value)
        return json.dumps({
            "locator": artifact.locator,
            "size_bytes": artifact.size_bytes,
            "expires_at": _ts(artifact.expires_at),
        })
    if isinstance(value, datetime):
        return _ts(value)
    return value


def _unavailable_on_error(fn):
    """Surface database failures as ``StoreUnavailableError``."""

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except aiosqlite.Error as exc:
            logger.error("Job store %s failed: %s", fn.__name__, exc)
            raise StoreUnavailableError(f"Job store unavailable: {exc}") from exc

    return wrapper


class JobStore:
    """Async SQLite store for export job lifecycle tracking."""

    def __init__(
        self,
        db_path: str = "export_jobs.db",
        *,
        clock: Optional[Callable[[], datetime]] = None,
        timeout: float = 30.0,
    ) -> None:
        self.db_path = db_path
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._timeout = timeout
        self._db: Optional[aiosqlite.Connection] = None
        # Held from each write statement through its commit on the shared connection.
        self._write_lock = asyncio.Lock()

    @_unavailable_on_error
    async def initialize(self) -> None:
        """Open the connection and create the jobs table if it doesn't exist."""
        if self._db is not None:
            return
        db = await aiosqlite.connect(self.db_path, timeout=self._timeout)
        try:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS export_jobs (
                    job_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    requested_by TEXT NOT NULL,
                    job_type TEXT NOT NULL,
                    format TEXT NOT NULL,
                    params TEXT DEFAULT '{}',
                    status TEXT NOT NULL DEFAULT 'pending',
                    progress INTEGER NOT NULL DEFAULT 0,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    locked_by TEXT,
                    locked_at TEXT,
                    next_run_at TEXT,
                    last_error TEXT,
                    artifact TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    idempotency_key TEXT
                )
            """)
            await db.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS ux_export_jobs_idempotency "
                "ON export_jobs (tenant_id, idempotency_key)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS ix_export_jobs_claim "
                "ON export_jobs (status, next_run_at)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS ix_export_jobs_tenant "
                "ON export_jobs (tenant_id, created_at)"
            )
            await db.commit()
        except BaseException:
            await db.close()
            raise
        self._db = db

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    # ── Creation ─────────────────────────────────────────────────────

    @_unavailable_on_error
    async def create_job(self, request: JobRequest) -> JobRecord:
        """Insert a new pending job and return its record.

        A request carrying an ``idempotency_key`` already used by the same
        tenant returns the existing job instead of inserting a duplicate.
        """
        db = await self._conn()
        if request.idempotency_key:
            existing = await self.get_by_idempotency_key(request.tenant_id, request.idempotency_key)
            if existing is not None:
                return existing
        now = self._clock()
        rec = JobRecord(
            job_id=uuid.uuid4().hex,
            tenant_id=request.tenant_id,
            requested_by=request.requested_by,
            job_type=request.job_type,
            format=request.format,
            params=request.params,
            max_attempts=request.max_attempts,
            idempotency_key=request.idempotency_key,
            next_run_at=request.scheduled_at,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._write_lock:
                try:
                    await db.execute(
                        "INSERT INTO export_jobs (job_id, tenant_id, requested_by, job_type, "
                        "format, params, status, progress, attempt_count, max_attempts, "
                        "next_run_at, created_at, updated_at, version, idempotency_key) "
                        "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                        (
                            rec.job_id, rec.tenant_id, rec.requested_by, rec.job_type,
                            rec.format, json.dumps(rec.params), rec.status.value, 0, 0,
                            rec.max_attempts, _ts(rec.next_run_at), _ts(rec.created_at),
                            _ts(rec.updated_at), 0, rec.idempotency_key,
                        ),
                    )
                finally:
                    # A constraint failure aborts only the INSERT itself;
                    # committing ends the implicit transaction either way.
                    await db.commit()
        except aiosqlite.IntegrityError:
            # Lost an insert race on the same idempotency key.
            existing = await self.get_by_idempotency_key(request.tenant_id, request.idempotency_key)
            if existing is None:
                raise
            return existing
        logger.info(
            "Created export job %s (%s/%s) for tenant %s",
            rec.job_id, rec.job_type, rec.format, rec.tenant_id,
        )
        return rec

    @_unavailable_on_error
    async def get_by_idempotency_key(self, tenant_id: str, key: Optional[str]) -> Optional[JobRecord]:
        """Job a tenant previously submitted under *key*, if any."""
        db = await self._conn()
        async with db.execute(
            "SELECT * FROM export_jobs WHERE tenant_id = ? AND idempotency_key = ?",
            (tenant_id, key),
        ) as cur:
            row = await cur.fetchone()
            desc = cur.description
        return self._row_to_record(row, desc) if row is not None else None

    # ── Reads ────────────────────────────────────────────────────────

    @_unavailable_on_error
    async def get_job(self, job_id: str, tenant_id: str) -> Optional[JobRecord]:
        """Fetch a job owned by *tenant_id*; other tenants' jobs read as absent."""
        db = await self._conn()
        async with db.execute(
            "SELECT * FROM export_jobs WHERE job_id = ? AND tenant_id = ?", (job_id, tenant_id)
        ) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return self._row_to_record(row, desc)

    @_unavailable_on_error
    async def load_job(self, job_id: str) -> Optional[JobRecord]:
        """Fetch a job regardless of owner.  Worker-side only."""
        db = await self._conn()
        async with db.execute("SELECT * FROM export_jobs WHERE job_id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return self._row_to_record(row, desc)

    @_unavailable_on_error
    async def get_job_tenant(self, job_id: str) -> Optional[str]:
        db = await self._conn()
        async with db.execute("SELECT tenant_id FROM export_jobs WHERE job_id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
        return row[0] if row else None

    @_unavailable_on_error
    async def list_jobs(
        self,
        tenant_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 50,
    ) -> List[JobRecord]:
        """List a tenant's jobs ordered by creation time (newest first)."""
        db = await self._conn()
        sql = "SELECT * FROM export_jobs WHERE tenant_id = ?"
        vals: list = [tenant_id]
        if status is not None:
            sql += " AND status = ?"
            vals.append(JobStatus(status).value)
        sql += " ORDER BY created_at DESC LIMIT ?"
        vals.append(limit)
        async with db.execute(sql, vals) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    @_unavailable_on_error
    async def list_failed(self, tenant_id: Optional[str] = None, limit: int = 50) -> List[JobRecord]:
        """Most recently failed jobs, optionally for a single tenant."""
        db = await self._conn()
        sql = "SELECT * FROM export_jobs WHERE status = ?"
        vals: list = [JobStatus.failed.value]
        if tenant_id is not None:
            sql += " AND tenant_id = ?"
            vals.append(tenant_id)
        sql += " ORDER BY completed_at DESC LIMIT ?"
        vals.append(limit)
        async with db.execute(sql, vals) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    @_unavailable_on_error
    async def count_active(self, tenant_id: str) -> int:
        """Number of the tenant's jobs still pending or processing."""
        db = await self._conn()
        async with db.execute(
            "SELECT COUNT(*) FROM export_jobs WHERE tenant_id = ? AND status IN (?, ?)",
            (tenant_id, JobStatus.pending.value, JobStatus.processing.value),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0])

    @_unavailable_on_error
    async def find_claimable(
        self,
        now: datetime,
        stale_before: datetime,
        limit: int = 10,
    ) -> List[JobRecord]:
        """Pending jobs that are due plus processing jobs with a stale lock, oldest first."""
        db = await self._conn()
        async with db.execute(
            "SELECT * FROM export_jobs "
            "WHERE (status = ? AND (next_run_at IS NULL OR next_run_at <= ?)) "
            "OR (status = ? AND locked_at < ?) "
            "ORDER BY created_at ASC, job_id ASC LIMIT ?",
            (
                JobStatus.pending.value, _ts(now),
                JobStatus.processing.value, _ts(stale_before),
                limit,
            ),
        ) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    @_unavailable_on_error
    async def stats(self, stale_before: Optional[datetime] = None) -> Dict[str, int]:
        """Job counts per status, plus processing jobs whose lock has gone stale."""
        if stale_before is None:
            import audit_export.config as cfg

            stale_before = self._clock() - timedelta(seconds=cfg.STALE_LOCK_SECONDS)
        db = await self._conn()
        counts = {status.value: 0 for status in JobStatus}
        async with db.execute("SELECT status, COUNT(*) FROM export_jobs GROUP BY status") as cur:
            async for status, n in cur:
                counts[status] = int(n)
        async with db.execute(
            "SELECT COUNT(*) FROM export_jobs WHERE status = ? AND locked_at < ?",
            (JobStatus.processing.value, _ts(stale_before)),
        ) as cur:
            row = await cur.fetchone()
        counts["stale"] = int(row[0])
        counts["total"] = sum(counts[s.value] for s in JobStatus)
        return counts

    # ── State machine ────────────────────────────────────────────────

    @_unavailable_on_error
    async def transition(self, job_id: str, expected_version: int, mutation: JobMutation) -> bool:
        """Apply *mutation* iff the row is still at *expected_version*.

        The update is further conditioned on the current status being a
        legal predecessor of the target, so terminal jobs never change and
        a claim never pushes ``attempt_count`` past ``max_attempts``.
        Returns ``False`` on any conflict; nothing is written in that case.
        """
        unknown = set(mutation.changes) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Mutation writes non-mutable columns: {sorted(unknown)}")
        predecessors = sorted(s.value for s in mutation.predecessors)
        if not predecessors:
            return False

        sets = ["status = ?"]
        vals: list = [mutation.status.value]
        for column, value in mutation.changes.items():
            sets.append(f"{column} = ?")
            vals.append(_encode(column, value))
        sets.append("updated_at = ?")
        vals.append(_ts(self._clock()))
        sets.append("version = version + 1")

        where = f"job_id = ? AND version = ? AND status IN ({', '.join('?' for _ in predecessors)})"
        vals.extend([job_id, expected_version, *predecessors])
        if mutation.status == JobStatus.processing:
            where += " AND attempt_count < max_attempts"

        db = await self._conn()
        async with self._write_lock:
            async with db.execute(f"UPDATE export_jobs SET {', '.join(sets)} WHERE {where}", vals) as cur:
                updated = cur.rowcount
            await db.commit()
        if updated != 1:
            logger.debug(
                "Transition of job %s to %s at version %d lost (conflict)",
                job_id, mutation.status.value, expected_version,
            )
        return updated == 1

    @_unavailable_on_error
    async def report_progress(
        self,
        job_id: str,
        worker_id: str,
        expected_version: int,
        progress: int,
    ) -> bool:
        """Raise the advisory progress of a job held by *worker_id*.

        Never lowers progress and never touches status or version.
        """
        progress = max(0, min(100, int(progress)))
        db = await self._conn()
        async with self._write_lock:
            async with db.execute(
                "UPDATE export_jobs SET progress = MAX(progress, ?), updated_at = ? "
                "WHERE job_id = ? AND status = ? AND locked_by = ? AND version = ?",
                (progress, _ts(self._clock()), job_id, JobStatus.processing.value, worker_id, expected_version),
            ) as cur:
                updated = cur.rowcount
            await db.commit()
        return updated == 1

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _row_to_record(row, description) -> JobRecord:
        cols = [d[0] for d in description]
        d = dict(zip(cols, row))
        d["params"] = json.loads(d.get("params") or "{}")
        d["artifact"] = json.loads(d["artifact"]) if d.get("artifact") else None
        return JobRecord(**d)
