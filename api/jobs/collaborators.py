"""Collaborator boundary for export generation and artifact storage.

The claim processor never renders documents or writes blobs itself.  It
hands a ``JobSpec`` to an ``ArtifactGenerator`` and the produced bytes to an
``ArtifactStorage``, both of which run in worker threads.  Either may return
a typed ``Retryable`` or ``Permanent`` outcome instead of a value; an
exception escaping a collaborator is treated by the worker as ``Retryable``.
"""
from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Union, runtime_checkable

from .models import JobSpec

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class Retryable:
    """Transient failure: the job goes back to pending if attempts remain."""

    error: str


@dataclass(frozen=True)
class Permanent:
    """Non-recoverable failure: the job fails regardless of attempts left."""

    error: str


Failure = Union[Retryable, Permanent]


@dataclass(frozen=True)
class StoredArtifact:
    """What a storage collaborator hands back for a persisted export."""

    locator: str
    size_bytes: int
    expires_at: datetime


GenerateOutcome = Union[bytes, Retryable, Permanent]
StoreOutcome = Union[StoredArtifact, Retryable, Permanent]


@runtime_checkable
class ArtifactGenerator(Protocol):
    def generate(self, spec: JobSpec, progress: ProgressCallback) -> GenerateOutcome:
        ...


@runtime_checkable
class ArtifactStorage(Protocol):
    def store(self, spec: JobSpec, content: bytes) -> StoreOutcome:
        ...


class GeneratorRegistry:
    """Dispatch ``generate`` calls to the generator registered for a job type.

    Job types without a generator fail permanently rather than retrying,
    since no amount of waiting makes an unknown report kind renderable.
    """

    def __init__(self, default: Optional[ArtifactGenerator] = None) -> None:
        self._generators: Dict[str, ArtifactGenerator] = {}
        self._default = default

    def register(self, job_type: str, generator: ArtifactGenerator) -> None:
        self._generators[job_type] = generator

    def job_types(self) -> list:
        return sorted(self._generators)

    def generate(self, spec: JobSpec, progress: ProgressCallback) -> GenerateOutcome:
        generator = self._generators.get(spec.job_type, self._default)
        if generator is None:
            return Permanent(f"No generator registered for job type '{spec.job_type}'")
        return generator.generate(spec, progress)


class ManifestGenerator:
    """Render a JSON manifest describing the export request.

    Stand-in for the document rendering service so a bare deployment can run
    the whole pipeline end to end.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def generate(self, spec: JobSpec, progress: ProgressCallback) -> GenerateOutcome:
        progress(10)
        document = {
            "jobId": spec.job_id,
            "tenantId": spec.tenant_id,
            "requestedBy": spec.requested_by,
            "jobType": spec.job_type,
            "format": spec.format,
            "params": spec.params,
            "generatedAt": self._clock().isoformat(),
        }
        content = json.dumps(document, indent=2, sort_keys=True).encode("utf-8")
        progress(90)
        return content


class LocalArtifactStorage:
    """Write artifacts under a directory addressed by locators under ``base_url``.

    File names carry a random component so a locator cannot be guessed
    from a job id.  The files are served only through signed links checked
    by the export router, never from an open mount.
    """

    def __init__(
        self,
        root: Union[str, Path],
        base_url: str = "/api/exports/artifacts",
        ttl_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self._ttl_seconds = ttl_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def ttl_seconds(self) -> int:
        if self._ttl_seconds is not None:
            return self._ttl_seconds
        import audit_export.config as cfg

        return int(cfg.ARTIFACT_TTL_SECONDS)

    def store(self, spec: JobSpec, content: bytes) -> StoreOutcome:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except PermissionError as exc:
            return Permanent(f"Artifact directory not writable: {exc}")
        filename = f"{spec.job_id}-{secrets.token_urlsafe(16)}.{spec.format}"
        path = self.root / filename
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(content)
        tmp.replace(path)
        logger.info("Stored artifact for job %s (%d bytes)", spec.job_id, len(content))
        return StoredArtifact(
            locator=f"{self.base_url}/{filename}",
            size_bytes=len(content),
            expires_at=self._clock() + timedelta(seconds=self.ttl_seconds),
        )

    def path_for(self, filename: str) -> Optional[Path]:
        """On-disk path of a stored artifact, or ``None`` for unknown names."""
        if not filename or filename != Path(filename).name or filename.startswith("."):
            return None
        path = self.root / filename
        return path if path.is_file() else None
