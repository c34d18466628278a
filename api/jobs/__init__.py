"""SQLite-backed export job queue with a version-conditioned state machine."""
from .backoff import BackoffPolicy, backoff_delay
from .collaborators import (
    ArtifactGenerator,
    ArtifactStorage,
    GeneratorRegistry,
    LocalArtifactStorage,
    ManifestGenerator,
    Permanent,
    Retryable,
    StoredArtifact,
)
from .models import Artifact, JobMutation, JobRecord, JobRequest, JobSpec, JobStatus
from .store import JobStore, StoreUnavailableError
from .worker import ClaimProcessor, Outcome, ProcessResult

__all__ = [
    "Artifact",
    "ArtifactGenerator",
    "ArtifactStorage",
    "BackoffPolicy",
    "ClaimProcessor",
    "GeneratorRegistry",
    "JobMutation",
    "JobRecord",
    "JobRequest",
    "JobSpec",
    "JobStatus",
    "JobStore",
    "LocalArtifactStorage",
    "ManifestGenerator",
    "Outcome",
    "Permanent",
    "ProcessResult",
    "Retryable",
    "StoreUnavailableError",
    "StoredArtifact",
    "backoff_delay",
]
