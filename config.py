"""
Central configuration for the export-job engine.

Flat module-level constants read by the job store, claim processor, token
issuer and submission service.  Values listed in ``api/config.py``'s
adjustable whitelist may be patched at runtime through ``/api/config``, so
consumers read them at call time (``import audit_export.config as cfg``)
rather than binding them at import time.

Config Status Legend
====================
  ACTIVE      - Imported and used by running code.

Search for ``# STATUS:`` to locate all annotations.
"""
from pathlib import Path
from typing import Set

# ── Paths ──────────────────────────────────────────────────────────────
ROOT_DIR = Path(__file__).parent                  # STATUS: ACTIVE - base path for relative references
ARTIFACT_DIR = ROOT_DIR / "artifacts"             # STATUS: ACTIVE - default LocalArtifactStorage directory

# ── Job descriptors ───────────────────────────────────────────────────
# Report kinds the submission endpoint accepts.  Rendering itself lives in
# generator collaborators registered per job type.
SUPPORTED_JOB_TYPES: Set[str] = {                 # STATUS: ACTIVE - services/export_service.py validation
    "soc2",
    "iso27001",
    "hipaa",
    "gdpr",
    "ndis",
    "evidence_bundle",
    "audit_trail",
    "enterprise_full",
}
SUPPORTED_FORMATS: Set[str] = {"pdf", "json", "csv", "zip"}  # STATUS: ACTIVE - services/export_service.py validation
MAX_TENANT_ID_LENGTH = 64                         # STATUS: ACTIVE - services/export_service.py validation
MAX_SCHEDULE_AHEAD_SECONDS = 30 * 86400           # STATUS: ACTIVE - services/export_service.py; furthest scheduledAt accepted

# ── Retry policy ──────────────────────────────────────────────────────
DEFAULT_MAX_ATTEMPTS = 3                          # STATUS: ACTIVE - cap used when a submission omits maxAttempts
MAX_ATTEMPTS_LIMIT = 10                           # STATUS: ACTIVE - upper bound a submission may request
BACKOFF_BASE_SECONDS = 5.0                        # STATUS: ACTIVE - jobs/backoff.py; delay for the first retry
BACKOFF_CAP_SECONDS = 300.0                       # STATUS: ACTIVE - jobs/backoff.py; exponential growth ceiling
BACKOFF_JITTER_SECONDS = 2.0                      # STATUS: ACTIVE - jobs/backoff.py; uniform jitter window
LAST_ERROR_MAX_CHARS = 512                        # STATUS: ACTIVE - jobs/worker.py; truncates recorded errors

# ── Locking ───────────────────────────────────────────────────────────
# A processing job whose lock is older than this is treated as abandoned by
# a crashed worker and becomes claimable again.  Must comfortably exceed the
# slowest expected generate+store round trip.
STALE_LOCK_SECONDS = 900                          # STATUS: ACTIVE - jobs/worker.py, jobs/store.py stats

# ── Download channel ──────────────────────────────────────────────────
DOWNLOAD_TOKEN_TTL_SECONDS = 7200                 # STATUS: ACTIVE - api/tokens.py; signed token lifetime
ARTIFACT_TTL_SECONDS = 86400                      # STATUS: ACTIVE - jobs/collaborators.py LocalArtifactStorage expiry
ARTIFACT_LINK_TTL_SECONDS = 300                   # STATUS: ACTIVE - services/export_service.py; signed local artifact link lifetime

# ── Submission throttle ───────────────────────────────────────────────
MAX_ACTIVE_JOBS_PER_TENANT = 5                    # STATUS: ACTIVE - pending+processing jobs allowed per tenant

# ── Worker loop ───────────────────────────────────────────────────────
WORKER_POLL_INTERVAL_SECONDS = 1.0                # STATUS: ACTIVE - jobs/worker.py idle sleep
WORKER_BATCH_SIZE = 10                            # STATUS: ACTIVE - jobs/worker.py jobs per run_once()

# ── Client polling contract ───────────────────────────────────────────
# Echoed to clients in the create response; the core never polls itself.
POLL_INTERVAL_SECONDS = 2                         # STATUS: ACTIVE - create response poll hint
POLL_TIMEOUT_SECONDS = 300                        # STATUS: ACTIVE - create response poll hint

# ── Logging ───────────────────────────────────────────────────────────
LOG_LEVEL = "INFO"                                # STATUS: ACTIVE - api/main.py lifespan
LOG_FORMAT = "structured"                         # STATUS: ACTIVE - "structured" text lines or "json"


def validate_config() -> list:
    """Check config for common misconfigurations.

    Returns a list of dicts: [{"level": "WARNING"|"ERROR", "message": str}].
    Called on server startup and available via /api/config/validate.
    """
    issues = []

    # 1. Backoff shape
    if BACKOFF_BASE_SECONDS <= 0:
        issues.append({
            "level": "ERROR",
            "message": f"BACKOFF_BASE_SECONDS must be positive, got {BACKOFF_BASE_SECONDS}.",
        })
    if BACKOFF_CAP_SECONDS < BACKOFF_BASE_SECONDS:
        issues.append({
            "level": "ERROR",
            "message": (
                f"BACKOFF_CAP_SECONDS ({BACKOFF_CAP_SECONDS}) is below BACKOFF_BASE_SECONDS "
                f"({BACKOFF_BASE_SECONDS}); every retry would wait exactly the cap."
            ),
        })
    if BACKOFF_JITTER_SECONDS < 0:
        issues.append({
            "level": "ERROR",
            "message": f"BACKOFF_JITTER_SECONDS must be >= 0, got {BACKOFF_JITTER_SECONDS}.",
        })

    # 2. Attempt limits
    if not 1 <= DEFAULT_MAX_ATTEMPTS <= MAX_ATTEMPTS_LIMIT:
        issues.append({
            "level": "ERROR",
            "message": (
                f"DEFAULT_MAX_ATTEMPTS ({DEFAULT_MAX_ATTEMPTS}) must be between 1 and "
                f"MAX_ATTEMPTS_LIMIT ({MAX_ATTEMPTS_LIMIT})."
            ),
        })

    # 3. A very short stale threshold reclaims healthy but slow jobs while the
    #    previous attempt is still running.
    if STALE_LOCK_SECONDS < 60:
        issues.append({
            "level": "WARNING",
            "message": (
                f"STALE_LOCK_SECONDS={STALE_LOCK_SECONDS} is very short; slow generators "
                "may be reclaimed mid-flight and produce discarded duplicate work."
            ),
        })

    # 4. Tokens that outlive artifacts only ever produce 410s.
    if DOWNLOAD_TOKEN_TTL_SECONDS > ARTIFACT_TTL_SECONDS:
        issues.append({
            "level": "WARNING",
            "message": (
                f"DOWNLOAD_TOKEN_TTL_SECONDS ({DOWNLOAD_TOKEN_TTL_SECONDS}) exceeds "
                f"ARTIFACT_TTL_SECONDS ({ARTIFACT_TTL_SECONDS}); late downloads will return 410."
            ),
        })
    if DOWNLOAD_TOKEN_TTL_SECONDS <= 0:
        issues.append({
            "level": "ERROR",
            "message": "DOWNLOAD_TOKEN_TTL_SECONDS must be positive.",
        })

    # 5. Throttle
    if MAX_ACTIVE_JOBS_PER_TENANT < 1:
        issues.append({
            "level": "ERROR",
            "message": "MAX_ACTIVE_JOBS_PER_TENANT must be at least 1; every submission would be rejected.",
        })

    return issues
