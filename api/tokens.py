"""Signed, expiring download tokens.

A token binds one job id to one tenant for a bounded time and is the only
credential the download gateway accepts.  Tokens are stateless: validity is
computed from the token text and the signing secret alone.

Format: ``<payload>.<signature>`` where ``payload`` is base64url-encoded JSON
``{"jobId", "tenantId", "issuedAt", "expiresAt"}`` (epoch seconds) and
``signature`` is base64url(HMAC-SHA256(secret, payload)).  Padding is
stripped from both segments.

The same secret signs the short-lived links the gateway redirects to for
artifacts served by this process.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class DownloadTokenPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    job_id: str = Field(alias="jobId", min_length=1)
    tenant_id: str = Field(alias="tenantId", min_length=1)
    issued_at: int = Field(alias="issuedAt")
    expires_at: int = Field(alias="expiresAt")

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


class DownloadTokenIssuer:
    """Mint and validate download tokens with a read-only shared secret."""

    def __init__(
        self,
        secret: Union[str, bytes],
        *,
        ttl_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("Download token secret must not be empty")
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
        self._ttl_seconds = ttl_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def ttl_seconds(self) -> int:
        if self._ttl_seconds is not None:
            return self._ttl_seconds
        import audit_export.config as cfg

        return int(cfg.DOWNLOAD_TOKEN_TTL_SECONDS)

    def _sign(self, payload_segment: str) -> str:
        digest = hmac.new(self._secret, payload_segment.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def mint(self, job_id: str, tenant_id: str) -> Tuple[str, DownloadTokenPayload]:
        """Return a fresh token together with the payload it carries."""
        issued_at = int(self._clock().timestamp())
        payload = DownloadTokenPayload(
            job_id=job_id,
            tenant_id=tenant_id,
            issued_at=issued_at,
            expires_at=issued_at + self.ttl_seconds,
        )
        body = json.dumps(payload.model_dump(by_alias=True), separators=(",", ":"), sort_keys=True)
        payload_segment = _b64encode(body.encode("utf-8"))
        return f"{payload_segment}.{self._sign(payload_segment)}", payload

    def issue(self, job_id: str, tenant_id: str) -> str:
        token, _ = self.mint(job_id, tenant_id)
        return token

    def validate(self, token: Optional[str]) -> Optional[DownloadTokenPayload]:
        """Return the payload of a genuine, unexpired token, else ``None``.

        The caller is never told which check failed.
        """
        if not token or not token.isascii() or token.count(".") != 1:
            return None
        payload_segment, signature = token.split(".")
        if not payload_segment or not signature:
            return None
        if not hmac.compare_digest(self._sign(payload_segment), signature):
            return None
        try:
            payload = DownloadTokenPayload.model_validate(json.loads(_b64decode(payload_segment)))
        except (binascii.Error, ValueError, ValidationError):
            return None
        if self._clock().timestamp() > payload.expires_at:
            return None
        return payload

    # ── Artifact links ───────────────────────────────────────────────

    def sign_link(self, path: str, expires: int) -> str:
        """Signature binding an artifact *path* to an epoch-second expiry."""
        message = f"{path}\n{int(expires)}".encode("utf-8")
        return _b64encode(hmac.new(self._secret, message, hashlib.sha256).digest())

    def verify_link(self, path: str, expires: Optional[int], signature: Optional[str]) -> bool:
        """Whether *signature* was produced by ``sign_link`` for this path and expiry.

        Expiry itself is not checked here; callers compare it to their clock.
        """
        if expires is None or not signature or not signature.isascii():
            return False
        return hmac.compare_digest(self.sign_link(path, expires), signature)
