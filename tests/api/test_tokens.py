"""Tests for signed download tokens."""
import base64
import json

import pytest

from audit_export.api.tokens import DownloadTokenIssuer


@pytest.fixture
def issuer(clock):
    return DownloadTokenIssuer("s3cret-signing-key", ttl_seconds=7200, clock=clock)


def test_round_trip(issuer, clock):
    token = issuer.issue("job123", "tenant-a")
    payload = issuer.validate(token)
    assert payload is not None
    assert payload.job_id == "job123"
    assert payload.tenant_id == "tenant-a"
    assert payload.issued_at == int(clock().timestamp())
    assert payload.expires_at == payload.issued_at + 7200


def test_valid_until_expiry_inclusive(issuer, clock):
    token = issuer.issue("job123", "tenant-a")
    clock.advance(seconds=7200)
    assert issuer.validate(token) is not None
    clock.advance(seconds=1)
    assert issuer.validate(token) is None


def test_every_single_character_mutation_is_rejected(issuer):
    token = issuer.issue("job123", "tenant-a")
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_."
    for i, ch in enumerate(token):
        for replacement in (alphabet[(alphabet.index(ch) + 1) % len(alphabet)], "~"):
            mutated = token[:i] + replacement + token[i + 1:]
            assert issuer.validate(mutated) is None, f"mutation at {i} accepted"


def test_truncation_and_extension_rejected(issuer):
    token = issuer.issue("job123", "tenant-a")
    assert issuer.validate(token[:-1]) is None
    assert issuer.validate(token + "A") is None
    assert issuer.validate(token + ".") is None


def test_forged_payload_with_other_tenant_rejected(issuer):
    token = issuer.issue("job123", "tenant-a")
    payload_segment, signature = token.split(".")
    body = json.loads(base64.urlsafe_b64decode(payload_segment + "=" * (-len(payload_segment) % 4)))
    body["tenantId"] = "tenant-b"
    forged = base64.urlsafe_b64encode(json.dumps(body).encode()).rstrip(b"=").decode()
    assert issuer.validate(f"{forged}.{signature}") is None


def test_other_secret_rejected(issuer, clock):
    other = DownloadTokenIssuer("different-key", clock=clock)
    assert other.validate(issuer.issue("job123", "tenant-a")) is None


@pytest.mark.parametrize("junk", [None, "", ".", "abc", "a.b.c", "héllo.wörld", "eyJ9.x"])
def test_garbage_rejected(issuer, junk):
    assert issuer.validate(junk) is None


def test_empty_secret_refused():
    with pytest.raises(ValueError):
        DownloadTokenIssuer("")


# ── Artifact links ───────────────────────────────────────────────────

LINK_PATH = "/api/exports/artifacts/job123.pdf"


def test_link_signature_verifies_for_same_path_and_expiry(issuer):
    signature = issuer.sign_link(LINK_PATH, 1767604200)
    assert issuer.verify_link(LINK_PATH, 1767604200, signature)


def test_link_signature_bound_to_path_expiry_and_secret(issuer, clock):
    signature = issuer.sign_link(LINK_PATH, 1767604200)
    assert not issuer.verify_link("/api/exports/artifacts/job124.pdf", 1767604200, signature)
    assert not issuer.verify_link(LINK_PATH, 1767604201, signature)
    other = DownloadTokenIssuer("different-key", clock=clock)
    assert not other.verify_link(LINK_PATH, 1767604200, signature)


@pytest.mark.parametrize("expires, signature", [(None, "abc"), (1767604200, None), (1767604200, ""), (1767604200, "sïg")])
def test_incomplete_link_rejected(issuer, expires, signature):
    assert not issuer.verify_link(LINK_PATH, expires, signature)
