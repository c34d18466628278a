"""Tests for runtime config patching, validation and the log buffer."""
import logging

import pytest

from audit_export.api.config import RuntimeConfig


def test_get_adjustable_lists_whitelist():
    values = RuntimeConfig().get_adjustable()
    assert values["DEFAULT_MAX_ATTEMPTS"] == 3
    assert values["BACKOFF_BASE_SECONDS"] == 5.0
    assert "LOG_LEVEL" not in values


def test_patch_coerces_and_applies():
    import audit_export.config as cfg

    state = RuntimeConfig().patch({"BACKOFF_BASE_SECONDS": 2, "MAX_ACTIVE_JOBS_PER_TENANT": 8.0})
    assert cfg.BACKOFF_BASE_SECONDS == 2.0
    assert isinstance(cfg.BACKOFF_BASE_SECONDS, float)
    assert state["MAX_ACTIVE_JOBS_PER_TENANT"] == 8


def test_patch_rejects_unknown_key():
    with pytest.raises(KeyError):
        RuntimeConfig().patch({"ARTIFACT_DIR": "/tmp"})


@pytest.mark.parametrize(
    "updates",
    [
        {"DEFAULT_MAX_ATTEMPTS": 0},
        {"DEFAULT_MAX_ATTEMPTS": True},
        {"DEFAULT_MAX_ATTEMPTS": 2.5},
        {"STALE_LOCK_SECONDS": "soon"},
        {"BACKOFF_JITTER_SECONDS": -1},
    ],
)
def test_patch_rejects_bad_values(updates):
    with pytest.raises(ValueError):
        RuntimeConfig().patch(updates)


def test_rejected_patch_changes_nothing():
    import audit_export.config as cfg

    before = cfg.BACKOFF_CAP_SECONDS
    with pytest.raises(ValueError):
        RuntimeConfig().patch({"BACKOFF_CAP_SECONDS": 60, "DEFAULT_MAX_ATTEMPTS": 99})
    assert cfg.BACKOFF_CAP_SECONDS == before


def test_validate_config_flags_token_outliving_artifact():
    import audit_export.config as cfg

    cfg.DOWNLOAD_TOKEN_TTL_SECONDS = cfg.ARTIFACT_TTL_SECONDS + 1
    issues = cfg.validate_config()
    assert any("DOWNLOAD_TOKEN_TTL_SECONDS" in i["message"] for i in issues)


@pytest.mark.asyncio
async def test_config_endpoints(client):
    resp = await client.get("/api/config")
    assert resp.status_code == 200
    assert resp.json()["data"]["WORKER_BATCH_SIZE"] == 10

    patched = await client.patch("/api/config", json={"WORKER_BATCH_SIZE": 25})
    assert patched.status_code == 200
    assert patched.json()["data"]["WORKER_BATCH_SIZE"] == 25

    bad = await client.patch("/api/config", json={"NOT_A_KEY": 1})
    assert bad.status_code == 422
    assert bad.json()["ok"] is False

    validate = await client.get("/api/config/validate")
    assert validate.status_code == 200
    assert validate.json()["data"]["errors"] == 0


@pytest.mark.asyncio
async def test_logs_endpoint_returns_buffered_records(client):
    from audit_export.api.routers.logs import setup_log_buffer, teardown_log_buffer

    setup_log_buffer()
    try:
        logging.getLogger("audit_export.tests").warning("export queue backlog growing")
        logging.getLogger("audit_export.tests").error("artifact write failed")
        resp = await client.get("/api/logs", params={"level": "error"})
        assert resp.status_code == 200
        entries = resp.json()["data"]
        assert [e["message"] for e in entries] == ["artifact write failed"]
    finally:
        teardown_log_buffer()
