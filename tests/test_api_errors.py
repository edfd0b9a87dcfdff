from __future__ import annotations

import os
import sqlite3
import tempfile

import pytest
from fastapi.testclient import TestClient

from bookflow.api.app import create_app
from bookflow.config.load_config import ConfigError
from bookflow.flow.errors import FlowBuildError, ScoringError, StoreError


def _client_raising(exc: Exception) -> TestClient:
    app = create_app()

    @app.get("/api/v1/_raise")
    def _raise() -> None:
        raise exc

    return TestClient(app)


@pytest.mark.parametrize(
    "exc,status,code",
    [
        (StoreError("Cannot finalize request req_1: status is already 'done'"), 503, "storage_unavailable"),
        (ScoringError("Scorer failed"), 502, "upstream_failed"),
        (FlowBuildError("bad tree"), 500, "flow_error"),
        (sqlite3.OperationalError("database is locked"), 503, "storage_unavailable"),
        (ConfigError("Invalid flow.batch_size"), 500, "config_error"),
    ],
)
def test_domain_errors_map_to_error_envelope(
    monkeypatch: pytest.MonkeyPatch, exc: Exception, status: int, code: str
) -> None:
    with tempfile.TemporaryDirectory() as td:
        monkeypatch.setenv("BOOKFLOW_SQLITE_PATH", os.path.join(td, "app.db"))
        monkeypatch.setenv("BOOKFLOW_ENABLE_WORKER", "0")
        with _client_raising(exc) as client:
            resp = client.get("/api/v1/_raise")
        assert resp.status_code == status
        assert resp.json()["error"]["code"] == code
