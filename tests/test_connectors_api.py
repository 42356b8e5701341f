from __future__ import annotations

import asyncio

import pytest
from asyncpg import exceptions as pg_exc  # type: ignore[import-untyped]
from fastapi.testclient import TestClient

from ats_pipeline.main import app
from ats_pipeline.services.pipeline import get_pipeline
from ats_pipeline.services.repository import translate_database_errors


@pytest.fixture
def api_client(pipeline) -> TestClient:
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def connector_id(repository) -> str:
    connector = asyncio.run(repository.create_connector(provider="bamboohr", subdomain="acme", api_key="key"))
    return connector.id


def test_connection_check_reports_success(api_client: TestClient, connector_id: str) -> None:
    response = api_client.get(f"/connectors/{connector_id}/test")

    assert response.status_code == 200
    body = response.json()
    assert body["connector_id"] == connector_id
    assert body["ok"] is True
    assert body["status"] == "connected"
    assert body["raw"] is None
    assert body["timestamp"]


def test_connection_check_reports_provider_rejection(api_client: TestClient, connector_id: str, bamboo) -> None:
    bamboo.forced_status["/employees"] = 403

    response = api_client.get(f"/connectors/{connector_id}/test")

    assert response.status_code == 200
    assert response.json()["ok"] is False
    assert response.json()["message"].startswith("Insufficient BambooHR permissions")


def test_connection_check_validates_connector(api_client: TestClient) -> None:
    assert api_client.get("/connectors/%20/test").status_code == 400
    assert api_client.get("/connectors/missing/test").status_code == 404


def test_full_sync_is_queued_by_default_and_single_flight(api_client: TestClient, connector_id: str) -> None:
    first = api_client.post(f"/connectors/{connector_id}/full-sync")
    second = api_client.post(f"/connectors/{connector_id}/full-sync")

    assert first.status_code == 200
    assert first.json()["ok"] is True
    assert first.json()["status"] == "queued"
    assert first.json()["result"]["type"] == "full"
    assert second.status_code == 200
    assert second.json()["ok"] is False
    assert second.json()["status"] == "in_progress"


def test_full_sync_can_run_inline(api_client: TestClient, connector_id: str) -> None:
    response = api_client.post(f"/connectors/{connector_id}/full-sync", params={"run_inline": "true"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["result"]["jobs"] == 1
    assert body["result"]["sync_type"] == "full"


def test_delta_sync_runs_inline_unless_enqueued(api_client: TestClient, connector_id: str) -> None:
    inline = api_client.post(f"/connectors/{connector_id}/delta-sync")
    queued = api_client.post(f"/connectors/{connector_id}/delta-sync", params={"enqueue": "true"})

    assert inline.json()["status"] == "completed"
    assert inline.json()["result"]["since"] is not None
    assert queued.json()["status"] == "queued"
    assert queued.json()["result"]["type"] == "delta"


def test_sync_failure_is_reported_in_body(api_client: TestClient, connector_id: str, bamboo, repository) -> None:
    bamboo.forced_status["/applicant_tracking/jobs"] = 500

    response = api_client.post(f"/connectors/{connector_id}/delta-sync")

    assert response.status_code == 200
    assert response.json()["ok"] is False
    assert response.json()["status"] == "error"
    assert asyncio.run(repository.get_connector(connector_id)).status == "error"


def test_sync_of_unknown_connector_is_404(api_client: TestClient) -> None:
    assert api_client.post("/connectors/missing/full-sync").status_code == 404


def test_database_failure_during_inline_sync_is_reported_in_body(
    api_client: TestClient, connector_id: str, repository, monkeypatch
) -> None:
    async def dropped_connection(self, *args, **kwargs):
        raise pg_exc.ConnectionDoesNotExistError("connection was closed in the middle of operation")

    monkeypatch.setattr(type(repository), "upsert_job", translate_database_errors(dropped_connection))

    response = api_client.post(f"/connectors/{connector_id}/full-sync", params={"run_inline": "true"})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is False
    assert body["status"] == "error"
    assert body["message"].startswith("database error")
    assert asyncio.run(repository.get_connector(connector_id)).status == "error"
