from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from ats_pipeline.main import app
from ats_pipeline.provider.mapper import map_application_to_event
from ats_pipeline.services.pipeline import get_pipeline


@pytest.fixture
def api_client(pipeline) -> TestClient:
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def seeded(pipeline, repository, make_application) -> dict[str, str]:
    async def scenario() -> dict[str, str]:
        connector = await repository.create_connector(provider="bamboohr", subdomain="acme", api_key="key")
        job_id = await repository.upsert_job(connector.id, "J-1")
        await repository.upsert_candidate(connector.id, "A-1", full_name="Ada Lovelace", job_id=job_id)
        await repository.upsert_candidate(connector.id, "A-2", full_name="Grace Hopper", job_id=job_id)
        for application in (
            make_application("app-1", stage_to="Screening"),
            make_application("app-2", stage_from="Screening", stage_to="Interview", hours=4),
            make_application("app-3", applicant_id="A-2", first_name="Grace"),
        ):
            result = await pipeline.normalizer.normalize_and_persist(
                map_application_to_event(application, connector.id)
            )
            await pipeline.snapshot.update_from_event(result.event_id)
            await pipeline.durations.compute_duration_from_event(result.event_id)
        return {"connector_id": connector.id, "job_id": job_id}

    return asyncio.run(scenario())


def test_heatmap_joins_headcounts_with_durations(api_client: TestClient, seeded: dict[str, str]) -> None:
    response = api_client.get(f"/jobs/{seeded['job_id']}/heatmap", params={"connector_id": seeded["connector_id"]})

    assert response.status_code == 200
    rows = {row["stage_name"]: row for row in response.json()}
    assert rows["Interview"]["candidate_count"] == 1
    assert rows["Unknown"]["candidate_count"] == 1
    assert rows["Screening"]["candidate_count"] == 0
    assert rows["Screening"]["avg_duration_hours"] == 4.0
    assert rows["Screening"]["delay_severity"] == "low"


def test_stage_candidates_for_unknown_stage(api_client: TestClient, seeded: dict[str, str]) -> None:
    response = api_client.get(
        f"/jobs/{seeded['job_id']}/stages/Unknown/candidates",
        params={"connector_id": seeded["connector_id"], "page_size": 10},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["page"] == 1
    assert body["page_size"] == 10
    assert body["items"][0]["full_name"] == "Grace Hopper"
    assert body["items"][0]["current_stage"] is None
    assert body["items"][0]["recent_stages"] == []


def test_stage_candidates_carry_recent_stage_history(api_client: TestClient, seeded: dict[str, str]) -> None:
    response = api_client.get(
        f"/jobs/{seeded['job_id']}/stages/Interview/candidates",
        params={"connector_id": seeded["connector_id"]},
    )

    assert response.status_code == 200
    items = response.json()["items"]
    assert [item["full_name"] for item in items] == ["Ada Lovelace"]
    assert items[0]["recent_stages"] == ["Interview", "Screening"]


def test_stage_candidates_validates_query(api_client: TestClient, seeded: dict[str, str]) -> None:
    path = f"/jobs/{seeded['job_id']}/stages/Screening/candidates"
    assert api_client.get(path).status_code == 422
    assert api_client.get(path, params={"connector_id": seeded["connector_id"], "page_size": 500}).status_code == 422


def test_job_stats(api_client: TestClient, seeded: dict[str, str]) -> None:
    response = api_client.get(f"/jobs/{seeded['job_id']}/stats", params={"connector_id": seeded["connector_id"]})

    assert response.status_code == 200
    body = response.json()
    assert body["total_applications"] == 2
    assert body["avg_time_in_pipeline_hours"] == 2.0


def test_job_stats_require_connector(api_client: TestClient, seeded: dict[str, str]) -> None:
    response = api_client.get(f"/jobs/{seeded['job_id']}/stats", params={"connector_id": " "})
    assert response.status_code == 400


def test_reconcile_rebuilds_metrics(api_client: TestClient, seeded: dict[str, str], repository) -> None:
    response = api_client.post(f"/jobs/{seeded['job_id']}/reconcile", params={"connector_id": seeded["connector_id"]})

    assert response.status_code == 200
    body = response.json()
    assert body["job_id"] == seeded["job_id"]
    stages = {row["stage_name"]: row["candidate_count"] for row in body["heatmap"]}
    assert stages == {"Interview": 1, "Unknown": 1}
    metrics = asyncio.run(repository.list_stage_metrics(seeded["job_id"], seeded["connector_id"]))
    assert {metric.stage_name: metric.current_count for metric in metrics}["Interview"] == 1
