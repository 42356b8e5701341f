from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from ats_pipeline.provider.mapper import map_application_to_event
from ats_pipeline.services.analytics import AnalyticsService
from ats_pipeline.services.normalizer import EventNormalizer

NOW = datetime(2024, 5, 20, tzinfo=timezone.utc)


async def _seed(repository) -> tuple[str, str]:
    connector = await repository.create_connector(provider="bamboohr", subdomain="acme", api_key="key")
    job_id = await repository.upsert_job(connector.id, "J-1")
    people = [
        ("A-1", "Ada Lovelace", "Screening", NOW - timedelta(days=10)),
        ("A-2", "Grace Hopper", "Screening", NOW - timedelta(days=1)),
        ("A-3", "Alan Turing", None, NOW - timedelta(days=3)),
    ]
    for external_id, name, stage, at in people:
        candidate_id = await repository.upsert_candidate(connector.id, external_id, full_name=name, job_id=job_id)
        await repository.apply_candidate_snapshot(
            candidate_id,
            stage=stage,
            event_at=at,
            event_id=f"evt-{external_id}",
            job_id=job_id,
        )
    return connector.id, job_id


def test_stage_candidates_filters_and_paginates(repository) -> None:
    analytics = AnalyticsService(repository)

    async def scenario():
        connector_id, job_id = await _seed(repository)
        first_page = await analytics.get_stage_candidates(job_id, connector_id, "Screening", page=1, page_size=1)
        second_page = await analytics.get_stage_candidates(job_id, connector_id, "Screening", page=2, page_size=1)
        stale = await analytics.get_stage_candidates(job_id, connector_id, "Screening", age_days=7, now=NOW)
        searched = await analytics.get_stage_candidates(job_id, connector_id, "Screening", search="  hopper ")
        unknown = await analytics.get_stage_candidates(job_id, connector_id, "unknown")
        return first_page, second_page, stale, searched, unknown

    first_page, second_page, stale, searched, unknown = asyncio.run(scenario())

    assert first_page.total == 2
    assert [candidate.full_name for candidate in first_page.items] == ["Grace Hopper"]
    assert [candidate.full_name for candidate in second_page.items] == ["Ada Lovelace"]
    assert [candidate.full_name for candidate in stale.items] == ["Ada Lovelace"]
    assert [candidate.full_name for candidate in searched.items] == ["Grace Hopper"]
    assert [candidate.full_name for candidate in unknown.items] == ["Alan Turing"]


def test_stage_candidates_clamps_page_size(repository) -> None:
    result = asyncio.run(
        AnalyticsService(repository).get_stage_candidates("job", "conn", "Screening", page=0, page_size=10_000)
    )
    assert result.page == 1
    assert result.page_size == 200
    assert result.total == 0


def test_job_heatmap_includes_metric_only_stages(repository) -> None:
    analytics = AnalyticsService(repository)

    async def scenario():
        connector_id, job_id = await _seed(repository)
        event_id = await repository.insert_candidate_event(
            map_application_to_event({"id": "app-x", "updatedAt": NOW.isoformat()}, connector_id),
            candidate_id=None,
            job_id=job_id,
            normalized={},
        )
        await repository.apply_stage_duration(
            event_id,
            job_id=job_id,
            connector_id=connector_id,
            stage_name="Offer",
            duration_hours=200.0,
        )
        return await analytics.get_job_heatmap(job_id, connector_id)

    rows = asyncio.run(scenario())

    assert [(row.stage_name, row.candidate_count) for row in rows] == [("Screening", 2), ("Unknown", 1), ("Offer", 0)]
    offer = rows[2]
    assert offer.avg_duration_hours == 200.0
    assert offer.delay_severity == "high"


def test_job_heatmap_requires_ids(repository) -> None:
    assert asyncio.run(AnalyticsService(repository).get_job_heatmap("", "conn")) == []


def test_job_stats_summarize_applications_and_movement(repository, make_application) -> None:
    analytics = AnalyticsService(repository)

    async def scenario():
        connector = await repository.create_connector(provider="bamboohr", subdomain="acme", api_key="key")
        job_id = await repository.upsert_job(connector.id, "J-1")
        await repository.upsert_candidate(connector.id, "A-1", job_id=job_id)
        await repository.upsert_candidate(connector.id, "A-2", job_id=job_id)
        normalizer = EventNormalizer(repository)
        for application in (
            make_application("app-1", stage_to="Screening", hours=0),
            make_application("app-2", stage_to="Interview", hours=10),
            make_application("app-3", applicant_id="A-2", stage_to="Screening", hours=0),
        ):
            await normalizer.normalize_and_persist(map_application_to_event(application, connector.id))
        now = datetime.fromisoformat(make_application("x", hours=24 * 3)["updatedAt"])
        return job_id, connector.id, await analytics.get_job_stats(job_id, connector.id, now=now)

    job_id, connector_id, stats = asyncio.run(scenario())

    assert stats.job_id == job_id
    assert stats.connector_id == connector_id
    assert stats.total_applications == 2
    assert stats.pipeline_movement_last_7d == 3
    assert stats.avg_time_in_pipeline_hours == 5.0


def test_job_stats_need_both_ids(repository) -> None:
    assert asyncio.run(AnalyticsService(repository).get_job_stats("job", "")) is None
