from __future__ import annotations

import asyncio

from ats_pipeline.provider.mapper import map_application_to_event
from ats_pipeline.services.normalizer import EventNormalizer
from ats_pipeline.services.snapshot import CandidateSnapshotUpdater, StageHistoryCache, resolve_stage


async def _ingest(repository, connector_id: str, application: dict) -> str:
    result = await EventNormalizer(repository).normalize_and_persist(
        map_application_to_event(application, connector_id)
    )
    return result.event_id


async def _seed(repository) -> str:
    connector = await repository.create_connector(provider="bamboohr", subdomain="acme", api_key="key")
    await repository.upsert_job(connector.id, "J-1")
    await repository.upsert_candidate(connector.id, "A-1", full_name="Ada")
    return connector.id


def test_snapshot_follows_newest_event_regardless_of_arrival_order(repository, make_application) -> None:
    updater = CandidateSnapshotUpdater(repository, stage_history=StageHistoryCache())

    async def scenario():
        connector_id = await _seed(repository)
        newer_id = await _ingest(repository, connector_id, make_application("app-2", stage_to="Interview", hours=5))
        older_id = await _ingest(repository, connector_id, make_application("app-1", stage_to="Screening"))
        newer = await updater.update_from_event(newer_id)
        older = await updater.update_from_event(older_id)
        candidate = await repository.get_candidate(newer.candidate_id)
        return newer, older, candidate, newer_id

    newer, older, candidate, newer_id = asyncio.run(scenario())

    assert newer.updated is True
    assert older.reason == "stale"
    assert candidate.current_stage == "Interview"
    assert candidate.last_event_id == newer_id
    assert candidate.job_id is not None
    assert updater.recent_stages(candidate.id) == ["Interview"]


def test_snapshot_links_event_when_candidate_arrives_later(repository, make_application) -> None:
    updater = CandidateSnapshotUpdater(repository)

    async def scenario():
        connector = await repository.create_connector(provider="bamboohr", subdomain="acme", api_key="key")
        event_id = await _ingest(repository, connector.id, make_application("app-1", stage_to="Screening"))
        unresolved = await updater.update_from_event(event_id)
        candidate_id = await repository.upsert_candidate(connector.id, "A-1")
        resolved = await updater.update_from_event(event_id)
        return unresolved, resolved, candidate_id, await repository.get_candidate_event(event_id)

    unresolved, resolved, candidate_id, stored = asyncio.run(scenario())

    assert unresolved.reason == "candidate unresolved"
    assert resolved.updated is True
    assert resolved.candidate_id == candidate_id
    assert stored.candidate_id == candidate_id


def test_snapshot_reports_missing_event(repository) -> None:
    result = asyncio.run(CandidateSnapshotUpdater(repository).update_from_event("missing"))
    assert result.reason == "event not found"
    assert result.updated is False


def test_resolve_stage_falls_back_to_status_label_then_stage_from(repository, make_application) -> None:
    async def scenario():
        connector_id = await _seed(repository)
        application = make_application("app-1", stage_from="Screening")
        application["status"] = {"label": "On Hold"}
        with_status = await _ingest(repository, connector_id, application)
        bare = await _ingest(repository, connector_id, make_application("app-2", stage_from="Screening"))
        return await repository.get_candidate_event(with_status), await repository.get_candidate_event(bare)

    with_status, bare = asyncio.run(scenario())

    assert resolve_stage(with_status) == "On Hold"
    assert resolve_stage(bare) == "Screening"


def test_stage_history_cache_expires_and_bounds_entries() -> None:
    now = {"value": 0.0}
    cache = StageHistoryCache(ttl_seconds=10, max_entries=2, clock=lambda: now["value"])

    cache.push("cand-1", "Applied")
    cache.push("cand-1", "Screening")
    cache.push("cand-1", "Interview")
    assert cache.get("cand-1") == ["Interview", "Screening"]

    now["value"] = 11.0
    assert cache.get("cand-1") == []


def test_broken_stage_history_never_fails_snapshot(repository, make_application) -> None:
    class BrokenCache:
        def push(self, candidate_id: str, stage: str) -> None:
            raise ConnectionError("cache offline")

        def get(self, candidate_id: str) -> list[str]:
            raise ConnectionError("cache offline")

    updater = CandidateSnapshotUpdater(repository, stage_history=BrokenCache())

    async def scenario():
        connector_id = await _seed(repository)
        event_id = await _ingest(repository, connector_id, make_application("app-1", stage_to="Screening"))
        return await updater.update_from_event(event_id)

    result = asyncio.run(scenario())

    assert result.updated is True
    assert updater.recent_stages(result.candidate_id) == []
