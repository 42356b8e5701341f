from __future__ import annotations

import asyncio
import logging

import pytest

from ats_pipeline.provider.client import ProviderRequestError
from ats_pipeline.services.orchestrator import (
    EPOCH,
    ConnectorNotFoundError,
    EnqueuedSync,
    SyncInProgressError,
    SyncSummary,
)
from ats_pipeline.services.queue import QueueLane
from ats_pipeline.services.repository import RepositoryError


async def _connector(repository) -> str:
    connector = await repository.create_connector(provider="bamboohr", subdomain="acme", api_key="key")
    return connector.id


def test_inline_full_sync_runs_all_steps_and_records_success(pipeline, repository, bamboo, make_application) -> None:
    bamboo.applications = [make_application("app-1"), make_application("app-2", applicant_id="A-2")]

    async def scenario():
        connector_id = await _connector(repository)
        summary = await pipeline.orchestrator.full_sync(connector_id, inline=True)
        connector = await repository.get_connector(connector_id)
        # guard released: a second acquire succeeds
        reacquired = await repository.acquire_sync_lock(connector_id, token="next-run", lease_seconds=60)
        raw_pages = await repository.list_queue_jobs(lane=QueueLane.RAW_EVENTS.value)
        return summary, connector, reacquired, raw_pages

    summary, connector, reacquired, raw_pages = asyncio.run(scenario())

    assert isinstance(summary, SyncSummary)
    assert summary.sync_type == "full"
    assert summary.jobs == 1
    assert summary.candidates == 2
    assert summary.events.pages_enqueued == 1
    assert summary.since is None
    assert connector.status == "connected"
    assert connector.last_full_sync_at is not None
    assert connector.last_delta_sync_at is None
    assert reacquired is True
    assert len(raw_pages) == 1


def test_delta_sync_reports_cursor_from_last_sync(pipeline, repository) -> None:
    async def scenario():
        connector_id = await _connector(repository)
        first_delta = await pipeline.orchestrator.run_sync(connector_id, "delta")
        await pipeline.orchestrator.run_sync(connector_id, "full")
        after_full = await repository.get_connector(connector_id)
        second_delta = await pipeline.orchestrator.run_sync(connector_id, "delta")
        after_delta = await repository.get_connector(connector_id)
        third_delta = await pipeline.orchestrator.run_sync(connector_id, "delta")
        return first_delta, second_delta, third_delta, after_full, after_delta

    first_delta, second_delta, third_delta, after_full, after_delta = asyncio.run(scenario())

    assert first_delta.since == EPOCH
    assert second_delta.since == after_full.last_full_sync_at
    assert third_delta.since == after_delta.last_delta_sync_at


def test_sync_is_refused_while_guard_is_held(pipeline, repository) -> None:
    async def scenario():
        connector_id = await _connector(repository)
        await repository.acquire_sync_lock(connector_id, token="someone-else", lease_seconds=600)
        await pipeline.orchestrator.run_sync(connector_id, "full")

    with pytest.raises(SyncInProgressError):
        asyncio.run(scenario())


def test_provider_failure_marks_connector_error_and_releases_guard(pipeline, repository, bamboo) -> None:
    bamboo.forced_status["/applicant_tracking/jobs"] = 403

    async def scenario():
        connector_id = await _connector(repository)
        with pytest.raises(ProviderRequestError):
            await pipeline.orchestrator.run_sync(connector_id, "full")
        connector = await repository.get_connector(connector_id)
        reacquired = await repository.acquire_sync_lock(connector_id, token="next-run", lease_seconds=60)
        return connector, reacquired

    connector, reacquired = asyncio.run(scenario())

    assert connector.status == "error"
    assert connector.last_full_sync_at is None
    assert reacquired is True


def test_enqueued_syncs_are_single_flight(pipeline, repository) -> None:
    async def scenario():
        connector_id = await _connector(repository)
        queued = await pipeline.orchestrator.full_sync(connector_id)
        with pytest.raises(SyncInProgressError):
            await pipeline.orchestrator.delta_sync(connector_id)
        return connector_id, queued, await repository.list_queue_jobs(lane=QueueLane.SYNC.value)

    connector_id, queued, sync_jobs = asyncio.run(scenario())

    assert isinstance(queued, EnqueuedSync)
    assert queued.sync_type == "full"
    assert [job.payload for job in sync_jobs] == [{"connectorId": connector_id, "type": "full"}]


def test_unknown_connector_is_rejected(pipeline) -> None:
    with pytest.raises(ConnectorNotFoundError):
        asyncio.run(pipeline.orchestrator.full_sync("missing"))
    with pytest.raises(ConnectorNotFoundError):
        asyncio.run(pipeline.orchestrator.test_connection("missing"))


def test_failed_status_write_does_not_mask_sync_error(pipeline, repository, bamboo, monkeypatch, caplog) -> None:
    bamboo.forced_status["/applicant_tracking/jobs"] = 403

    async def broken_status_write(connector_id: str, status: str) -> None:
        raise RepositoryError("database error in update_connector_status: connection reset")

    monkeypatch.setattr(repository, "update_connector_status", broken_status_write)

    async def scenario():
        connector_id = await _connector(repository)
        with pytest.raises(ProviderRequestError) as exc_info:
            await pipeline.orchestrator.run_sync(connector_id, "full")
        reacquired = await repository.acquire_sync_lock(connector_id, token="next-run", lease_seconds=60)
        return exc_info.value, reacquired

    with caplog.at_level(logging.ERROR, logger="ats_pipeline.services.orchestrator"):
        error, reacquired = asyncio.run(scenario())

    assert error.status_code == 403
    assert reacquired is True
    assert any("failed to mark connector" in record.getMessage() for record in caplog.records)
