from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from ats_pipeline.provider.mapper import map_application_to_event
from ats_pipeline.services.pipeline import Pipeline
from ats_pipeline.services.queue import DELTA_SYNC_JOB
from ats_pipeline.services.records import QueueJobRecord

logger = logging.getLogger(__name__)


class QueuePayloadError(ValueError):
    """Raised when a lane job carries a payload its handler cannot use."""


class FanOutError(Exception):
    """Raised after a raw page was fanned out with some per-record enqueue failures."""

    def __init__(self, message: str, *, enqueued: int, failed: int) -> None:
        super().__init__(message)
        self.enqueued = enqueued
        self.failed = failed


def _connector_id(job: QueueJobRecord) -> str:
    connector_id = job.payload.get("connectorId")
    if not isinstance(connector_id, str) or not connector_id.strip():
        raise QueuePayloadError(f"{job.name} job {job.id} is missing connectorId")
    return connector_id


async def handle_sync_job(job: QueueJobRecord, pipeline: Pipeline) -> dict[str, Any]:
    connector_id = _connector_id(job)
    sync_type = job.payload.get("type")
    if sync_type not in {"full", "delta"}:
        sync_type = "delta" if job.name == DELTA_SYNC_JOB else "full"

    summary = await pipeline.orchestrator.run_sync(connector_id, sync_type)
    return {
        "connectorId": connector_id,
        "type": sync_type,
        "jobs": summary.jobs,
        "candidates": summary.candidates,
        "events": asdict(summary.events),
        "durationMs": summary.duration_ms,
        "since": summary.since.isoformat() if summary.since else None,
    }


async def handle_raw_page(job: QueueJobRecord, pipeline: Pipeline) -> dict[str, int]:
    connector_id = _connector_id(job)
    raw_applications = job.payload.get("rawApplications")
    if not isinstance(raw_applications, list):
        raise QueuePayloadError(f"raw page job {job.id} has no rawApplications list")

    enqueued = 0
    failed = 0
    for application in raw_applications:
        if not isinstance(application, dict):
            logger.warning("skipping non-object application in raw page job=%s", job.id)
            continue
        try:
            await pipeline.dispatcher.add_normalize_application(connector_id, application)
        except Exception:
            failed += 1
            logger.exception(
                "failed to enqueue normalize job for application=%s page=%s connector=%s",
                application.get("id"),
                job.payload.get("page"),
                connector_id,
            )
            continue
        enqueued += 1

    logger.info(
        "fanned out raw page=%s connector=%s enqueued=%s failed=%s",
        job.payload.get("page"),
        connector_id,
        enqueued,
        failed,
    )
    if failed:
        raise FanOutError(
            f"{failed} of {enqueued + failed} applications failed to enqueue",
            enqueued=enqueued,
            failed=failed,
        )
    return {"enqueued": enqueued, "failed": failed}


async def handle_normalize_application(job: QueueJobRecord, pipeline: Pipeline) -> dict[str, Any]:
    connector_id = _connector_id(job)
    application = job.payload.get("application")
    if not isinstance(application, dict):
        raise QueuePayloadError(f"normalize job {job.id} has no application object")

    event = map_application_to_event(application, connector_id)
    result = await pipeline.normalizer.normalize_and_persist(event)
    outcome: dict[str, Any] = {
        "created": result.created,
        "eventId": result.event_id,
        "reason": result.reason,
    }
    if result.event_id is None:
        return outcome

    # downstream analytics failures must not fail the persisted event
    try:
        snapshot = await pipeline.snapshot.update_from_event(result.event_id)
        outcome["snapshot"] = snapshot.reason
    except Exception:
        outcome["snapshot"] = "error"
        logger.exception("snapshot update failed for event=%s", result.event_id)

    try:
        duration = await pipeline.durations.compute_duration_from_event(result.event_id)
        outcome["duration"] = duration.reason
    except Exception:
        outcome["duration"] = "error"
        logger.exception("stage duration failed for event=%s", result.event_id)

    return outcome
