from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from ats_pipeline.services.records import QueueJobRecord
from ats_pipeline.services.repository import AtsRepository

logger = logging.getLogger(__name__)


class QueueLane(str, Enum):
    SYNC = "sync-connectors"
    RAW_EVENTS = "raw-events"
    NORMALIZE = "normalize-events"


FULL_SYNC_JOB = "full-sync"
DELTA_SYNC_JOB = "delta-sync"
RAW_PAGE_JOB = "raw-app-page"
NORMALIZE_JOB = "normalize-application"

SYNC_JOB_NAMES = {"full": FULL_SYNC_JOB, "delta": DELTA_SYNC_JOB}


class QueueDispatcher:
    """Producer side of the three work lanes.

    Every job carries the same retry policy: ``max_attempts`` tries with
    exponential backoff from ``backoff_base_seconds``; jobs are deleted
    once a handler completes them.
    """

    def __init__(self, repository: AtsRepository, *, max_attempts: int = 3, backoff_base_seconds: float = 1.0) -> None:
        self.repository = repository
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds

    async def add_sync_job(self, connector_id: str, sync_type: str) -> QueueJobRecord | None:
        """Enqueue a connector sync; ``None`` if one is already queued or running."""
        return await self._enqueue(
            QueueLane.SYNC,
            SYNC_JOB_NAMES[sync_type],
            {"connectorId": connector_id, "type": sync_type},
            singleton_key=f"sync:{connector_id}",
        )

    async def add_raw_events_page(
        self,
        connector_id: str,
        page: int,
        raw_applications: list[dict[str, Any]],
    ) -> QueueJobRecord | None:
        return await self._enqueue(
            QueueLane.RAW_EVENTS,
            RAW_PAGE_JOB,
            {"connectorId": connector_id, "page": page, "rawApplications": raw_applications},
        )

    async def add_normalize_application(
        self,
        connector_id: str,
        application: dict[str, Any],
    ) -> QueueJobRecord | None:
        return await self._enqueue(
            QueueLane.NORMALIZE,
            NORMALIZE_JOB,
            {"connectorId": connector_id, "application": application},
        )

    async def _enqueue(
        self,
        lane: QueueLane,
        name: str,
        payload: dict[str, Any],
        *,
        singleton_key: str | None = None,
    ) -> QueueJobRecord | None:
        job = await self.repository.enqueue_queue_job(
            lane=lane.value,
            name=name,
            payload=payload,
            max_attempts=self.max_attempts,
            backoff_base_seconds=self.backoff_base_seconds,
            singleton_key=singleton_key,
        )
        if job is not None:
            logger.debug("enqueued %s job id=%s lane=%s", name, job.id, lane.value)
        return job
