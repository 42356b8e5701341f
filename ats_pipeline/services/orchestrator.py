from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from opentelemetry import trace

from ats_pipeline.provider.service import EventSyncResult, ProviderSyncService
from ats_pipeline.services.queue import QueueDispatcher
from ats_pipeline.services.records import ConnectorRecord
from ats_pipeline.services.repository import AtsRepository, RepositoryNotFoundError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ConnectorNotFoundError(Exception):
    """Raised when a sync targets a connector that does not exist."""


class SyncInProgressError(Exception):
    """Raised when a connector already has a sync queued or running."""


@dataclass(slots=True)
class EnqueuedSync:
    connector_id: str
    job_id: str
    sync_type: str


@dataclass(slots=True)
class SyncSummary:
    connector_id: str
    sync_type: str
    jobs: int
    candidates: int
    events: EventSyncResult
    duration_ms: int
    since: datetime | None = None


class SyncOrchestrator:
    """Drives full and delta syncs for a connector and owns its status fields."""

    def __init__(
        self,
        repository: AtsRepository,
        provider: ProviderSyncService,
        dispatcher: QueueDispatcher,
        *,
        lock_lease_seconds: int = 3600,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.dispatcher = dispatcher
        self.lock_lease_seconds = lock_lease_seconds

    async def full_sync(self, connector_id: str, *, inline: bool = False) -> SyncSummary | EnqueuedSync:
        if inline:
            return await self.run_sync(connector_id, "full")
        return await self.enqueue_sync(connector_id, "full")

    async def delta_sync(self, connector_id: str, *, inline: bool = False) -> SyncSummary | EnqueuedSync:
        if inline:
            return await self.run_sync(connector_id, "delta")
        return await self.enqueue_sync(connector_id, "delta")

    async def enqueue_sync(self, connector_id: str, sync_type: str) -> EnqueuedSync:
        await self._connector(connector_id)
        job = await self.dispatcher.add_sync_job(connector_id, sync_type)
        if job is None:
            raise SyncInProgressError(f"a sync is already queued or running for connector {connector_id}")
        logger.info("enqueued %s sync job=%s for connector=%s", sync_type, job.id, connector_id)
        return EnqueuedSync(connector_id=connector_id, job_id=job.id, sync_type=sync_type)

    async def run_sync(self, connector_id: str, sync_type: str) -> SyncSummary:
        """Run jobs -> candidates -> events for one connector under its sync guard."""
        connector = await self._connector(connector_id)
        token = uuid4().hex
        acquired = await self.repository.acquire_sync_lock(
            connector_id,
            token=token,
            lease_seconds=self.lock_lease_seconds,
        )
        if not acquired:
            raise SyncInProgressError(f"a sync is already running for connector {connector_id}")

        since = self._delta_cursor(connector) if sync_type == "delta" else None
        started_at = time.perf_counter()
        try:
            with tracer.start_as_current_span("sync.run") as span:
                span.set_attribute("connector.id", connector_id)
                span.set_attribute("sync.type", sync_type)
                if since is not None:
                    logger.info("delta sync for connector=%s since=%s", connector_id, since.isoformat())

                jobs = await self.provider.sync_jobs(connector_id)
                candidates = await self.provider.sync_candidates(connector_id)
                events = await self.provider.sync_candidate_events(connector_id)
                await self.repository.record_sync_success(
                    connector_id,
                    sync_type=sync_type,
                    finished_at=datetime.now(timezone.utc),
                )
        except Exception:
            logger.exception("%s sync failed for connector=%s", sync_type, connector_id)
            await self._mark_error(connector_id)
            raise
        finally:
            await self._release(connector_id, token)

        summary = SyncSummary(
            connector_id=connector_id,
            sync_type=sync_type,
            jobs=jobs,
            candidates=candidates,
            events=events,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
            since=since,
        )
        logger.info(
            "%s sync complete connector=%s jobs=%s candidates=%s pages=%s duration_ms=%s",
            sync_type,
            connector_id,
            jobs,
            candidates,
            events.pages_enqueued,
            summary.duration_ms,
        )
        return summary

    async def test_connection(self, connector_id: str) -> dict[str, Any]:
        await self._connector(connector_id)
        return await self.provider.test_connection(connector_id)

    async def _connector(self, connector_id: str) -> ConnectorRecord:
        try:
            return await self.repository.get_connector(connector_id)
        except RepositoryNotFoundError as exc:
            raise ConnectorNotFoundError(f"connector not found: {connector_id}") from exc

    @staticmethod
    def _delta_cursor(connector: ConnectorRecord) -> datetime:
        return connector.last_delta_sync_at or connector.last_full_sync_at or EPOCH

    async def _mark_error(self, connector_id: str) -> None:
        try:
            await self.repository.update_connector_status(connector_id, "error")
        except Exception:
            logger.exception("failed to mark connector=%s as error", connector_id)

    async def _release(self, connector_id: str, token: str) -> None:
        try:
            await self.repository.release_sync_lock(connector_id, token=token)
        except Exception:
            logger.exception("failed to release sync guard for connector=%s", connector_id)
