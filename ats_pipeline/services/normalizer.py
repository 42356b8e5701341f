from __future__ import annotations

import logging
from dataclasses import dataclass

from ats_pipeline.services.records import NormalizedEvent
from ats_pipeline.services.repository import AtsRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class NormalizeResult:
    created: bool
    event_id: str | None
    reason: str

    @property
    def persisted(self) -> bool:
        return self.event_id is not None


class EventNormalizer:
    """Persists normalized provider events, one row per (provider event, connector).

    Replays are idempotent: an older or equal replay is reported as a
    duplicate, a strictly newer one is merged into the existing row.
    """

    def __init__(self, repository: AtsRepository) -> None:
        self.repository = repository

    async def normalize_and_persist(self, event: NormalizedEvent) -> NormalizeResult:
        if not event.provider_event_id or not event.connector_id:
            logger.warning(
                "dropping event without ids provider_event_id=%s connector_id=%s",
                event.provider_event_id,
                event.connector_id,
            )
            return NormalizeResult(created=False, event_id=None, reason="missing ids")

        candidate_id = None
        if event.candidate_external_id:
            candidate_id = await self.repository.find_candidate_id(event.connector_id, event.candidate_external_id)
        job_id = None
        if event.job_external_id:
            job_id = await self.repository.find_job_id(event.connector_id, event.job_external_id)

        event_id = await self.repository.insert_candidate_event(
            event,
            candidate_id=candidate_id,
            job_id=job_id,
            normalized={
                "metadata": dict(event.metadata or {}),
                "candidateExternalId": event.candidate_external_id,
                "jobExternalId": event.job_external_id,
            },
        )
        if event_id is not None:
            return NormalizeResult(created=True, event_id=event_id, reason="created")

        existing = await self.repository.get_candidate_event_by_provider_id(
            event.connector_id,
            event.provider_event_id,
        )
        if existing is None:
            logger.warning(
                "event conflict but existing row not found provider_event_id=%s connector_id=%s",
                event.provider_event_id,
                event.connector_id,
            )
            return NormalizeResult(created=False, event_id=None, reason="duplicate_unknown")

        if event.timestamp > existing.timestamp:
            merged = await self.repository.merge_candidate_event(
                existing.id,
                event,
                candidate_id=candidate_id,
                job_id=job_id,
            )
            if merged:
                logger.debug("merged newer replay into event id=%s", existing.id)
                return NormalizeResult(created=False, event_id=existing.id, reason="updated")

        return NormalizeResult(created=False, event_id=existing.id, reason="duplicate")
