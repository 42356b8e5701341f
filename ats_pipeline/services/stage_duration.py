from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from ats_pipeline.services.metrics import hours_between
from ats_pipeline.services.records import CandidateEventRecord, StageAggregate
from ats_pipeline.services.repository import AtsRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DurationResult:
    applied: bool
    duration_hours: float | None
    stage_name: str | None
    reason: str


@dataclass(slots=True)
class ReconcileResult:
    job_id: str
    connector_id: str
    samples: int
    stages: dict[str, StageAggregate] = field(default_factory=dict)


def compute_stage_aggregates(events: Iterable[CandidateEventRecord]) -> dict[str, StageAggregate]:
    """Sum dwell time per stage from events sorted by (candidate, timestamp).

    Each consecutive pair for the same candidate yields one sample, keyed by
    the stage the candidate was leaving.
    """
    aggregates: dict[str, StageAggregate] = {}
    previous: CandidateEventRecord | None = None
    for event in events:
        if previous is not None and previous.candidate_id == event.candidate_id:
            stage = previous.stage_left
            hours = hours_between(previous.timestamp, event.timestamp)
            if stage and hours >= 0:
                aggregate = aggregates.setdefault(stage, StageAggregate(count=0, total_hours=0.0))
                aggregate.count += 1
                aggregate.total_hours += hours
        previous = event
    return aggregates


class StageDurationEngine:
    def __init__(self, repository: AtsRepository) -> None:
        self.repository = repository

    async def compute_duration_from_event(self, event_id: str) -> DurationResult:
        event = await self.repository.get_candidate_event(event_id)
        if event is None:
            return DurationResult(applied=False, duration_hours=None, stage_name=None, reason="event not found")
        if event.duration_computed:
            return DurationResult(applied=False, duration_hours=None, stage_name=None, reason="already computed")
        if event.candidate_id is None:
            return await self._skip(event_id, "no candidate")
        if event.job_id is None:
            return await self._skip(event_id, "no job")

        previous = await self.repository.find_previous_candidate_event(
            event.candidate_id,
            before=event.timestamp,
            exclude_event_id=event.id,
        )
        if previous is None:
            return await self._skip(event_id, "no previous event")
        stage = previous.stage_left
        if not stage:
            return await self._skip(event_id, "previous event has no stage")
        hours = hours_between(previous.timestamp, event.timestamp)
        if hours < 0:
            logger.warning("negative stage duration for event=%s (%.3fh); skipping", event_id, hours)
            return await self._skip(event_id, "negative duration")

        applied = await self.repository.apply_stage_duration(
            event.id,
            job_id=event.job_id,
            connector_id=event.connector_id,
            stage_name=stage,
            duration_hours=hours,
        )
        if not applied:
            return DurationResult(applied=False, duration_hours=hours, stage_name=stage, reason="already computed")
        return DurationResult(applied=True, duration_hours=hours, stage_name=stage, reason="applied")

    async def reconcile_job_metrics(self, job_id: str, connector_id: str) -> ReconcileResult:
        events = await self.repository.list_job_events(job_id, connector_id)
        aggregates = compute_stage_aggregates(events)
        await self.repository.replace_stage_durations(job_id, connector_id, aggregates)
        samples = sum(aggregate.count for aggregate in aggregates.values())
        logger.info(
            "reconciled stage durations job=%s connector=%s stages=%s samples=%s",
            job_id,
            connector_id,
            len(aggregates),
            samples,
        )
        return ReconcileResult(job_id=job_id, connector_id=connector_id, samples=samples, stages=aggregates)

    async def _skip(self, event_id: str, reason: str) -> DurationResult:
        await self.repository.mark_stage_duration_computed(event_id)
        return DurationResult(applied=False, duration_hours=None, stage_name=None, reason=reason)
