from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from ats_pipeline.services.aggregator import HeatmapRow, merge_heatmap, stage_counts_with_unknown
from ats_pipeline.services.records import UNKNOWN_STAGE, CandidateRecord
from ats_pipeline.services.repository import AtsRepository

PIPELINE_MOVEMENT_WINDOW = timedelta(days=7)
MAX_PAGE_SIZE = 200


@dataclass(slots=True)
class StageCandidatesPage:
    items: list[CandidateRecord]
    total: int
    page: int
    page_size: int
    recent_stages: dict[str, list[str]] = field(default_factory=dict)


@dataclass(slots=True)
class JobStats:
    job_id: str
    connector_id: str
    total_applications: int
    pipeline_movement_last_7d: int
    avg_time_in_pipeline_hours: float | None


class AnalyticsService:
    """Read-only dashboard queries: heatmap, stage drilldown, job overview."""

    def __init__(
        self,
        repository: AtsRepository,
        *,
        recent_stages: Callable[[str], list[str]] | None = None,
    ) -> None:
        self.repository = repository
        self.recent_stages = recent_stages

    async def get_job_heatmap(self, job_id: str, connector_id: str) -> list[HeatmapRow]:
        if not job_id or not connector_id:
            return []
        counts = stage_counts_with_unknown(await self.repository.count_candidates_by_stage(job_id, connector_id))
        metrics = await self.repository.list_stage_metrics(job_id, connector_id)
        return merge_heatmap(counts, metrics, include_metric_only=True)

    async def get_stage_candidates(
        self,
        job_id: str,
        connector_id: str,
        stage_name: str | None,
        *,
        page: int = 1,
        page_size: int = 25,
        age_days: float | None = None,
        search: str | None = None,
        now: datetime | None = None,
    ) -> StageCandidatesPage:
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        stage_filter = None if not stage_name or stage_name.lower() == UNKNOWN_STAGE.lower() else stage_name
        cutoff = None
        if age_days is not None and age_days >= 0:
            cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=age_days)
        needle = search.strip() if search else None

        total, items = await self.repository.list_stage_candidates(
            job_id,
            connector_id,
            stage_name=stage_filter,
            search=needle or None,
            last_event_before=cutoff,
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        history: dict[str, list[str]] = {}
        if self.recent_stages is not None:
            history = {candidate.id: self.recent_stages(candidate.id) for candidate in items}
        return StageCandidatesPage(items=items, total=total, page=page, page_size=page_size, recent_stages=history)

    async def get_job_stats(self, job_id: str, connector_id: str, *, now: datetime | None = None) -> JobStats | None:
        if not job_id or not connector_id:
            return None
        since = (now or datetime.now(timezone.utc)) - PIPELINE_MOVEMENT_WINDOW
        stats = await self.repository.job_event_stats(job_id, connector_id, moves_since=since)
        avg_span = stats["avg_span_hours"]
        return JobStats(
            job_id=job_id,
            connector_id=connector_id,
            total_applications=stats["total_applications"],
            pipeline_movement_last_7d=stats["moves"],
            avg_time_in_pipeline_hours=round(avg_span, 3) if avg_span is not None else None,
        )
