from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ats_pipeline.services.records import UNKNOWN_STAGE, StageMetricRecord
from ats_pipeline.services.repository import AtsRepository
from ats_pipeline.services.stage_duration import StageDurationEngine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HeatmapRow:
    stage_name: str
    candidate_count: int
    avg_duration_hours: float | None
    total_duration_hours: float | None
    delay_severity: str | None


@dataclass(slots=True)
class ReconcileSummary:
    jobs: int
    succeeded: int
    failed: int
    failed_job_ids: list[str] = field(default_factory=list)


def stage_counts_with_unknown(counts: dict[str | None, int]) -> dict[str, int]:
    merged: dict[str, int] = {}
    for stage, count in counts.items():
        key = stage or UNKNOWN_STAGE
        merged[key] = merged.get(key, 0) + count
    return merged


def merge_heatmap(
    counts: dict[str, int],
    metrics: list[StageMetricRecord],
    *,
    include_metric_only: bool = True,
) -> list[HeatmapRow]:
    by_stage = {metric.stage_name: metric for metric in metrics}
    rows: list[HeatmapRow] = []
    for stage_name, count in counts.items():
        metric = by_stage.get(stage_name)
        rows.append(
            HeatmapRow(
                stage_name=stage_name,
                candidate_count=count,
                avg_duration_hours=metric.avg_duration_hours if metric else None,
                total_duration_hours=metric.total_duration_hours if metric else None,
                delay_severity=metric.delay_severity if metric else None,
            )
        )
    if include_metric_only:
        for metric in metrics:
            if metric.stage_name in counts:
                continue
            rows.append(
                HeatmapRow(
                    stage_name=metric.stage_name,
                    candidate_count=0,
                    avg_duration_hours=metric.avg_duration_hours,
                    total_duration_hours=metric.total_duration_hours,
                    delay_severity=metric.delay_severity,
                )
            )
    rows.sort(key=lambda row: (-row.candidate_count, row.stage_name))
    return rows


class JobAggregator:
    def __init__(self, repository: AtsRepository, durations: StageDurationEngine) -> None:
        self.repository = repository
        self.durations = durations

    async def compute_job_heatmap(self, job_id: str, connector_id: str) -> list[HeatmapRow]:
        """Refresh per-stage headcounts for a job and return them joined with duration stats."""
        counts = stage_counts_with_unknown(await self.repository.count_candidates_by_stage(job_id, connector_id))
        await self.repository.save_stage_headcounts(job_id, connector_id, counts)
        metrics = await self.repository.list_stage_metrics(job_id, connector_id)
        rows = merge_heatmap(counts, metrics, include_metric_only=False)
        logger.info("computed heatmap for job=%s stages=%s", job_id, len(rows))
        return rows

    async def reconcile_job(self, job_id: str, connector_id: str) -> list[HeatmapRow]:
        await self.durations.reconcile_job_metrics(job_id, connector_id)
        return await self.compute_job_heatmap(job_id, connector_id)

    async def reconcile_all_jobs(self) -> ReconcileSummary:
        jobs = await self.repository.list_jobs()
        summary = ReconcileSummary(jobs=len(jobs), succeeded=0, failed=0)
        logger.info("running periodic reconciliation for %s jobs", len(jobs))
        for job in jobs:
            try:
                await self.reconcile_job(job.id, job.connector_id)
            except Exception:
                summary.failed += 1
                summary.failed_job_ids.append(job.id)
                logger.exception("reconciliation failed for job=%s connector=%s", job.id, job.connector_id)
                continue
            summary.succeeded += 1
        logger.info(
            "reconciliation complete jobs=%s succeeded=%s failed=%s",
            summary.jobs,
            summary.succeeded,
            summary.failed,
        )
        return summary
