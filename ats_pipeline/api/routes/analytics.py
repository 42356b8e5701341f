from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ats_pipeline.schemas.analytics import (
    HeatmapRowOut,
    JobStatsOut,
    ReconcileOut,
    StageCandidateOut,
    StageCandidatesOut,
)
from ats_pipeline.services.analytics import MAX_PAGE_SIZE
from ats_pipeline.services.pipeline import get_pipeline
from ats_pipeline.services.repository import RepositoryNotFoundError, RepositoryUnavailableError

router = APIRouter()


@router.get("/{job_id}/heatmap", response_model=list[HeatmapRowOut])
async def get_heatmap(job_id: str, connector_id: str, pipeline=Depends(get_pipeline)) -> list[HeatmapRowOut]:
    try:
        rows = await pipeline.analytics.get_job_heatmap(job_id.strip(), connector_id.strip())
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [HeatmapRowOut(**asdict(row)) for row in rows]


@router.get("/{job_id}/stages/{stage_name}/candidates", response_model=StageCandidatesOut)
async def get_stage_candidates(
    job_id: str,
    stage_name: str,
    connector_id: str,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=MAX_PAGE_SIZE),
    age_days: float | None = Query(default=None, ge=0),
    search: str | None = None,
    pipeline=Depends(get_pipeline),
) -> StageCandidatesOut:
    try:
        result = await pipeline.analytics.get_stage_candidates(
            job_id,
            connector_id,
            stage_name,
            page=page,
            page_size=page_size,
            age_days=age_days,
            search=search,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return StageCandidatesOut(
        items=[
            StageCandidateOut(
                id=candidate.id,
                external_candidate_id=candidate.external_candidate_id,
                full_name=candidate.full_name,
                email=candidate.email,
                phone=candidate.phone,
                current_stage=candidate.current_stage,
                last_event_at=candidate.last_event_at,
                recent_stages=result.recent_stages.get(candidate.id, []),
            )
            for candidate in result.items
        ],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@router.get("/{job_id}/stats", response_model=JobStatsOut)
async def get_stats(job_id: str, connector_id: str, pipeline=Depends(get_pipeline)) -> JobStatsOut:
    try:
        stats = await pipeline.analytics.get_job_stats(job_id.strip(), connector_id.strip())
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if stats is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="job id and connector id are required")
    return JobStatsOut(**asdict(stats))


@router.post("/{job_id}/reconcile", response_model=ReconcileOut)
async def reconcile_job(job_id: str, connector_id: str, pipeline=Depends(get_pipeline)) -> ReconcileOut:
    job_id = job_id.strip()
    connector_id = connector_id.strip()
    if not job_id or not connector_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="job id and connector id are required")

    try:
        rows = await pipeline.aggregator.reconcile_job(job_id, connector_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return ReconcileOut(
        job_id=job_id,
        connector_id=connector_id,
        heatmap=[HeatmapRowOut(**asdict(row)) for row in rows],
    )
