import logging
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status

from ats_pipeline.provider.client import ProviderError
from ats_pipeline.schemas.connectors import ConnectionTestOut, SyncOut
from ats_pipeline.services.orchestrator import (
    ConnectorNotFoundError,
    EnqueuedSync,
    SyncInProgressError,
    SyncSummary,
)
from ats_pipeline.services.pipeline import get_pipeline
from ats_pipeline.services.repository import RepositoryError, RepositoryUnavailableError

router = APIRouter()
logger = logging.getLogger(__name__)


def _require_connector_id(connector_id: str) -> str:
    connector_id = connector_id.strip()
    if not connector_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="connector id is required")
    return connector_id


def _sync_out(connector_id: str, outcome: SyncSummary | EnqueuedSync) -> SyncOut:
    now = datetime.now(timezone.utc)
    if isinstance(outcome, EnqueuedSync):
        return SyncOut(
            connector_id=connector_id,
            ok=True,
            status="queued",
            message=f"{outcome.sync_type} sync queued",
            result={"job_id": outcome.job_id, "type": outcome.sync_type},
            timestamp=now,
        )
    return SyncOut(
        connector_id=connector_id,
        ok=True,
        status="completed",
        message=f"{outcome.sync_type} sync completed",
        result=asdict(outcome),
        timestamp=now,
    )


async def _run_sync(pipeline, connector_id: str, sync_type: str, *, inline: bool) -> SyncOut:
    connector_id = _require_connector_id(connector_id)
    try:
        if sync_type == "full":
            outcome = await pipeline.orchestrator.full_sync(connector_id, inline=inline)
        else:
            outcome = await pipeline.orchestrator.delta_sync(connector_id, inline=inline)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ConnectorNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SyncInProgressError as exc:
        return SyncOut(
            connector_id=connector_id,
            ok=False,
            status="in_progress",
            message=str(exc),
            timestamp=datetime.now(timezone.utc),
        )
    except (ProviderError, RepositoryError) as exc:
        logger.warning("%s sync request failed for connector=%s: %s", sync_type, connector_id, exc)
        return SyncOut(
            connector_id=connector_id,
            ok=False,
            status="error",
            message=str(exc) or type(exc).__name__,
            timestamp=datetime.now(timezone.utc),
        )
    return _sync_out(connector_id, outcome)


@router.get("/{connector_id}/test", response_model=ConnectionTestOut)
async def test_connection(connector_id: str, pipeline=Depends(get_pipeline)) -> ConnectionTestOut:
    connector_id = _require_connector_id(connector_id)
    try:
        result = await pipeline.orchestrator.test_connection(connector_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ConnectorNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return ConnectionTestOut(
        connector_id=connector_id,
        ok=result["ok"],
        status=result["status"],
        message=result["message"],
        raw=result.get("raw"),
        timestamp=datetime.now(timezone.utc),
    )


@router.post("/{connector_id}/full-sync", response_model=SyncOut)
async def full_sync(connector_id: str, run_inline: bool = False, pipeline=Depends(get_pipeline)) -> SyncOut:
    return await _run_sync(pipeline, connector_id, "full", inline=run_inline)


@router.post("/{connector_id}/delta-sync", response_model=SyncOut)
async def delta_sync(connector_id: str, enqueue: bool = False, pipeline=Depends(get_pipeline)) -> SyncOut:
    return await _run_sync(pipeline, connector_id, "delta", inline=not enqueue)
