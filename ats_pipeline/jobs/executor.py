from __future__ import annotations

from typing import Any

from ats_pipeline.jobs.handlers import handle_normalize_application, handle_raw_page, handle_sync_job
from ats_pipeline.services.pipeline import Pipeline
from ats_pipeline.services.queue import DELTA_SYNC_JOB, FULL_SYNC_JOB, NORMALIZE_JOB, RAW_PAGE_JOB
from ats_pipeline.services.records import QueueJobRecord


class UnknownQueueJobError(Exception):
    """Raised for a lane job name no handler is registered for."""


async def execute_job(job: QueueJobRecord, pipeline: Pipeline) -> dict[str, Any]:
    if job.name in {FULL_SYNC_JOB, DELTA_SYNC_JOB}:
        return await handle_sync_job(job, pipeline)
    if job.name == RAW_PAGE_JOB:
        return await handle_raw_page(job, pipeline)
    if job.name == NORMALIZE_JOB:
        return await handle_normalize_application(job, pipeline)

    raise UnknownQueueJobError(f"no handler for job name={job.name} lane={job.lane}")
