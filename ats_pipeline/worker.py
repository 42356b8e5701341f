from __future__ import annotations

import asyncio
import logging
import os
import random
import time

from opentelemetry import trace

from ats_pipeline.core.config import Settings, get_settings
from ats_pipeline.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from ats_pipeline.jobs.executor import execute_job
from ats_pipeline.services.pipeline import Pipeline, get_pipeline
from ats_pipeline.services.queue import QueueLane

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def worker_identity(settings: Settings) -> str:
    return f"{settings.worker_module_id}:{os.getpid()}"


async def process_lane(pipeline: Pipeline, lane: QueueLane, *, worker_id: str) -> int:
    """Claim one batch from ``lane`` and run it; returns the number of jobs claimed."""
    settings = pipeline.settings
    # sync jobs run for as long as the connector guard allows
    lease_seconds = settings.sync_lock_lease_seconds if lane is QueueLane.SYNC else settings.claim_lease_seconds
    jobs = await pipeline.repository.claim_queue_jobs(
        lane.value,
        worker_id=worker_id,
        limit=settings.worker_batch_size,
        lease_seconds=lease_seconds,
    )

    for job in jobs:
        with tracer.start_as_current_span("worker.process_job") as job_span:
            job_span.set_attribute("job.id", job.id)
            job_span.set_attribute("job.lane", job.lane)
            job_span.set_attribute("job.name", job.name)
            job_span.set_attribute("job.attempt", job.attempt)
            try:
                result = await execute_job(job, pipeline)
            except Exception as exc:
                status = await pipeline.repository.fail_queue_job(job.id, error=str(exc) or type(exc).__name__)
                logger.exception(
                    "job execution failed for id=%s name=%s attempt=%s/%s; now %s",
                    job.id,
                    job.name,
                    job.attempt,
                    job.max_attempts,
                    status,
                )
                continue

            await pipeline.repository.complete_queue_job(job.id)
            logger.debug("job id=%s name=%s done: %s", job.id, job.name, result)
    return len(jobs)


async def run_worker(pipeline: Pipeline | None = None, *, lanes: tuple[QueueLane, ...] = tuple(QueueLane)) -> None:
    settings = pipeline.settings if pipeline is not None else get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, service_suffix="-worker")
    pipeline = pipeline or get_pipeline()
    worker_id = worker_identity(settings)

    backoff = settings.worker_poll_interval_seconds
    last_reap_at = 0.0
    last_reconcile_at = 0.0
    logger.info("worker %s polling lanes=%s", worker_id, [lane.value for lane in lanes])

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                        requeued = await pipeline.repository.requeue_expired_queue_jobs(
                            limit=settings.lease_reaper_batch_size
                        )
                        if requeued:
                            logger.info("requeued expired leases: %s", requeued)
                        last_reap_at = now

                    if now - last_reconcile_at >= settings.reconcile_interval_seconds:
                        with tracer.start_as_current_span("worker.reconcile_all_jobs"):
                            await pipeline.aggregator.reconcile_all_jobs()
                        last_reconcile_at = now

                    claimed = 0
                    for lane in lanes:
                        claimed += await process_lane(pipeline, lane, worker_id=worker_id)
                    if not claimed:
                        await asyncio.sleep(settings.worker_poll_interval_seconds)
                        continue

                    backoff = settings.worker_poll_interval_seconds
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.worker_max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await pipeline.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
