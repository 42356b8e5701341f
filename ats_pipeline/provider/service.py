from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from ats_pipeline.provider.client import (
    ProviderClient,
    ProviderClientFactory,
    ProviderConfigurationError,
    ProviderError,
    ProviderRequestError,
    ProviderRetryExhaustedError,
)
from ats_pipeline.provider.mapper import extract_list, job_external_id, map_applicant, map_job, pick
from ats_pipeline.services.queue import QueueDispatcher
from ats_pipeline.services.repository import AtsRepository

logger = logging.getLogger(__name__)

STATUS_REASONS = {
    401: "Invalid or unauthorized API Key",
    403: "Insufficient BambooHR permissions or ATS access not enabled",
    404: "Invalid subdomain or endpoint not found",
    500: "BambooHR internal error",
    503: "BambooHR is temporarily unavailable",
}
NETWORK_REASONS = {
    "ENOTFOUND": "DNS resolution failed (wrong subdomain)",
    "ECONNRESET": "Connection reset by BambooHR",
    "ETIMEDOUT": "Connection timed out",
}
UNKNOWN_REASON = "Unknown error communicating with BambooHR"


@dataclass(slots=True)
class EventSyncResult:
    pages_enqueued: int
    total_applications: int
    pages_failed: int = 0


def connection_failure_reason(exc: Exception) -> str:
    if isinstance(exc, ProviderConfigurationError):
        return "Connector is missing required BambooHR credentials (subdomain/api_key)"
    code = getattr(exc, "code", None)
    if code in NETWORK_REASONS:
        return NETWORK_REASONS[code]
    status_code = getattr(exc, "status_code", None)
    if status_code in STATUS_REASONS:
        return STATUS_REASONS[status_code]
    return UNKNOWN_REASON


class ProviderSyncService:
    def __init__(
        self,
        repository: AtsRepository,
        clients: ProviderClientFactory,
        dispatcher: QueueDispatcher,
        *,
        page_size: int = 200,
        max_pages: int = 1000,
    ) -> None:
        self.repository = repository
        self.clients = clients
        self.dispatcher = dispatcher
        self.page_size = max(1, page_size)
        self.max_pages = max(1, max_pages)

    async def _client(self, connector_id: str) -> ProviderClient:
        connector = await self.repository.get_connector(connector_id)
        return self.clients.for_connector(connector)

    async def sync_jobs(self, connector_id: str) -> int:
        client = await self._client(connector_id)
        try:
            payload = await client.get_job_summaries()
        except ProviderError:
            logger.error("failed to fetch job summaries for connector=%s", connector_id)
            raise

        synced = 0
        for raw_job in extract_list(payload):
            fields = map_job(raw_job)
            if fields is None:
                logger.warning("skipping job without an id for connector=%s", connector_id)
                continue
            external_id = fields.pop("external_job_id")
            await self.repository.upsert_job(connector_id, external_id, **fields)
            synced += 1

        logger.info("synced %s ATS job openings for connector=%s", synced, connector_id)
        return synced

    async def sync_candidates(self, connector_id: str) -> int:
        client = await self._client(connector_id)
        seen: set[str] = set()
        job_ids: dict[str, str | None] = {}
        synced = 0

        async for _, applications in self._application_pages(client, connector_id):
            for application in applications:
                fields = map_applicant(application)
                if fields is None:
                    continue
                external_id = fields.pop("external_candidate_id")
                if external_id in seen:
                    continue
                seen.add(external_id)

                job_ref = job_external_id(application)
                if job_ref is not None and job_ref not in job_ids:
                    job_ids[job_ref] = await self.repository.find_job_id(connector_id, job_ref)
                fields["job_id"] = job_ids.get(job_ref) if job_ref is not None else None

                await self.repository.upsert_candidate(connector_id, external_id, **fields)
                synced += 1

        logger.info("synced %s unique applicants for connector=%s", synced, connector_id)
        return synced

    async def sync_candidate_events(self, connector_id: str) -> EventSyncResult:
        """Enqueue every application page on the raw-events lane.

        A failed enqueue is logged and counted; pagination carries on.
        """
        client = await self._client(connector_id)
        result = EventSyncResult(pages_enqueued=0, total_applications=0)

        async for page, applications in self._application_pages(client, connector_id):
            try:
                await self.dispatcher.add_raw_events_page(connector_id, page, applications)
            except Exception:
                result.pages_failed += 1
                logger.exception("failed to enqueue raw-events page=%s for connector=%s", page, connector_id)
                continue
            result.pages_enqueued += 1
            result.total_applications += len(applications)
            logger.info(
                "enqueued raw-events page=%s count=%s for connector=%s",
                page,
                len(applications),
                connector_id,
            )

        logger.info(
            "enqueued %s raw event pages (applications=%s, failed pages=%s) for connector=%s",
            result.pages_enqueued,
            result.total_applications,
            result.pages_failed,
            connector_id,
        )
        return result

    async def test_connection(self, connector_id: str) -> dict[str, Any]:
        connector = await self.repository.get_connector(connector_id)
        try:
            client = self.clients.for_connector(connector)
            await client.list_employees()
        except (ProviderConfigurationError, ProviderRequestError, ProviderRetryExhaustedError) as exc:
            logger.error("connection test failed for connector=%s: %s", connector_id, exc)
            await self.repository.update_connector_status(connector_id, "error")
            return {
                "ok": False,
                "status": "error",
                "message": connection_failure_reason(exc),
                "raw": str(exc),
            }

        await self.repository.update_connector_status(connector_id, "connected")
        return {
            "ok": True,
            "status": "connected",
            "message": "Successfully connected to BambooHR",
            "raw": None,
        }

    async def _application_pages(
        self,
        client: ProviderClient,
        connector_id: str,
    ) -> AsyncIterator[tuple[int, list[dict[str, Any]]]]:
        page = 1
        next_url: str | None = None
        while page <= self.max_pages:
            try:
                if next_url:
                    payload = await client.get_url(next_url)
                else:
                    payload = await client.get_applications({"page": page})
            except ProviderError:
                logger.error("failed to fetch applications page=%s for connector=%s", page, connector_id)
                raise

            applications = extract_list(payload)
            if not applications:
                logger.debug("no applications returned for page=%s connector=%s", page, connector_id)
                return
            yield page, applications

            if pick(payload, "paginationComplete", "meta.paginationComplete") is True:
                return
            next_url = _next_page_url(payload)
            if next_url is not None and not client.owns_url(next_url):
                logger.warning(
                    "ignoring next page url outside the provider host for connector=%s; stopping after page=%s",
                    connector_id,
                    page,
                )
                return
            if next_url is None and len(applications) < self.page_size:
                return
            page += 1

        logger.warning("stopped paginating applications after %s pages for connector=%s", self.max_pages, connector_id)


def _next_page_url(payload: Any) -> str | None:
    value = pick(payload, "nextPageUrl", "links.next", "meta.nextPageUrl")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
