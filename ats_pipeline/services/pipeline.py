from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import lru_cache

import httpx

from ats_pipeline.core.config import Settings, get_settings
from ats_pipeline.provider.client import ProviderClientFactory, Sleep
from ats_pipeline.provider.service import ProviderSyncService
from ats_pipeline.services.aggregator import JobAggregator
from ats_pipeline.services.analytics import AnalyticsService
from ats_pipeline.services.normalizer import EventNormalizer
from ats_pipeline.services.orchestrator import SyncOrchestrator
from ats_pipeline.services.queue import QueueDispatcher
from ats_pipeline.services.repository import AtsRepository, get_repository
from ats_pipeline.services.snapshot import CandidateSnapshotUpdater, StageHistoryCache
from ats_pipeline.services.stage_duration import StageDurationEngine


@dataclass(slots=True)
class Pipeline:
    settings: Settings
    repository: AtsRepository
    clients: ProviderClientFactory
    dispatcher: QueueDispatcher
    provider: ProviderSyncService
    normalizer: EventNormalizer
    snapshot: CandidateSnapshotUpdater
    durations: StageDurationEngine
    aggregator: JobAggregator
    analytics: AnalyticsService
    orchestrator: SyncOrchestrator

    async def close(self) -> None:
        await self.clients.close()
        await self.repository.close()


def build_pipeline(
    settings: Settings | None = None,
    *,
    repository: AtsRepository | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Sleep = asyncio.sleep,
) -> Pipeline:
    settings = settings or get_settings()
    repository = repository if repository is not None else get_repository()
    clients = ProviderClientFactory(settings, transport=transport, sleep=sleep)
    dispatcher = QueueDispatcher(
        repository,
        max_attempts=settings.queue_max_attempts,
        backoff_base_seconds=settings.queue_backoff_base_seconds,
    )
    provider = ProviderSyncService(
        repository,
        clients,
        dispatcher,
        page_size=settings.provider_page_size,
        max_pages=settings.provider_max_pages,
    )
    durations = StageDurationEngine(repository)
    snapshot = CandidateSnapshotUpdater(
        repository,
        stage_history=StageHistoryCache(
            ttl_seconds=settings.stage_history_ttl_seconds,
            max_entries=settings.stage_history_max_entries,
        ),
    )
    return Pipeline(
        settings=settings,
        repository=repository,
        clients=clients,
        dispatcher=dispatcher,
        provider=provider,
        normalizer=EventNormalizer(repository),
        snapshot=snapshot,
        durations=durations,
        aggregator=JobAggregator(repository, durations),
        analytics=AnalyticsService(repository, recent_stages=snapshot.recent_stages),
        orchestrator=SyncOrchestrator(
            repository,
            provider,
            dispatcher,
            lock_lease_seconds=settings.sync_lock_lease_seconds,
        ),
    )


@lru_cache
def get_pipeline() -> Pipeline:
    return build_pipeline(get_settings(), repository=get_repository())
