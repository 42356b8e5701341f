from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ats_pipeline.services.records import CandidateEventRecord
from ats_pipeline.services.repository import AtsRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SnapshotResult:
    updated: bool
    candidate_id: str | None
    reason: str


class StageHistoryCache:
    """Bounded, TTL-expiring list of recently entered stages per candidate.

    Advisory only: nothing reads it for correctness.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 7 * 24 * 60 * 60,
        max_entries: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: dict[str, tuple[float, deque[str]]] = {}

    def push(self, candidate_id: str, stage: str) -> None:
        now = self._clock()
        self._evict_expired(now)
        _, stages = self._entries.get(candidate_id, (now, deque(maxlen=self.max_entries)))
        stages.appendleft(stage)
        self._entries[candidate_id] = (now + self.ttl_seconds, stages)

    def get(self, candidate_id: str) -> list[str]:
        entry = self._entries.get(candidate_id)
        if entry is None:
            return []
        expires_at, stages = entry
        if expires_at <= self._clock():
            self._entries.pop(candidate_id, None)
            return []
        return list(stages)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]


def resolve_stage(event: CandidateEventRecord) -> str | None:
    if event.stage_to:
        return event.stage_to
    metadata: Any = event.normalized.get("metadata") or {}
    status = metadata.get("status") if isinstance(metadata, dict) else None
    if isinstance(status, dict):
        label = status.get("label")
        if isinstance(label, str) and label.strip():
            return label.strip()
    elif isinstance(status, str) and status.strip():
        return status.strip()
    return event.stage_from


class CandidateSnapshotUpdater:
    def __init__(self, repository: AtsRepository, *, stage_history: StageHistoryCache | None = None) -> None:
        self.repository = repository
        self.stage_history = stage_history

    async def update_from_event(self, event_id: str) -> SnapshotResult:
        event = await self.repository.get_candidate_event(event_id)
        if event is None:
            return SnapshotResult(updated=False, candidate_id=None, reason="event not found")

        candidate_id = event.candidate_id
        if candidate_id is None:
            external_id = event.normalized.get("candidateExternalId")
            if external_id:
                candidate_id = await self.repository.find_candidate_id(event.connector_id, str(external_id))
            if candidate_id is None:
                return SnapshotResult(updated=False, candidate_id=None, reason="candidate unresolved")
            await self.repository.link_candidate_event(event.id, candidate_id)

        candidate = await self.repository.get_candidate(candidate_id)
        if candidate is None:
            return SnapshotResult(updated=False, candidate_id=candidate_id, reason="candidate not found")
        if candidate.last_event_at is not None and event.timestamp < candidate.last_event_at:
            return SnapshotResult(updated=False, candidate_id=candidate_id, reason="stale")

        stage = resolve_stage(event)
        applied = await self.repository.apply_candidate_snapshot(
            candidate_id,
            stage=stage,
            event_at=event.timestamp,
            event_id=event.id,
            job_id=event.job_id,
        )
        if not applied:
            # a newer event won the row lock in between
            return SnapshotResult(updated=False, candidate_id=candidate_id, reason="stale")

        if stage:
            self._remember_stage(candidate_id, stage)
        return SnapshotResult(updated=True, candidate_id=candidate_id, reason="updated")

    def recent_stages(self, candidate_id: str) -> list[str]:
        if self.stage_history is None:
            return []
        try:
            return self.stage_history.get(candidate_id)
        except Exception:
            logger.warning("stage history lookup failed for candidate=%s", candidate_id, exc_info=True)
            return []

    def _remember_stage(self, candidate_id: str, stage: str) -> None:
        if self.stage_history is None:
            return
        try:
            self.stage_history.push(candidate_id, stage)
        except Exception:
            logger.warning("stage history update failed for candidate=%s", candidate_id, exc_info=True)
