from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

ConnectorStatus = Literal["connected", "error", "disconnected"]
SyncType = Literal["full", "delta"]

STAGE_DURATION_MARKER = "stageDurationComputed"
UNKNOWN_STAGE = "Unknown"


@dataclass(slots=True)
class NormalizedEvent:
    """Provider-agnostic stage-change fact, before persistence."""

    connector_id: str | None
    provider: str
    provider_event_id: str | None
    event_type: str
    timestamp: datetime
    candidate_external_id: str | None = None
    job_external_id: str | None = None
    stage_from: str | None = None
    stage_to: str | None = None
    actor: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] | None = None


@dataclass(slots=True)
class ConnectorRecord:
    id: str
    provider: str
    subdomain: str | None
    api_key: str | None
    status: str
    last_full_sync_at: datetime | None
    last_delta_sync_at: datetime | None


@dataclass(slots=True)
class JobRecord:
    id: str
    connector_id: str
    external_job_id: str


@dataclass(slots=True)
class CandidateRecord:
    id: str
    connector_id: str
    external_candidate_id: str
    job_id: str | None
    full_name: str | None
    email: str | None
    phone: str | None
    current_stage: str | None
    last_event_at: datetime | None
    last_event_id: str | None


@dataclass(slots=True)
class CandidateEventRecord:
    id: str
    connector_id: str
    provider_event_id: str
    provider: str
    event_type: str
    candidate_id: str | None
    job_id: str | None
    stage_from: str | None
    stage_to: str | None
    actor: str | None
    timestamp: datetime
    raw_payload: dict[str, Any] | None
    normalized: dict[str, Any]

    @property
    def duration_computed(self) -> bool:
        return bool(self.normalized.get(STAGE_DURATION_MARKER))

    @property
    def stage_left(self) -> str | None:
        return self.stage_to or self.stage_from


@dataclass(slots=True)
class StageMetricRecord:
    job_id: str
    connector_id: str
    stage_name: str
    candidate_count: int
    total_duration_hours: float
    avg_duration_hours: float | None
    current_count: int
    delay_severity: str | None
    computed_at: datetime | None


@dataclass(slots=True)
class StageAggregate:
    count: int
    total_hours: float

    @property
    def avg_hours(self) -> float | None:
        if self.count <= 0:
            return None
        return self.total_hours / self.count


@dataclass(slots=True)
class QueueJobRecord:
    id: str
    lane: str
    name: str
    payload: dict[str, Any]
    status: str
    attempt: int
    max_attempts: int
    backoff_base_seconds: float
