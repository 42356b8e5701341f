from datetime import datetime

from pydantic import BaseModel, Field


class HeatmapRowOut(BaseModel):
    stage_name: str
    candidate_count: int
    avg_duration_hours: float | None = None
    total_duration_hours: float | None = None
    delay_severity: str | None = None


class StageCandidateOut(BaseModel):
    id: str
    external_candidate_id: str
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    current_stage: str | None = None
    last_event_at: datetime | None = None
    recent_stages: list[str] = Field(default_factory=list)


class StageCandidatesOut(BaseModel):
    items: list[StageCandidateOut] = Field(default_factory=list)
    total: int
    page: int
    page_size: int


class JobStatsOut(BaseModel):
    job_id: str
    connector_id: str
    total_applications: int
    pipeline_movement_last_7d: int
    avg_time_in_pipeline_hours: float | None = None


class ReconcileOut(BaseModel):
    job_id: str
    connector_id: str
    heatmap: list[HeatmapRowOut] = Field(default_factory=list)
