from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "ats-pipeline-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    repository_backend: Literal["postgres", "memory"] = "postgres"
    provider_timeout_seconds: float = 15.0
    provider_max_attempts: int = 4
    provider_throttle_max_delay_seconds: float = 5.0
    provider_network_backoff_seconds: float = 0.8
    provider_tls_rebuild_threshold: int = 2
    provider_page_size: int = 200
    provider_max_pages: int = 1000
    queue_max_attempts: int = 3
    queue_backoff_base_seconds: float = 1.0
    worker_module_id: str = "local-worker"
    worker_poll_interval_seconds: float = 2.0
    worker_max_backoff_seconds: float = 15.0
    worker_batch_size: int = 5
    claim_lease_seconds: int = 120
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    reconcile_interval_seconds: float = 300.0
    sync_lock_lease_seconds: int = 3600
    stage_history_ttl_seconds: float = 7 * 24 * 60 * 60
    stage_history_max_entries: int = 10
    delay_warning_hours: float = 72.0
    delay_critical_hours: float = 168.0
    otel_enabled: bool = True
    otel_service_name: str = "ats-pipeline"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="ATS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
