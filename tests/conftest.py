from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from ats_pipeline.core.config import Settings
from ats_pipeline.services.pipeline import Pipeline, build_pipeline
from ats_pipeline.services.store import InMemoryRepository

BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


async def no_sleep(_: float) -> None:
    return None


class FakeBambooHR:
    """Routes the handful of BambooHR endpoints the pipeline calls."""

    def __init__(self, page_size: int) -> None:
        self.page_size = page_size
        self.jobs: list[dict[str, Any]] = [{"id": "J-1", "title": "Data Engineer"}]
        self.applications: list[dict[str, Any]] = []
        self.forced_status: dict[str, int] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        for suffix, status_code in self.forced_status.items():
            if path.endswith(suffix):
                return httpx.Response(status_code, json={"error": "forced"})

        if path.endswith("/applicant_tracking/jobs"):
            return httpx.Response(200, json=self.jobs)
        if path.endswith("/applicant_tracking/applications"):
            page = int(request.url.params.get("page", "1"))
            start = (page - 1) * self.page_size
            return httpx.Response(200, json={"applications": self.applications[start : start + self.page_size]})
        if path.endswith("/employees"):
            return httpx.Response(200, json={"employees": []})
        return httpx.Response(404, json={"error": f"no route for {path}"})


def build_application(
    application_id: str,
    *,
    applicant_id: str = "A-1",
    job_id: str | None = "J-1",
    stage_from: str | None = None,
    stage_to: str | None = None,
    hours: float = 0.0,
    first_name: str = "Ada",
) -> dict[str, Any]:
    application: dict[str, Any] = {
        "id": application_id,
        "applicant": {"id": applicant_id, "firstName": first_name, "email": f"{first_name.lower()}@example.com"},
        "updatedAt": (BASE_TIME + timedelta(hours=hours)).isoformat(),
    }
    if job_id is not None:
        application["job"] = {"id": job_id}
    if stage_from is not None:
        application["previousStage"] = {"label": stage_from}
    if stage_to is not None:
        application["currentStage"] = {"label": stage_to}
    return application


@pytest.fixture
def settings() -> Settings:
    return Settings(
        repository_backend="memory",
        otel_enabled=False,
        provider_page_size=2,
        queue_backoff_base_seconds=0.0,
    )


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def bamboo(settings: Settings) -> FakeBambooHR:
    return FakeBambooHR(page_size=settings.provider_page_size)


@pytest.fixture
def make_application() -> Callable[..., dict[str, Any]]:
    return build_application


@pytest.fixture
def pipeline(settings: Settings, repository: InMemoryRepository, bamboo: FakeBambooHR) -> Pipeline:
    return build_pipeline(
        settings,
        repository=repository,
        transport=httpx.MockTransport(bamboo.handler),
        sleep=no_sleep,
    )
