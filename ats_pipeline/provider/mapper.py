from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ats_pipeline.services.records import NormalizedEvent

PROVIDER_NAME = "bamboohr"
STAGE_CHANGE_EVENT = "stage_change"

LIST_KEYS = ("data", "applications", "jobs", "applicants", "items", "result")


def pick(record: Any, *paths: str) -> Any:
    """Return the first non-empty value found under any dotted alias path.

    Payload shapes vary between provider endpoints, so callers list the
    known aliases in priority order. Missing keys or non-mapping
    intermediates yield ``None`` instead of raising.
    """
    for path in paths:
        value: Any = record
        for part in path.split("."):
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(part)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def pick_text(record: Any, *paths: str) -> str | None:
    value = pick(record, *paths)
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def pick_label(record: Any, *paths: str) -> str | None:
    """Like ``pick_text`` but unwraps ``{"label": ...}`` / ``{"name": ...}`` objects."""
    for path in paths:
        value = pick(record, path)
        if isinstance(value, dict):
            value = pick(value, "label", "name")
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def extract_list(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = []
        for key in LIST_KEYS:
            if isinstance(payload.get(key), list):
                items = payload[key]
                break
    else:
        items = []
    return [item for item in items if isinstance(item, dict)]


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            # epoch milliseconds
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def job_external_id(record: dict[str, Any]) -> str | None:
    return pick_text(record, "job.id", "jobOpeningId", "jobId")


def candidate_external_id(record: dict[str, Any]) -> str | None:
    return pick_text(record, "applicant.id", "applicantId", "applicant.applicantId")


def map_application_to_event(
    application: dict[str, Any],
    connector_id: str | None,
    *,
    now: datetime | None = None,
) -> NormalizedEvent:
    timestamp = parse_timestamp(pick(application, "updatedAt", "createdAt"))
    metadata: dict[str, Any] = {
        "rating": pick(application, "rating"),
        "status": pick(application, "status"),
        "rawApplicationId": pick(application, "id"),
    }
    if timestamp is None:
        timestamp = now or datetime.now(timezone.utc)
        metadata["timestampInferred"] = True

    return NormalizedEvent(
        connector_id=connector_id,
        provider=PROVIDER_NAME,
        provider_event_id=pick_text(application, "id"),
        event_type=STAGE_CHANGE_EVENT,
        timestamp=timestamp,
        candidate_external_id=candidate_external_id(application),
        job_external_id=job_external_id(application),
        stage_from=pick_label(application, "previousStage", "stageFrom"),
        stage_to=pick_label(application, "currentStage", "stageTo"),
        actor=pick_label(application, "updatedBy", "changedBy"),
        metadata=metadata,
        raw=application,
    )


def map_job(job: dict[str, Any]) -> dict[str, Any] | None:
    external_id = pick_text(job, "id", "externalId", "jobOpeningId")
    if external_id is None:
        return None
    return {
        "external_job_id": external_id,
        "title": pick_label(job, "title", "postingTitle", "jobOpeningName"),
        "department": pick_label(job, "department"),
        "location": pick_label(job, "location"),
        "status": pick_label(job, "status"),
        "hiring_team": pick(job, "hiringTeam", "hiringLead"),
        "raw": job,
    }


def map_applicant(application: dict[str, Any]) -> dict[str, Any] | None:
    applicant = pick(application, "applicant", "applicantDetails")
    if not isinstance(applicant, dict):
        return None
    external_id = pick_text(applicant, "id", "applicantId") or pick_text(application, "applicantId")
    if external_id is None:
        return None
    full_name = " ".join(
        part for part in (pick_text(applicant, "firstName"), pick_text(applicant, "lastName")) if part
    )
    return {
        "external_candidate_id": external_id,
        "full_name": full_name or None,
        "email": pick_text(applicant, "email"),
        "phone": pick_text(applicant, "phone", "phoneNumber"),
        "source": pick_text(applicant, "source") or pick_text(application, "source"),
        "raw": applicant,
    }
