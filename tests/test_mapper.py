from datetime import datetime, timezone

from ats_pipeline.provider.mapper import (
    extract_list,
    map_applicant,
    map_application_to_event,
    map_job,
    parse_timestamp,
    pick,
    pick_label,
)


def test_pick_returns_first_non_blank_alias() -> None:
    record = {"jobOpeningId": "  ", "job": {"id": 42}}
    assert pick(record, "jobOpeningId", "job.id") == 42


def test_pick_fails_closed_on_non_mapping_intermediate() -> None:
    record = {"applicant": "not-an-object"}
    assert pick(record, "applicant.id") is None
    assert pick(None, "anything") is None


def test_pick_label_unwraps_label_objects() -> None:
    record = {"currentStage": {"id": 3, "label": "Interview"}, "previousStage": {"name": "Screening"}}
    assert pick_label(record, "currentStage") == "Interview"
    assert pick_label(record, "previousStage") == "Screening"
    assert pick_label(record, "missing", "currentStage") == "Interview"


def test_extract_list_supports_known_envelopes() -> None:
    assert extract_list([{"id": 1}, "junk"]) == [{"id": 1}]
    assert extract_list({"applications": [{"id": 2}]}) == [{"id": 2}]
    assert extract_list({"result": [{"id": 3}]}) == [{"id": 3}]
    assert extract_list({"unexpected": [{"id": 4}]}) == []
    assert extract_list(None) == []


def test_parse_timestamp_handles_iso_epoch_and_naive_values() -> None:
    assert parse_timestamp("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    assert parse_timestamp(1714557600000) == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    assert parse_timestamp("2024-05-01T10:00:00") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(True) is None


def test_map_application_to_event_reads_aliases_and_keeps_raw() -> None:
    application = {
        "id": 901,
        "applicant": {"id": "A-1", "firstName": "Ada", "lastName": "Lovelace"},
        "job": {"id": "J-7"},
        "previousStage": {"label": "Screening"},
        "currentStage": {"label": "Interview"},
        "status": {"label": "Interview"},
        "rating": 4,
        "updatedAt": "2024-05-01T12:30:00Z",
        "changedBy": "recruiter@example.com",
    }

    event = map_application_to_event(application, "conn-1")

    assert event.provider == "bamboohr"
    assert event.provider_event_id == "901"
    assert event.event_type == "stage_change"
    assert event.candidate_external_id == "A-1"
    assert event.job_external_id == "J-7"
    assert event.stage_from == "Screening"
    assert event.stage_to == "Interview"
    assert event.actor == "recruiter@example.com"
    assert event.timestamp == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    assert event.metadata["rating"] == 4
    assert event.metadata["rawApplicationId"] == 901
    assert "timestampInferred" not in event.metadata
    assert event.raw is application


def test_map_application_to_event_infers_missing_timestamp() -> None:
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    event = map_application_to_event({"id": "x", "applicantId": "A-2"}, "conn-1", now=now)

    assert event.timestamp == now
    assert event.metadata["timestampInferred"] is True
    assert event.candidate_external_id == "A-2"
    assert event.job_external_id is None
    assert event.stage_to is None


def test_map_job_and_applicant_skip_records_without_ids() -> None:
    assert map_job({"title": "No id"}) is None
    assert map_applicant({"id": 1}) is None

    job = map_job({"id": 7, "title": {"label": "Data Engineer"}, "department": "Platform"})
    assert job is not None
    assert job["external_job_id"] == "7"
    assert job["title"] == "Data Engineer"

    applicant = map_applicant(
        {"applicant": {"id": 11, "firstName": "Grace", "email": "grace@example.com"}, "source": "LinkedIn"}
    )
    assert applicant is not None
    assert applicant["external_candidate_id"] == "11"
    assert applicant["full_name"] == "Grace"
    assert applicant["email"] == "grace@example.com"
    assert applicant["source"] == "LinkedIn"
