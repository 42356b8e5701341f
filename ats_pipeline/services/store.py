from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from ats_pipeline.jobs.lease_reaper import attempts_exhausted, retry_delay_seconds, should_requeue
from ats_pipeline.services.metrics import classify_delay, fold_duration, hours_between, round_avg, round_total
from ats_pipeline.services.records import (
    STAGE_DURATION_MARKER,
    CandidateEventRecord,
    CandidateRecord,
    ConnectorRecord,
    JobRecord,
    NormalizedEvent,
    QueueJobRecord,
    StageAggregate,
    StageMetricRecord,
)
from ats_pipeline.services.repository import (
    CONNECTOR_STATUSES,
    SYNC_TYPES,
    RepositoryNotFoundError,
    RepositoryValidationError,
)


class InMemoryRepository:
    """Process-local backend with the same surface as ``PostgresRepository``.

    One ``asyncio.Lock`` serializes every mutation, which gives the same
    outcome as the row locks the SQL backend takes.
    """

    def __init__(self, delay_warning_hours: float = 72.0, delay_critical_hours: float = 168.0) -> None:
        self.delay_warning_hours = delay_warning_hours
        self.delay_critical_hours = delay_critical_hours
        self._lock = asyncio.Lock()
        self.connectors: dict[str, dict[str, Any]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.candidates: dict[str, dict[str, Any]] = {}
        self.events: dict[str, CandidateEventRecord] = {}
        self.metrics: dict[tuple[str, str, str], StageMetricRecord] = {}
        self.queue_jobs: dict[str, dict[str, Any]] = {}
        self.queue_order: deque[str] = deque()

    async def close(self) -> None:
        return None

    # connectors

    async def create_connector(
        self,
        *,
        provider: str,
        subdomain: str | None,
        api_key: str | None,
        status: str = "disconnected",
    ) -> ConnectorRecord:
        if status not in CONNECTOR_STATUSES:
            raise RepositoryValidationError(f"unsupported connector status: {status}")
        async with self._lock:
            connector_id = str(uuid4())
            self.connectors[connector_id] = {
                "record": ConnectorRecord(
                    id=connector_id,
                    provider=provider,
                    subdomain=subdomain,
                    api_key=api_key,
                    status=status,
                    last_full_sync_at=None,
                    last_delta_sync_at=None,
                ),
                "sync_lock_token": None,
                "sync_locked_until": None,
            }
            return replace(self.connectors[connector_id]["record"])

    async def get_connector(self, connector_id: str) -> ConnectorRecord:
        entry = self.connectors.get(connector_id)
        if entry is None:
            raise RepositoryNotFoundError("connector not found")
        return replace(entry["record"])

    async def update_connector_status(self, connector_id: str, status: str) -> None:
        if status not in CONNECTOR_STATUSES:
            raise RepositoryValidationError(f"unsupported connector status: {status}")
        async with self._lock:
            entry = self._connector_entry(connector_id)
            entry["record"].status = status

    async def record_sync_success(self, connector_id: str, *, sync_type: str, finished_at: datetime) -> None:
        if sync_type not in SYNC_TYPES:
            raise RepositoryValidationError(f"unsupported sync type: {sync_type}")
        async with self._lock:
            record = self._connector_entry(connector_id)["record"]
            record.status = "connected"
            if sync_type == "full":
                record.last_full_sync_at = finished_at
                record.last_delta_sync_at = None
            else:
                record.last_delta_sync_at = finished_at

    async def acquire_sync_lock(self, connector_id: str, *, token: str, lease_seconds: int) -> bool:
        async with self._lock:
            entry = self.connectors.get(connector_id)
            if entry is None:
                return False
            now = datetime.now(timezone.utc)
            locked_until = entry["sync_locked_until"]
            if entry["sync_lock_token"] is not None and locked_until is not None and locked_until > now:
                return False
            entry["sync_lock_token"] = token
            entry["sync_locked_until"] = now + timedelta(seconds=max(1, lease_seconds))
            return True

    async def release_sync_lock(self, connector_id: str, *, token: str) -> None:
        async with self._lock:
            entry = self.connectors.get(connector_id)
            if entry is not None and entry["sync_lock_token"] == token:
                entry["sync_lock_token"] = None
                entry["sync_locked_until"] = None

    # jobs and candidates

    async def upsert_job(
        self,
        connector_id: str,
        external_job_id: str,
        *,
        title: str | None = None,
        department: str | None = None,
        location: str | None = None,
        status: str | None = None,
        hiring_team: Any = None,
        raw: dict[str, Any] | None = None,
    ) -> str:
        async with self._lock:
            self._connector_entry(connector_id)
            job = self._find_by_external(self.jobs, connector_id, "external_job_id", external_job_id)
            fields = {
                "title": title,
                "department": department,
                "location": location,
                "status": status,
                "hiring_team": hiring_team,
                "raw": raw,
            }
            if job is None:
                job = {"id": str(uuid4()), "connector_id": connector_id, "external_job_id": external_job_id}
                self.jobs[job["id"]] = job
            job.update(fields)
            return job["id"]

    async def upsert_candidate(
        self,
        connector_id: str,
        external_candidate_id: str,
        *,
        full_name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
        source: str | None = None,
        raw: dict[str, Any] | None = None,
        job_id: str | None = None,
    ) -> str:
        async with self._lock:
            self._connector_entry(connector_id)
            candidate = self._find_by_external(
                self.candidates, connector_id, "external_candidate_id", external_candidate_id
            )
            if candidate is None:
                candidate = {
                    "id": str(uuid4()),
                    "connector_id": connector_id,
                    "external_candidate_id": external_candidate_id,
                    "full_name": None,
                    "email": None,
                    "phone": None,
                    "source": None,
                    "raw": None,
                    "job_id": None,
                    "current_stage": None,
                    "last_event_at": None,
                    "last_event_id": None,
                }
                self.candidates[candidate["id"]] = candidate
            incoming = {
                "full_name": full_name,
                "email": email,
                "phone": phone,
                "source": source,
                "raw": raw,
                "job_id": job_id,
            }
            for key, value in incoming.items():
                if value is not None:
                    candidate[key] = value
            return candidate["id"]

    async def find_job_id(self, connector_id: str, external_job_id: str) -> str | None:
        job = self._find_by_external(self.jobs, connector_id, "external_job_id", external_job_id)
        return job["id"] if job else None

    async def find_candidate_id(self, connector_id: str, external_candidate_id: str) -> str | None:
        candidate = self._find_by_external(
            self.candidates, connector_id, "external_candidate_id", external_candidate_id
        )
        return candidate["id"] if candidate else None

    async def get_candidate(self, candidate_id: str) -> CandidateRecord | None:
        candidate = self.candidates.get(candidate_id)
        return self._candidate_record(candidate) if candidate else None

    async def list_jobs(self) -> list[JobRecord]:
        return [
            JobRecord(id=job["id"], connector_id=job["connector_id"], external_job_id=job["external_job_id"])
            for job in self.jobs.values()
        ]

    # candidate events

    async def insert_candidate_event(
        self,
        event: NormalizedEvent,
        *,
        candidate_id: str | None,
        job_id: str | None,
        normalized: dict[str, Any],
    ) -> str | None:
        async with self._lock:
            if self._event_by_key(event.connector_id, event.provider_event_id) is not None:
                return None
            event_id = str(uuid4())
            self.events[event_id] = CandidateEventRecord(
                id=event_id,
                connector_id=str(event.connector_id),
                provider_event_id=str(event.provider_event_id),
                provider=event.provider,
                event_type=event.event_type,
                candidate_id=candidate_id,
                job_id=job_id,
                stage_from=event.stage_from,
                stage_to=event.stage_to,
                actor=event.actor,
                timestamp=event.timestamp,
                raw_payload=event.raw,
                normalized=dict(normalized),
            )
            return event_id

    async def get_candidate_event(self, event_id: str) -> CandidateEventRecord | None:
        record = self.events.get(event_id)
        return self._copy_event(record) if record else None

    async def get_candidate_event_by_provider_id(
        self,
        connector_id: str,
        provider_event_id: str,
    ) -> CandidateEventRecord | None:
        record = self._event_by_key(connector_id, provider_event_id)
        return self._copy_event(record) if record else None

    async def merge_candidate_event(
        self,
        event_id: str,
        event: NormalizedEvent,
        *,
        candidate_id: str | None,
        job_id: str | None,
    ) -> bool:
        async with self._lock:
            record = self.events.get(event_id)
            if record is None or not record.timestamp < event.timestamp:
                return False
            record.stage_to = event.stage_to if event.stage_to is not None else record.stage_to
            record.stage_from = event.stage_from if event.stage_from is not None else record.stage_from
            record.raw_payload = event.raw if event.raw is not None else record.raw_payload
            record.actor = event.actor if event.actor is not None else record.actor
            metadata = dict(record.normalized.get("metadata") or {})
            metadata.update(event.metadata or {})
            record.normalized = {**record.normalized, "metadata": metadata}
            record.candidate_id = record.candidate_id or candidate_id
            record.job_id = record.job_id or job_id
            record.timestamp = event.timestamp
            return True

    async def link_candidate_event(self, event_id: str, candidate_id: str) -> None:
        async with self._lock:
            record = self.events.get(event_id)
            if record is not None and record.candidate_id is None:
                record.candidate_id = candidate_id

    # snapshot

    async def apply_candidate_snapshot(
        self,
        candidate_id: str,
        *,
        stage: str | None,
        event_at: datetime,
        event_id: str,
        job_id: str | None,
    ) -> bool:
        async with self._lock:
            candidate = self.candidates.get(candidate_id)
            if candidate is None:
                return False
            last_event_at = candidate["last_event_at"]
            if last_event_at is not None and event_at < last_event_at:
                return False
            candidate["current_stage"] = stage
            candidate["last_event_at"] = event_at
            candidate["last_event_id"] = event_id
            if job_id is not None:
                candidate["job_id"] = job_id
            return True

    # stage durations

    async def find_previous_candidate_event(
        self,
        candidate_id: str,
        *,
        before: datetime,
        exclude_event_id: str,
    ) -> CandidateEventRecord | None:
        earlier = [
            record
            for record in self.events.values()
            if record.candidate_id == candidate_id and record.timestamp < before and record.id != exclude_event_id
        ]
        if not earlier:
            return None
        return self._copy_event(max(earlier, key=lambda record: record.timestamp))

    async def mark_stage_duration_computed(self, event_id: str) -> bool:
        async with self._lock:
            record = self.events.get(event_id)
            if record is None or record.normalized.get(STAGE_DURATION_MARKER):
                return False
            record.normalized = {**record.normalized, STAGE_DURATION_MARKER: True}
            return True

    async def apply_stage_duration(
        self,
        event_id: str,
        *,
        job_id: str,
        connector_id: str,
        stage_name: str,
        duration_hours: float,
    ) -> bool:
        async with self._lock:
            record = self.events.get(event_id)
            if record is None:
                raise RepositoryNotFoundError("candidate event not found")
            if record.normalized.get(STAGE_DURATION_MARKER):
                return False

            metric = self._metric(job_id, connector_id, stage_name)
            metric.candidate_count, metric.total_duration_hours, metric.avg_duration_hours = fold_duration(
                metric.total_duration_hours,
                metric.candidate_count,
                duration_hours,
            )
            metric.delay_severity = self._classify(metric.avg_duration_hours)
            metric.computed_at = datetime.now(timezone.utc)
            record.normalized = {**record.normalized, STAGE_DURATION_MARKER: True}
            return True

    async def list_job_events(self, job_id: str, connector_id: str) -> list[CandidateEventRecord]:
        records = [
            self._copy_event(record)
            for record in self.events.values()
            if record.job_id == job_id and record.connector_id == connector_id and record.candidate_id is not None
        ]
        records.sort(key=lambda record: (record.candidate_id, record.timestamp))
        return records

    async def replace_stage_durations(
        self,
        job_id: str,
        connector_id: str,
        aggregates: dict[str, StageAggregate],
    ) -> None:
        async with self._lock:
            now = datetime.now(timezone.utc)
            for (metric_job_id, metric_connector_id, stage_name), metric in self.metrics.items():
                if metric_job_id != job_id or metric_connector_id != connector_id or stage_name in aggregates:
                    continue
                metric.candidate_count = 0
                metric.total_duration_hours = 0.0
                metric.avg_duration_hours = None
                metric.delay_severity = None
                metric.computed_at = now
            for stage_name, aggregate in aggregates.items():
                metric = self._metric(job_id, connector_id, stage_name)
                metric.candidate_count = aggregate.count
                metric.total_duration_hours = round_total(aggregate.total_hours)
                metric.avg_duration_hours = round_avg(metric.total_duration_hours, aggregate.count)
                metric.delay_severity = self._classify(metric.avg_duration_hours)
                metric.computed_at = now

    # heatmap

    async def count_candidates_by_stage(self, job_id: str, connector_id: str) -> dict[str | None, int]:
        counts: dict[str | None, int] = {}
        for candidate in self.candidates.values():
            if candidate["job_id"] != job_id or candidate["connector_id"] != connector_id:
                continue
            counts[candidate["current_stage"]] = counts.get(candidate["current_stage"], 0) + 1
        return counts

    async def save_stage_headcounts(self, job_id: str, connector_id: str, counts: dict[str, int]) -> None:
        async with self._lock:
            for (metric_job_id, metric_connector_id, stage_name), metric in self.metrics.items():
                if metric_job_id == job_id and metric_connector_id == connector_id and stage_name not in counts:
                    metric.current_count = 0
            for stage_name, current_count in counts.items():
                metric = self._metric(job_id, connector_id, stage_name)
                metric.current_count = current_count
                if metric.computed_at is None:
                    metric.computed_at = datetime.now(timezone.utc)

    async def list_stage_metrics(self, job_id: str, connector_id: str) -> list[StageMetricRecord]:
        return [
            replace(metric)
            for (metric_job_id, metric_connector_id, _), metric in sorted(self.metrics.items())
            if metric_job_id == job_id and metric_connector_id == connector_id
        ]

    # analytics

    async def list_stage_candidates(
        self,
        job_id: str,
        connector_id: str,
        *,
        stage_name: str | None,
        search: str | None,
        last_event_before: datetime | None,
        limit: int,
        offset: int,
    ) -> tuple[int, list[CandidateRecord]]:
        needle = search.lower() if search else None
        matched: list[dict[str, Any]] = []
        for candidate in self.candidates.values():
            if candidate["job_id"] != job_id or candidate["connector_id"] != connector_id:
                continue
            if candidate["current_stage"] != stage_name:
                continue
            if needle and not any(needle in (candidate[key] or "").lower() for key in ("full_name", "email")):
                continue
            if last_event_before is not None and (
                candidate["last_event_at"] is None or candidate["last_event_at"] > last_event_before
            ):
                continue
            matched.append(candidate)

        oldest = datetime.min.replace(tzinfo=timezone.utc)
        matched.sort(key=lambda candidate: candidate["id"])
        matched.sort(key=lambda candidate: candidate["last_event_at"] or oldest, reverse=True)
        start = max(0, offset)
        page = matched[start : start + max(1, limit)]
        return len(matched), [self._candidate_record(candidate) for candidate in page]

    async def job_event_stats(self, job_id: str, connector_id: str, *, moves_since: datetime) -> dict[str, Any]:
        total_applications = sum(
            1
            for candidate in self.candidates.values()
            if candidate["job_id"] == job_id and candidate["connector_id"] == connector_id
        )
        moves = 0
        spans: dict[str, list[datetime]] = {}
        for record in self.events.values():
            if record.job_id != job_id or record.connector_id != connector_id:
                continue
            if record.event_type == "stage_change" and record.timestamp >= moves_since:
                moves += 1
            if record.candidate_id is not None:
                spans.setdefault(record.candidate_id, []).append(record.timestamp)

        avg_span_hours: float | None = None
        if spans:
            hours = [hours_between(min(stamps), max(stamps)) for stamps in spans.values()]
            avg_span_hours = sum(hours) / len(hours)
        return {"total_applications": total_applications, "moves": moves, "avg_span_hours": avg_span_hours}

    # queue

    async def enqueue_queue_job(
        self,
        *,
        lane: str,
        name: str,
        payload: dict[str, Any],
        max_attempts: int,
        backoff_base_seconds: float,
        singleton_key: str | None = None,
    ) -> QueueJobRecord | None:
        async with self._lock:
            if singleton_key is not None and any(
                job["singleton_key"] == singleton_key and job["status"] in {"queued", "claimed"}
                for job in self.queue_jobs.values()
            ):
                return None
            job_id = str(uuid4())
            self.queue_jobs[job_id] = {
                "id": job_id,
                "lane": lane,
                "name": name,
                "payload": dict(payload),
                "status": "queued",
                "attempt": 0,
                "max_attempts": max(1, max_attempts),
                "backoff_base_seconds": max(0.0, backoff_base_seconds),
                "next_run_at": datetime.now(timezone.utc),
                "locked_by": None,
                "lease_expires_at": None,
                "last_error": None,
                "singleton_key": singleton_key,
            }
            self.queue_order.append(job_id)
            return self._queue_record(self.queue_jobs[job_id])

    async def claim_queue_jobs(
        self,
        lane: str,
        *,
        worker_id: str,
        limit: int,
        lease_seconds: int,
    ) -> list[QueueJobRecord]:
        async with self._lock:
            now = datetime.now(timezone.utc)
            claimed: list[QueueJobRecord] = []
            for job_id in self.queue_order:
                if len(claimed) >= max(1, limit):
                    break
                job = self.queue_jobs[job_id]
                if job["lane"] != lane or job["status"] != "queued" or job["next_run_at"] > now:
                    continue
                job["status"] = "claimed"
                job["locked_by"] = worker_id
                job["lease_expires_at"] = now + timedelta(seconds=max(1, lease_seconds))
                job["attempt"] += 1
                claimed.append(self._queue_record(job))
            return claimed

    async def complete_queue_job(self, job_id: str) -> None:
        async with self._lock:
            if self.queue_jobs.pop(job_id, None) is not None:
                self.queue_order.remove(job_id)

    async def fail_queue_job(self, job_id: str, *, error: str) -> str:
        async with self._lock:
            job = self.queue_jobs.get(job_id)
            if job is None:
                raise RepositoryNotFoundError("queue job not found")
            job["last_error"] = error
            job["locked_by"] = None
            job["lease_expires_at"] = None
            if attempts_exhausted(job):
                job["status"] = "failed"
            else:
                job["status"] = "queued"
                delay = retry_delay_seconds(job["attempt"], job["backoff_base_seconds"])
                job["next_run_at"] = datetime.now(timezone.utc) + timedelta(seconds=delay)
            return job["status"]

    async def requeue_expired_queue_jobs(self, *, limit: int) -> int:
        async with self._lock:
            now = datetime.now(timezone.utc)
            requeued = 0
            for job_id in self.queue_order:
                if requeued >= max(1, min(limit, 1000)):
                    break
                job = self.queue_jobs[job_id]
                if not should_requeue(job, now=now):
                    continue
                job["status"] = "queued"
                job["locked_by"] = None
                job["lease_expires_at"] = None
                job["next_run_at"] = now
                requeued += 1
            return requeued

    async def list_queue_jobs(self, *, lane: str | None = None, status: str | None = None) -> list[QueueJobRecord]:
        return [
            self._queue_record(self.queue_jobs[job_id])
            for job_id in self.queue_order
            if (lane is None or self.queue_jobs[job_id]["lane"] == lane)
            and (status is None or self.queue_jobs[job_id]["status"] == status)
        ]

    # helpers

    def _connector_entry(self, connector_id: str) -> dict[str, Any]:
        entry = self.connectors.get(connector_id)
        if entry is None:
            raise RepositoryNotFoundError("connector not found")
        return entry

    @staticmethod
    def _find_by_external(
        table: dict[str, dict[str, Any]],
        connector_id: str,
        key: str,
        external_id: str,
    ) -> dict[str, Any] | None:
        for row in table.values():
            if row["connector_id"] == connector_id and row[key] == external_id:
                return row
        return None

    def _event_by_key(self, connector_id: str | None, provider_event_id: str | None) -> CandidateEventRecord | None:
        for record in self.events.values():
            if record.connector_id == connector_id and record.provider_event_id == provider_event_id:
                return record
        return None

    def _metric(self, job_id: str, connector_id: str, stage_name: str) -> StageMetricRecord:
        key = (job_id, connector_id, stage_name)
        metric = self.metrics.get(key)
        if metric is None:
            metric = StageMetricRecord(
                job_id=job_id,
                connector_id=connector_id,
                stage_name=stage_name,
                candidate_count=0,
                total_duration_hours=0.0,
                avg_duration_hours=None,
                current_count=0,
                delay_severity=None,
                computed_at=None,
            )
            self.metrics[key] = metric
        return metric

    def _classify(self, avg_hours: float | None) -> str | None:
        return classify_delay(
            avg_hours,
            warning_hours=self.delay_warning_hours,
            critical_hours=self.delay_critical_hours,
        )

    @staticmethod
    def _copy_event(record: CandidateEventRecord) -> CandidateEventRecord:
        return replace(record, normalized=dict(record.normalized))

    @staticmethod
    def _candidate_record(candidate: dict[str, Any]) -> CandidateRecord:
        return CandidateRecord(
            id=candidate["id"],
            connector_id=candidate["connector_id"],
            external_candidate_id=candidate["external_candidate_id"],
            job_id=candidate["job_id"],
            full_name=candidate["full_name"],
            email=candidate["email"],
            phone=candidate["phone"],
            current_stage=candidate["current_stage"],
            last_event_at=candidate["last_event_at"],
            last_event_id=candidate["last_event_id"],
        )

    @staticmethod
    def _queue_record(job: dict[str, Any]) -> QueueJobRecord:
        return QueueJobRecord(
            id=job["id"],
            lane=job["lane"],
            name=job["name"],
            payload=dict(job["payload"]),
            status=job["status"],
            attempt=job["attempt"],
            max_attempts=job["max_attempts"],
            backoff_base_seconds=job["backoff_base_seconds"],
        )
