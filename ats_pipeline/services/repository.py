from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache, wraps
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from ats_pipeline.core.config import get_settings
from ats_pipeline.jobs.lease_reaper import retry_delay_seconds
from ats_pipeline.services.metrics import classify_delay, fold_duration, round_avg, round_total
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


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates a uniqueness or state rule."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


logger = logging.getLogger(__name__)

DATABASE_FAILURES = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def translate_database_errors(func):
    """Re-raise driver and socket failures from a repository call as ``RepositoryError``."""

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except DATABASE_FAILURES as exc:
            logger.warning("database error in %s: %s", func.__name__, exc)
            raise RepositoryError(f"database error in {func.__name__}: {exc}") from exc

    return wrapper


CONNECTOR_STATUSES = {"connected", "error", "disconnected"}
SYNC_TYPES = {"full", "delta"}


class AtsRepository(Protocol):
    """Async persistence surface shared by the Postgres and in-memory backends."""

    async def close(self) -> None: ...

    async def create_connector(
        self, *, provider: str, subdomain: str | None, api_key: str | None, status: str = "disconnected"
    ) -> ConnectorRecord: ...

    async def get_connector(self, connector_id: str) -> ConnectorRecord: ...

    async def update_connector_status(self, connector_id: str, status: str) -> None: ...

    async def record_sync_success(self, connector_id: str, *, sync_type: str, finished_at: datetime) -> None: ...

    async def acquire_sync_lock(self, connector_id: str, *, token: str, lease_seconds: int) -> bool: ...

    async def release_sync_lock(self, connector_id: str, *, token: str) -> None: ...

    async def upsert_job(self, connector_id: str, external_job_id: str, **fields: Any) -> str: ...

    async def upsert_candidate(self, connector_id: str, external_candidate_id: str, **fields: Any) -> str: ...

    async def find_job_id(self, connector_id: str, external_job_id: str) -> str | None: ...

    async def find_candidate_id(self, connector_id: str, external_candidate_id: str) -> str | None: ...

    async def get_candidate(self, candidate_id: str) -> CandidateRecord | None: ...

    async def list_jobs(self) -> list[JobRecord]: ...

    async def insert_candidate_event(
        self, event: NormalizedEvent, *, candidate_id: str | None, job_id: str | None, normalized: dict[str, Any]
    ) -> str | None: ...

    async def get_candidate_event(self, event_id: str) -> CandidateEventRecord | None: ...

    async def get_candidate_event_by_provider_id(
        self, connector_id: str, provider_event_id: str
    ) -> CandidateEventRecord | None: ...

    async def merge_candidate_event(
        self, event_id: str, event: NormalizedEvent, *, candidate_id: str | None, job_id: str | None
    ) -> bool: ...

    async def link_candidate_event(self, event_id: str, candidate_id: str) -> None: ...

    async def apply_candidate_snapshot(
        self, candidate_id: str, *, stage: str | None, event_at: datetime, event_id: str, job_id: str | None
    ) -> bool: ...

    async def find_previous_candidate_event(
        self, candidate_id: str, *, before: datetime, exclude_event_id: str
    ) -> CandidateEventRecord | None: ...

    async def mark_stage_duration_computed(self, event_id: str) -> bool: ...

    async def apply_stage_duration(
        self, event_id: str, *, job_id: str, connector_id: str, stage_name: str, duration_hours: float
    ) -> bool: ...

    async def list_job_events(self, job_id: str, connector_id: str) -> list[CandidateEventRecord]: ...

    async def replace_stage_durations(
        self, job_id: str, connector_id: str, aggregates: dict[str, StageAggregate]
    ) -> None: ...

    async def count_candidates_by_stage(self, job_id: str, connector_id: str) -> dict[str | None, int]: ...

    async def save_stage_headcounts(self, job_id: str, connector_id: str, counts: dict[str, int]) -> None: ...

    async def list_stage_metrics(self, job_id: str, connector_id: str) -> list[StageMetricRecord]: ...

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
    ) -> tuple[int, list[CandidateRecord]]: ...

    async def job_event_stats(self, job_id: str, connector_id: str, *, moves_since: datetime) -> dict[str, Any]: ...

    async def enqueue_queue_job(
        self,
        *,
        lane: str,
        name: str,
        payload: dict[str, Any],
        max_attempts: int,
        backoff_base_seconds: float,
        singleton_key: str | None = None,
    ) -> QueueJobRecord | None: ...

    async def claim_queue_jobs(
        self, lane: str, *, worker_id: str, limit: int, lease_seconds: int
    ) -> list[QueueJobRecord]: ...

    async def complete_queue_job(self, job_id: str) -> None: ...

    async def fail_queue_job(self, job_id: str, *, error: str) -> str: ...

    async def requeue_expired_queue_jobs(self, *, limit: int) -> int: ...

    async def list_queue_jobs(self, *, lane: str | None = None, status: str | None = None) -> list[QueueJobRecord]: ...


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        delay_warning_hours: float = 72.0,
        delay_critical_hours: float = 168.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.delay_warning_hours = delay_warning_hours
        self.delay_critical_hours = delay_critical_hours
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @translate_database_errors
    async def apply_schema(self, ddl: str) -> None:
        pool = await self._get_pool()
        await pool.execute(ddl)

    # connectors

    @translate_database_errors
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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into connectors (provider, subdomain, api_key, status)
            values ($1, $2, $3, $4)
            returning
              id::text as id,
              provider,
              subdomain,
              api_key,
              status,
              last_full_sync_at,
              last_delta_sync_at
            """,
            provider,
            subdomain,
            api_key,
            status,
        )
        return self._connector_from_row(row)

    @translate_database_errors
    async def get_connector(self, connector_id: str) -> ConnectorRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  id::text as id,
                  provider,
                  subdomain,
                  api_key,
                  status,
                  last_full_sync_at,
                  last_delta_sync_at
                from connectors
                where id = $1::uuid
                """,
                connector_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("connector not found") from exc
        if not row:
            raise RepositoryNotFoundError("connector not found")
        return self._connector_from_row(row)

    @translate_database_errors
    async def update_connector_status(self, connector_id: str, status: str) -> None:
        if status not in CONNECTOR_STATUSES:
            raise RepositoryValidationError(f"unsupported connector status: {status}")
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update connectors
            set status = $2, updated_at = now()
            where id = $1::uuid
            """,
            connector_id,
            status,
        )
        if result.endswith(" 0"):
            raise RepositoryNotFoundError("connector not found")

    @translate_database_errors
    async def record_sync_success(self, connector_id: str, *, sync_type: str, finished_at: datetime) -> None:
        if sync_type not in SYNC_TYPES:
            raise RepositoryValidationError(f"unsupported sync type: {sync_type}")
        pool = await self._get_pool()
        if sync_type == "full":
            query = """
                update connectors
                set
                  status = 'connected',
                  last_full_sync_at = $2,
                  last_delta_sync_at = null,
                  updated_at = now()
                where id = $1::uuid
                """
        else:
            query = """
                update connectors
                set
                  status = 'connected',
                  last_delta_sync_at = $2,
                  updated_at = now()
                where id = $1::uuid
                """
        await pool.execute(query, connector_id, finished_at)

    @translate_database_errors
    async def acquire_sync_lock(self, connector_id: str, *, token: str, lease_seconds: int) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update connectors
            set
              sync_lock_token = $2,
              sync_locked_until = now() + ($3::int * interval '1 second')
            where id = $1::uuid
              and (
                sync_lock_token is null
                or sync_locked_until is null
                or sync_locked_until <= now()
              )
            returning id::text as id
            """,
            connector_id,
            token,
            max(1, lease_seconds),
        )
        return row is not None

    @translate_database_errors
    async def release_sync_lock(self, connector_id: str, *, token: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update connectors
            set sync_lock_token = null, sync_locked_until = null
            where id = $1::uuid and sync_lock_token = $2
            """,
            connector_id,
            token,
        )

    # jobs and candidates

    @translate_database_errors
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
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            insert into ats_jobs (
              connector_id,
              external_job_id,
              title,
              department,
              location,
              status,
              hiring_team,
              raw
            )
            values ($1::uuid, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb)
            on conflict (external_job_id, connector_id) do update
            set
              title = excluded.title,
              department = excluded.department,
              location = excluded.location,
              status = excluded.status,
              hiring_team = excluded.hiring_team,
              raw = excluded.raw,
              updated_at = now()
            returning id::text
            """,
            connector_id,
            external_job_id,
            title,
            department,
            location,
            status,
            self._dump_json(hiring_team),
            self._dump_json(raw),
        )

    @translate_database_errors
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
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            insert into ats_candidates (
              connector_id,
              external_candidate_id,
              full_name,
              email,
              phone,
              source,
              raw,
              job_id
            )
            values ($1::uuid, $2, $3, $4, $5, $6, $7::jsonb, $8::uuid)
            on conflict (external_candidate_id, connector_id) do update
            set
              full_name = coalesce(excluded.full_name, ats_candidates.full_name),
              email = coalesce(excluded.email, ats_candidates.email),
              phone = coalesce(excluded.phone, ats_candidates.phone),
              source = coalesce(excluded.source, ats_candidates.source),
              raw = coalesce(excluded.raw, ats_candidates.raw),
              job_id = coalesce(excluded.job_id, ats_candidates.job_id),
              updated_at = now()
            returning id::text
            """,
            connector_id,
            external_candidate_id,
            full_name,
            email,
            phone,
            source,
            self._dump_json(raw),
            job_id,
        )

    @translate_database_errors
    async def find_job_id(self, connector_id: str, external_job_id: str) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            select id::text
            from ats_jobs
            where connector_id = $1::uuid and external_job_id = $2
            """,
            connector_id,
            external_job_id,
        )

    @translate_database_errors
    async def find_candidate_id(self, connector_id: str, external_candidate_id: str) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            select id::text
            from ats_candidates
            where connector_id = $1::uuid and external_candidate_id = $2
            """,
            connector_id,
            external_candidate_id,
        )

    @translate_database_errors
    async def get_candidate(self, candidate_id: str) -> CandidateRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {self._CANDIDATE_COLUMNS}
                from ats_candidates
                where id = $1::uuid
                """,
                candidate_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._candidate_from_row(row) if row else None

    @translate_database_errors
    async def list_jobs(self) -> list[JobRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              connector_id::text as connector_id,
              external_job_id
            from ats_jobs
            order by created_at asc
            """
        )
        return [
            JobRecord(id=row["id"], connector_id=row["connector_id"], external_job_id=row["external_job_id"])
            for row in rows
        ]

    # candidate events

    @translate_database_errors
    async def insert_candidate_event(
        self,
        event: NormalizedEvent,
        *,
        candidate_id: str | None,
        job_id: str | None,
        normalized: dict[str, Any],
    ) -> str | None:
        """Insert a new event row; returns ``None`` when the provider key already exists."""
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            insert into candidate_events (
              connector_id,
              provider_event_id,
              provider,
              event_type,
              candidate_id,
              job_id,
              stage_from,
              stage_to,
              actor,
              occurred_at,
              raw_payload,
              normalized
            )
            values ($1::uuid, $2, $3, $4, $5::uuid, $6::uuid, $7, $8, $9, $10, $11::jsonb, $12::jsonb)
            on conflict (provider_event_id, connector_id) do nothing
            returning id::text
            """,
            event.connector_id,
            event.provider_event_id,
            event.provider,
            event.event_type,
            candidate_id,
            job_id,
            event.stage_from,
            event.stage_to,
            event.actor,
            event.timestamp,
            self._dump_json(event.raw),
            json.dumps(normalized),
        )

    @translate_database_errors
    async def get_candidate_event(self, event_id: str) -> CandidateEventRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {self._EVENT_COLUMNS}
                from candidate_events
                where id = $1::uuid
                """,
                event_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._event_from_row(row) if row else None

    @translate_database_errors
    async def get_candidate_event_by_provider_id(
        self,
        connector_id: str,
        provider_event_id: str,
    ) -> CandidateEventRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {self._EVENT_COLUMNS}
            from candidate_events
            where connector_id = $1::uuid and provider_event_id = $2
            """,
            connector_id,
            provider_event_id,
        )
        return self._event_from_row(row) if row else None

    @translate_database_errors
    async def merge_candidate_event(
        self,
        event_id: str,
        event: NormalizedEvent,
        *,
        candidate_id: str | None,
        job_id: str | None,
    ) -> bool:
        """Merge a strictly newer replay into the stored row.

        The ``occurred_at < incoming`` predicate makes concurrent merges of the
        same provider event converge on the newest replay.
        """
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update candidate_events
            set
              stage_to = coalesce($2::text, stage_to),
              stage_from = coalesce($3::text, stage_from),
              raw_payload = coalesce($4::jsonb, raw_payload),
              normalized = normalized || jsonb_build_object(
                'metadata',
                coalesce(normalized -> 'metadata', '{}'::jsonb) || $5::jsonb
              ),
              candidate_id = coalesce(candidate_id, $6::uuid),
              job_id = coalesce(job_id, $7::uuid),
              actor = coalesce($8::text, actor),
              occurred_at = $9
            where id = $1::uuid and occurred_at < $9
            returning id::text as id
            """,
            event_id,
            event.stage_to,
            event.stage_from,
            self._dump_json(event.raw),
            json.dumps(event.metadata or {}),
            candidate_id,
            job_id,
            event.actor,
            event.timestamp,
        )
        return row is not None

    @translate_database_errors
    async def link_candidate_event(self, event_id: str, candidate_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update candidate_events
            set candidate_id = $2::uuid
            where id = $1::uuid and candidate_id is null
            """,
            event_id,
            candidate_id,
        )

    # snapshot

    @translate_database_errors
    async def apply_candidate_snapshot(
        self,
        candidate_id: str,
        *,
        stage: str | None,
        event_at: datetime,
        event_id: str,
        job_id: str | None,
    ) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    select last_event_at
                    from ats_candidates
                    where id = $1::uuid
                    for update
                    """,
                    candidate_id,
                )
                if not row:
                    return False
                last_event_at = row["last_event_at"]
                if last_event_at is not None and event_at < last_event_at:
                    return False

                await conn.execute(
                    """
                    update ats_candidates
                    set
                      current_stage = $2,
                      last_event_at = $3,
                      last_event_id = $4::uuid,
                      job_id = coalesce($5::uuid, job_id),
                      updated_at = now()
                    where id = $1::uuid
                    """,
                    candidate_id,
                    stage,
                    event_at,
                    event_id,
                    job_id,
                )
                return True

    # stage durations

    @translate_database_errors
    async def find_previous_candidate_event(
        self,
        candidate_id: str,
        *,
        before: datetime,
        exclude_event_id: str,
    ) -> CandidateEventRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {self._EVENT_COLUMNS}
            from candidate_events
            where candidate_id = $1::uuid
              and occurred_at < $2
              and id <> $3::uuid
            order by occurred_at desc
            limit 1
            """,
            candidate_id,
            before,
            exclude_event_id,
        )
        return self._event_from_row(row) if row else None

    @translate_database_errors
    async def mark_stage_duration_computed(self, event_id: str) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update candidate_events
            set normalized = normalized || jsonb_build_object($2::text, true)
            where id = $1::uuid
              and coalesce((normalized ->> $2::text)::boolean, false) = false
            returning id::text as id
            """,
            event_id,
            STAGE_DURATION_MARKER,
        )
        return row is not None

    @translate_database_errors
    async def apply_stage_duration(
        self,
        event_id: str,
        *,
        job_id: str,
        connector_id: str,
        stage_name: str,
        duration_hours: float,
    ) -> bool:
        """Fold one dwell-time sample into the stage stats and stamp the event.

        Returns ``False`` when the event was already counted by another run.
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    select normalized
                    from candidate_events
                    where id = $1::uuid
                    for update
                    """,
                    event_id,
                )
                if not row:
                    raise RepositoryNotFoundError("candidate event not found")
                if self._coerce_json_dict(row["normalized"]).get(STAGE_DURATION_MARKER):
                    return False

                await conn.execute(
                    """
                    insert into stage_metrics (job_id, connector_id, stage_name)
                    values ($1::uuid, $2::uuid, $3)
                    on conflict (job_id, connector_id, stage_name) do nothing
                    """,
                    job_id,
                    connector_id,
                    stage_name,
                )
                current = await conn.fetchrow(
                    """
                    select candidate_count, total_duration_hours
                    from stage_metrics
                    where job_id = $1::uuid and connector_id = $2::uuid and stage_name = $3
                    for update
                    """,
                    job_id,
                    connector_id,
                    stage_name,
                )
                count, total, avg = fold_duration(
                    current["total_duration_hours"],
                    current["candidate_count"],
                    duration_hours,
                )
                await conn.execute(
                    """
                    update stage_metrics
                    set
                      candidate_count = $4,
                      total_duration_hours = $5,
                      avg_duration_hours = $6,
                      delay_severity = $7,
                      computed_at = now()
                    where job_id = $1::uuid and connector_id = $2::uuid and stage_name = $3
                    """,
                    job_id,
                    connector_id,
                    stage_name,
                    count,
                    total,
                    avg,
                    self._classify(avg),
                )
                await conn.execute(
                    """
                    update candidate_events
                    set normalized = normalized || jsonb_build_object($2::text, true)
                    where id = $1::uuid
                    """,
                    event_id,
                    STAGE_DURATION_MARKER,
                )
                return True

    @translate_database_errors
    async def list_job_events(self, job_id: str, connector_id: str) -> list[CandidateEventRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {self._EVENT_COLUMNS}
            from candidate_events
            where job_id = $1::uuid
              and connector_id = $2::uuid
              and candidate_id is not null
            order by candidate_id asc, occurred_at asc
            """,
            job_id,
            connector_id,
        )
        return [self._event_from_row(row) for row in rows]

    @translate_database_errors
    async def replace_stage_durations(
        self,
        job_id: str,
        connector_id: str,
        aggregates: dict[str, StageAggregate],
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    update stage_metrics
                    set
                      candidate_count = 0,
                      total_duration_hours = 0,
                      avg_duration_hours = null,
                      delay_severity = null,
                      computed_at = now()
                    where job_id = $1::uuid
                      and connector_id = $2::uuid
                      and not (stage_name = any($3::text[]))
                    """,
                    job_id,
                    connector_id,
                    list(aggregates),
                )
                for stage_name, aggregate in aggregates.items():
                    total = round_total(aggregate.total_hours)
                    avg = round_avg(total, aggregate.count)
                    await conn.execute(
                        """
                        insert into stage_metrics (
                          job_id,
                          connector_id,
                          stage_name,
                          candidate_count,
                          total_duration_hours,
                          avg_duration_hours,
                          delay_severity,
                          computed_at
                        )
                        values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, now())
                        on conflict (job_id, connector_id, stage_name) do update
                        set
                          candidate_count = excluded.candidate_count,
                          total_duration_hours = excluded.total_duration_hours,
                          avg_duration_hours = excluded.avg_duration_hours,
                          delay_severity = excluded.delay_severity,
                          computed_at = excluded.computed_at
                        """,
                        job_id,
                        connector_id,
                        stage_name,
                        aggregate.count,
                        total,
                        avg,
                        self._classify(avg),
                    )

    # heatmap

    @translate_database_errors
    async def count_candidates_by_stage(self, job_id: str, connector_id: str) -> dict[str | None, int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select current_stage, count(*)::int as total
            from ats_candidates
            where job_id = $1::uuid and connector_id = $2::uuid
            group by current_stage
            """,
            job_id,
            connector_id,
        )
        return {row["current_stage"]: int(row["total"]) for row in rows}

    @translate_database_errors
    async def save_stage_headcounts(self, job_id: str, connector_id: str, counts: dict[str, int]) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    update stage_metrics
                    set current_count = 0
                    where job_id = $1::uuid
                      and connector_id = $2::uuid
                      and not (stage_name = any($3::text[]))
                    """,
                    job_id,
                    connector_id,
                    list(counts),
                )
                for stage_name, current_count in counts.items():
                    await conn.execute(
                        """
                        insert into stage_metrics (
                          job_id,
                          connector_id,
                          stage_name,
                          candidate_count,
                          total_duration_hours,
                          current_count,
                          computed_at
                        )
                        values ($1::uuid, $2::uuid, $3, 0, 0, $4, now())
                        on conflict (job_id, connector_id, stage_name) do update
                        set current_count = excluded.current_count
                        """,
                        job_id,
                        connector_id,
                        stage_name,
                        current_count,
                    )

    @translate_database_errors
    async def list_stage_metrics(self, job_id: str, connector_id: str) -> list[StageMetricRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              job_id::text as job_id,
              connector_id::text as connector_id,
              stage_name,
              candidate_count,
              total_duration_hours,
              avg_duration_hours,
              current_count,
              delay_severity,
              computed_at
            from stage_metrics
            where job_id = $1::uuid and connector_id = $2::uuid
            order by stage_name asc
            """,
            job_id,
            connector_id,
        )
        return [
            StageMetricRecord(
                job_id=row["job_id"],
                connector_id=row["connector_id"],
                stage_name=row["stage_name"],
                candidate_count=int(row["candidate_count"]),
                total_duration_hours=float(row["total_duration_hours"]),
                avg_duration_hours=self._coerce_float(row["avg_duration_hours"]),
                current_count=int(row["current_count"]),
                delay_severity=row["delay_severity"],
                computed_at=row["computed_at"],
            )
            for row in rows
        ]

    # analytics

    @translate_database_errors
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
        clauses = ["job_id = $1::uuid", "connector_id = $2::uuid"]
        params: list[Any] = [job_id, connector_id]

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if stage_name is None:
            clauses.append("current_stage is null")
        else:
            clauses.append(f"current_stage = {bind(stage_name)}")
        if search:
            pattern = bind(f"%{search}%")
            clauses.append(f"(full_name ilike {pattern} or email ilike {pattern})")
        if last_event_before is not None:
            clauses.append(f"last_event_at <= {bind(last_event_before)}")

        where_sql = " and ".join(clauses)
        pool = await self._get_pool()
        total = await pool.fetchval(f"select count(*)::int from ats_candidates where {where_sql}", *params)
        limit_ref = bind(max(1, limit))
        offset_ref = bind(max(0, offset))
        rows = await pool.fetch(
            f"""
            select {self._CANDIDATE_COLUMNS}
            from ats_candidates
            where {where_sql}
            order by last_event_at desc nulls last, id asc
            limit {limit_ref} offset {offset_ref}
            """,
            *params,
        )
        return int(total or 0), [self._candidate_from_row(row) for row in rows]

    @translate_database_errors
    async def job_event_stats(self, job_id: str, connector_id: str, *, moves_since: datetime) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              (
                select count(*)::int
                from ats_candidates
                where job_id = $1::uuid and connector_id = $2::uuid
              ) as total_applications,
              (
                select count(*)::int
                from candidate_events
                where job_id = $1::uuid
                  and connector_id = $2::uuid
                  and event_type = 'stage_change'
                  and occurred_at >= $3
              ) as moves,
              (
                select avg(extract(epoch from (max_ts - min_ts))) / 3600.0
                from (
                  select min(occurred_at) as min_ts, max(occurred_at) as max_ts
                  from candidate_events
                  where job_id = $1::uuid and connector_id = $2::uuid and candidate_id is not null
                  group by candidate_id
                ) spans
              ) as avg_span_hours
            """,
            job_id,
            connector_id,
            moves_since,
        )
        return {
            "total_applications": int(row["total_applications"] or 0),
            "moves": int(row["moves"] or 0),
            "avg_span_hours": self._coerce_float(row["avg_span_hours"]),
        }

    # queue

    @translate_database_errors
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
        """Insert a queued lane job; ``None`` when a pending job holds ``singleton_key``."""
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into queue_jobs (lane, name, payload, max_attempts, backoff_base_seconds, singleton_key)
            values ($1, $2, $3::jsonb, $4, $5, $6)
            on conflict (singleton_key)
              where singleton_key is not null and status in ('queued', 'claimed')
              do nothing
            returning {self._QUEUE_COLUMNS}
            """,
            lane,
            name,
            json.dumps(payload),
            max(1, max_attempts),
            max(0.0, backoff_base_seconds),
            singleton_key,
        )
        return self._queue_job_from_row(row) if row else None

    @translate_database_errors
    async def claim_queue_jobs(
        self,
        lane: str,
        *,
        worker_id: str,
        limit: int,
        lease_seconds: int,
    ) -> list[QueueJobRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with due as (
                      select id
                      from queue_jobs
                      where lane = $1 and status = 'queued' and next_run_at <= now()
                      order by next_run_at asc, created_at asc
                      limit $2
                      for update skip locked
                    )
                    update queue_jobs q
                    set
                      status = 'claimed',
                      locked_by = $3,
                      locked_at = now(),
                      lease_expires_at = now() + ($4::int * interval '1 second'),
                      attempt = q.attempt + 1
                    from due
                    where q.id = due.id
                    returning {self._qualified_queue_columns("q")}
                    """,
                    lane,
                    max(1, limit),
                    worker_id,
                    max(1, lease_seconds),
                )
                return [self._queue_job_from_row(row) for row in rows]

    @translate_database_errors
    async def complete_queue_job(self, job_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute("delete from queue_jobs where id = $1::uuid", job_id)

    @translate_database_errors
    async def fail_queue_job(self, job_id: str, *, error: str) -> str:
        """Schedule a retry with backoff, or park the job as ``failed``. Returns the new status."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    select attempt, max_attempts, backoff_base_seconds
                    from queue_jobs
                    where id = $1::uuid
                    for update
                    """,
                    job_id,
                )
                if not row:
                    raise RepositoryNotFoundError("queue job not found")

                attempt = int(row["attempt"])
                if attempt >= int(row["max_attempts"]):
                    status = "failed"
                    next_run_at = None
                else:
                    status = "queued"
                    delay = retry_delay_seconds(attempt, float(row["backoff_base_seconds"]))
                    next_run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)

                await conn.execute(
                    """
                    update queue_jobs
                    set
                      status = $2,
                      last_error = $3,
                      locked_by = null,
                      locked_at = null,
                      lease_expires_at = null,
                      next_run_at = coalesce($4::timestamptz, next_run_at)
                    where id = $1::uuid
                    """,
                    job_id,
                    status,
                    error,
                    next_run_at,
                )
                return status

    @translate_database_errors
    async def requeue_expired_queue_jobs(self, *, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from queue_jobs
                      where status = 'claimed'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update queue_jobs q
                    set
                      status = 'queued',
                      locked_by = null,
                      locked_at = null,
                      lease_expires_at = null,
                      next_run_at = now()
                    from expired e
                    where q.id = e.id
                    returning q.id::text as id
                    """,
                    bounded_limit,
                )
                return len(rows)

    @translate_database_errors
    async def list_queue_jobs(self, *, lane: str | None = None, status: str | None = None) -> list[QueueJobRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {self._QUEUE_COLUMNS}
            from queue_jobs
            where ($1::text is null or lane = $1)
              and ($2::text is null or status = $2)
            order by created_at asc
            """,
            lane,
            status,
        )
        return [self._queue_job_from_row(row) for row in rows]

    # helpers

    _CANDIDATE_COLUMNS = """
      id::text as id,
      connector_id::text as connector_id,
      external_candidate_id,
      job_id::text as job_id,
      full_name,
      email,
      phone,
      current_stage,
      last_event_at,
      last_event_id::text as last_event_id
    """

    _EVENT_COLUMNS = """
      id::text as id,
      connector_id::text as connector_id,
      provider_event_id,
      provider,
      event_type,
      candidate_id::text as candidate_id,
      job_id::text as job_id,
      stage_from,
      stage_to,
      actor,
      occurred_at,
      raw_payload,
      normalized
    """

    _QUEUE_COLUMNS = """
      id::text as id,
      lane,
      name,
      payload,
      status,
      attempt,
      max_attempts,
      backoff_base_seconds
    """

    @staticmethod
    def _qualified_queue_columns(alias: str) -> str:
        return f"""
          {alias}.id::text as id,
          {alias}.lane,
          {alias}.name,
          {alias}.payload,
          {alias}.status,
          {alias}.attempt,
          {alias}.max_attempts,
          {alias}.backoff_base_seconds
        """

    def _classify(self, avg_hours: float | None) -> str | None:
        return classify_delay(
            avg_hours,
            warning_hours=self.delay_warning_hours,
            critical_hours=self.delay_critical_hours,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("ATS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _connector_from_row(row: asyncpg.Record) -> ConnectorRecord:
        return ConnectorRecord(
            id=row["id"],
            provider=row["provider"],
            subdomain=row["subdomain"],
            api_key=row["api_key"],
            status=row["status"],
            last_full_sync_at=row["last_full_sync_at"],
            last_delta_sync_at=row["last_delta_sync_at"],
        )

    @staticmethod
    def _candidate_from_row(row: asyncpg.Record) -> CandidateRecord:
        return CandidateRecord(
            id=row["id"],
            connector_id=row["connector_id"],
            external_candidate_id=row["external_candidate_id"],
            job_id=row["job_id"],
            full_name=row["full_name"],
            email=row["email"],
            phone=row["phone"],
            current_stage=row["current_stage"],
            last_event_at=row["last_event_at"],
            last_event_id=row["last_event_id"],
        )

    @classmethod
    def _event_from_row(cls, row: asyncpg.Record) -> CandidateEventRecord:
        raw_payload = row["raw_payload"]
        if raw_payload is not None:
            raw_payload = cls._coerce_json_dict(raw_payload)
        return CandidateEventRecord(
            id=row["id"],
            connector_id=row["connector_id"],
            provider_event_id=row["provider_event_id"],
            provider=row["provider"],
            event_type=row["event_type"],
            candidate_id=row["candidate_id"],
            job_id=row["job_id"],
            stage_from=row["stage_from"],
            stage_to=row["stage_to"],
            actor=row["actor"],
            timestamp=row["occurred_at"],
            raw_payload=raw_payload,
            normalized=cls._coerce_json_dict(row["normalized"]),
        )

    @classmethod
    def _queue_job_from_row(cls, row: asyncpg.Record) -> QueueJobRecord:
        return QueueJobRecord(
            id=row["id"],
            lane=row["lane"],
            name=row["name"],
            payload=cls._coerce_json_dict(row["payload"]),
            status=row["status"],
            attempt=int(row["attempt"]),
            max_attempts=int(row["max_attempts"]),
            backoff_base_seconds=float(row["backoff_base_seconds"]),
        )

    @staticmethod
    def _dump_json(value: Any) -> str | None:
        if value is None:
            return None
        return json.dumps(value, default=str)

    @staticmethod
    def _coerce_float(value: Any) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> AtsRepository:
    settings = get_settings()
    if settings.repository_backend == "memory":
        from ats_pipeline.services.store import InMemoryRepository

        return InMemoryRepository(
            delay_warning_hours=settings.delay_warning_hours,
            delay_critical_hours=settings.delay_critical_hours,
        )
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        delay_warning_hours=settings.delay_warning_hours,
        delay_critical_hours=settings.delay_critical_hours,
    )
