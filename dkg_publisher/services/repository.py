from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import json
from functools import lru_cache
from typing import Any
from uuid import UUID, uuid4

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from dkg_publisher.core.config import get_settings
from dkg_publisher.services.schema import SCHEMA_LOCK_KEY, SCHEMA_STATEMENTS
from dkg_publisher.services.states import (
    NON_TERMINAL_STATES,
    TERMINAL_STATES,
    JobState,
    coerce_state,
    ensure_transition_allowed,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested job does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a compare-and-set transition finds the job in another state."""

    def __init__(self, message: str, *, current_state: str | None = None) -> None:
        super().__init__(message)
        self.current_state = current_state


class DuplicateActiveSourceIdError(RepositoryError):
    """Raised when a live job already exists for the submitted sourceId."""

    def __init__(self, existing_job: dict[str, Any]) -> None:
        super().__init__(f"job {existing_job['id']} is already tracking source_id={existing_job['source_id']}")
        self.existing_job = existing_job


_UNAVAILABLE_ERRORS = (OSError, pg_exc.PostgresConnectionError, pg_exc.InterfaceError)

_JOB_COLUMNS = """
  id::text as id,
  source,
  source_id,
  payload,
  state,
  priority,
  attempts,
  max_attempts,
  last_error,
  result,
  next_attempt_at,
  claimed_by,
  claim_token::text as claim_token,
  lease_expires_at,
  completed_at,
  created_at,
  updated_at
"""

# Columns a transition may write, with their SQL cast.
_TRANSITION_COLUMNS: dict[str, str] = {
    "attempts": "int",
    "last_error": "jsonb",
    "result": "jsonb",
    "next_attempt_at": "timestamptz",
    "claimed_by": "text",
    "claim_token": "uuid",
    "lease_expires_at": "timestamptz",
    "completed_at": "timestamptz",
}

# Events that carry the error code of a failed publish attempt.
_FAILURE_EVENT_TYPES = ("retry_scheduled", "failed")


class PostgresJobRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        dedup_window_seconds: int,
        dedup_include_terminal: bool,
        auto_create_schema: bool = True,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.dedup_window_seconds = dedup_window_seconds if dedup_window_seconds > 0 else None
        self.dedup_include_terminal = dedup_include_terminal
        self.auto_create_schema = auto_create_schema
        self._pool: asyncpg.Pool | None = None
        self._pool_lock: asyncio.Lock | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._pool_lock = None

    async def ping(self) -> None:
        async with self._connection() as conn:
            await conn.fetchval("select 1")

    async def create_job(
        self,
        *,
        source: str | None,
        source_id: str | None,
        payload: dict[str, Any],
        priority: int,
        max_attempts: int,
        actor: str | None = None,
    ) -> dict[str, Any]:
        job_id = str(uuid4())

        async with self._connection() as conn:
            async with conn.transaction():
                if source_id:
                    existing = await self._lock_source_id_and_find_duplicate(conn, source_id)
                    if existing:
                        raise DuplicateActiveSourceIdError(existing)

                row = await conn.fetchrow(
                    f"""
                    insert into publish_jobs (
                      id,
                      source,
                      source_id,
                      payload,
                      state,
                      priority,
                      attempts,
                      max_attempts
                    )
                    values ($1::uuid, $2, $3, $4::jsonb, 'queued', $5, 0, $6)
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                    source,
                    source_id,
                    json.dumps(payload),
                    priority,
                    max_attempts,
                )
                if not row:
                    raise RepositoryConflictError("failed to create job")

                await self._record_event(
                    conn,
                    job_id=job_id,
                    event_type="created",
                    from_state=None,
                    to_state=JobState.QUEUED.value,
                    actor=actor,
                    payload={"source": source, "priority": priority, "max_attempts": max_attempts},
                )
                return self._job_row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        normalized_id = self._normalize_job_id(job_id)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                select {_JOB_COLUMNS}
                from publish_jobs
                where id = $1::uuid
                """,
                normalized_id,
            )
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def transition_job(
        self,
        job_id: str,
        *,
        from_state: JobState | str,
        to_state: JobState | str,
        fields: dict[str, Any] | None = None,
        event_type: str | None = None,
        actor: str | None = None,
        event_payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Compare-and-set ``from_state`` -> ``to_state`` and record the event.

        Moving a terminal job back into the live states re-checks its sourceId
        under the same lock ``create_job`` takes, and raises
        ``DuplicateActiveSourceIdError`` if another live job now owns it.
        """
        source_state = coerce_state(from_state)
        target_state = coerce_state(to_state)
        ensure_transition_allowed(source_state, target_state)
        normalized_id = self._normalize_job_id(job_id)
        revives = source_state in TERMINAL_STATES and target_state not in TERMINAL_STATES

        params: list[Any] = [normalized_id, source_state.value, target_state.value]

        def bind(value: Any, cast: str) -> str:
            params.append(value)
            return f"${len(params)}::{cast}"

        assignments = ["state = $3", "updated_at = now()"]
        for column, value in (fields or {}).items():
            cast = _TRANSITION_COLUMNS.get(column)
            if cast is None:
                raise ValueError(f"unsupported job field: {column}")
            if cast == "jsonb" and value is not None:
                value = json.dumps(value)
            assignments.append(f"{column} = {bind(value, cast)}")

        async with self._connection() as conn:
            async with conn.transaction():
                if revives:
                    source_id = await conn.fetchval(
                        "select source_id from publish_jobs where id = $1::uuid",
                        normalized_id,
                    )
                    if source_id:
                        existing = await self._lock_source_id_and_find_duplicate(
                            conn,
                            source_id,
                            exclude_job_id=normalized_id,
                        )
                        if existing:
                            raise DuplicateActiveSourceIdError(existing)

                row = await conn.fetchrow(
                    f"""
                    update publish_jobs
                    set {", ".join(assignments)}
                    where id = $1::uuid and state = $2
                    returning {_JOB_COLUMNS}
                    """,
                    *params,
                )
                if not row:
                    current_state = await conn.fetchval(
                        "select state from publish_jobs where id = $1::uuid",
                        normalized_id,
                    )
                    if current_state is None:
                        raise RepositoryNotFoundError("job not found")
                    raise RepositoryConflictError(
                        f"job is {current_state}, expected {source_state.value}",
                        current_state=current_state,
                    )

                await self._record_event(
                    conn,
                    job_id=normalized_id,
                    event_type=event_type or target_state.value,
                    from_state=source_state.value,
                    to_state=target_state.value,
                    actor=actor,
                    payload=event_payload or {},
                )
                return self._job_row_to_dict(row)

    async def list_ready_jobs(self, limit: int) -> list[dict[str, Any]]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {_JOB_COLUMNS}
                from publish_jobs
                where state = 'queued'
                   or (state = 'retry_pending' and next_attempt_at <= now())
                order by priority desc, created_at asc, seq asc
                limit $1
                """,
                max(1, limit),
            )
        return [self._job_row_to_dict(row) for row in rows]

    async def list_jobs(
        self,
        *,
        state: JobState | str | None = None,
        source_id: str | None = None,
        source: str | None = None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if state is not None:
            conditions.append(f"state = {bind(coerce_state(state).value)}")
        if source_id:
            conditions.append(f"source_id = {bind(source_id)}")
        if source:
            conditions.append(f"source = {bind(source)}")

        where_sql = " and ".join(conditions) if conditions else "true"
        limit_token = bind(limit)
        offset_token = bind(offset)

        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {_JOB_COLUMNS}
                from publish_jobs
                where {where_sql}
                order by created_at desc, seq desc
                limit {limit_token}
                offset {offset_token}
                """,
                *params,
            )
        return [self._job_row_to_dict(row) for row in rows]

    async def list_job_events(self, job_id: str, *, limit: int, offset: int) -> list[dict[str, Any]]:
        normalized_id = self._normalize_job_id(job_id)
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select
                  id,
                  job_id::text as job_id,
                  event_type,
                  from_state,
                  to_state,
                  actor,
                  payload,
                  created_at
                from publish_job_events
                where job_id = $1::uuid
                order by id asc
                limit $2
                offset $3
                """,
                normalized_id,
                limit,
                offset,
            )
        return [
            {
                "id": int(row["id"]),
                "job_id": row["job_id"],
                "event_type": row["event_type"],
                "from_state": row["from_state"],
                "to_state": row["to_state"],
                "actor": row["actor"],
                "payload": self._coerce_json_dict(row["payload"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def counts_by_state(self) -> dict[str, int]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select state, count(*)::int as total
                from publish_jobs
                group by state
                """
            )

        counts = {state.value: 0 for state in JobState}
        for row in rows:
            counts[row["state"]] = int(row["total"])
        return counts

    async def count_completed_since(self, seconds: int) -> int:
        async with self._connection() as conn:
            total = await conn.fetchval(
                """
                select count(*)::int
                from publish_jobs
                where state = 'completed'
                  and completed_at >= now() - ($1::int * interval '1 second')
                """,
                max(1, seconds),
            )
        return int(total or 0)

    async def count_failed_since(self, seconds: int) -> int:
        async with self._connection() as conn:
            total = await conn.fetchval(
                """
                select count(*)::int
                from publish_jobs
                where state = 'failed'
                  and updated_at >= now() - ($1::int * interval '1 second')
                """,
                max(1, seconds),
            )
        return int(total or 0)

    async def count_expired_leases(self) -> int:
        async with self._connection() as conn:
            total = await conn.fetchval(
                """
                select count(*)::int
                from publish_jobs
                where state = 'active'
                  and lease_expires_at is not null
                  and lease_expires_at <= now()
                """
            )
        return int(total or 0)

    async def publishing_stats(
        self,
        *,
        since_seconds: int | None = None,
        source: str | None = None,
    ) -> list[dict[str, Any]]:
        """Per-source job counts, optionally limited to jobs created in the trailing window."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select
                  source,
                  count(*)::int as total,
                  count(*) filter (where state = 'completed')::int as completed,
                  count(*) filter (where state = 'failed')::int as failed,
                  count(*) filter (where state = 'cancelled')::int as cancelled,
                  count(*) filter (where state = any($3::text[]))::int as pending,
                  avg(extract(epoch from completed_at - created_at))
                    filter (where state = 'completed') as avg_seconds_to_publish
                from publish_jobs
                where ($1::int is null or created_at >= now() - ($1::int * interval '1 second'))
                  and ($2::text is null or source = $2)
                group by source
                order by total desc, source asc nulls last
                """,
                since_seconds,
                source,
                [state.value for state in NON_TERMINAL_STATES],
            )
        return [
            {
                "source": row["source"],
                "total": int(row["total"]),
                "completed": int(row["completed"]),
                "failed": int(row["failed"]),
                "cancelled": int(row["cancelled"]),
                "pending": int(row["pending"]),
                "avg_seconds_to_publish": (
                    float(row["avg_seconds_to_publish"]) if row["avg_seconds_to_publish"] is not None else None
                ),
            }
            for row in rows
        ]

    async def error_distribution(self, *, since_seconds: int, limit: int) -> list[dict[str, Any]]:
        """Failed publish attempts grouped by error code, most frequent first."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select
                  coalesce(payload->>'code', 'unknown') as code,
                  count(*)::int as total,
                  max(created_at) as last_occurrence
                from publish_job_events
                where event_type = any($1::text[])
                  and created_at >= now() - ($2::int * interval '1 second')
                group by 1
                order by total desc, code asc
                limit $3
                """,
                list(_FAILURE_EVENT_TYPES),
                max(1, since_seconds),
                max(1, limit),
            )
        return [
            {"code": row["code"], "count": int(row["total"]), "last_occurrence": row["last_occurrence"]}
            for row in rows
        ]

    async def get_queue_control(self) -> dict[str, Any]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                select paused, updated_by, updated_at
                from publish_queue_control
                where id = 1
                """
            )
        if not row:
            return {"paused": False, "updated_by": None, "updated_at": None}
        return {"paused": bool(row["paused"]), "updated_by": row["updated_by"], "updated_at": row["updated_at"]}

    async def is_queue_paused(self) -> bool:
        return bool((await self.get_queue_control())["paused"])

    async def set_queue_paused(self, *, paused: bool, actor: str | None = None) -> dict[str, Any]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                insert into publish_queue_control (id, paused, updated_by, updated_at)
                values (1, $1, $2, now())
                on conflict (id) do update
                set paused = excluded.paused,
                    updated_by = excluded.updated_by,
                    updated_at = excluded.updated_at
                returning paused, updated_by, updated_at
                """,
                paused,
                actor,
            )
        return {"paused": bool(row["paused"]), "updated_by": row["updated_by"], "updated_at": row["updated_at"]}

    async def reconcile_active_jobs(
        self,
        *,
        owner: str | None,
        include_all: bool = False,
        limit: int,
        actor: str | None = None,
    ) -> list[str]:
        """Return abandoned ACTIVE jobs to QUEUED without touching attempts.

        A job is abandoned when its lease expired, when it was claimed by
        ``owner`` (a dispatcher that restarted under the same name), or
        unconditionally when ``include_all`` is set.
        """
        bounded_limit = max(1, min(limit, 1000))

        async with self._connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with abandoned as (
                      select
                        id,
                        claimed_by,
                        case
                          when lease_expires_at is not null and lease_expires_at <= now() then 'lease_expired'
                          else 'owner_restart'
                        end as reason
                      from publish_jobs
                      where state = 'active'
                        and (
                          $1::boolean
                          or ($2::text is not null and claimed_by = $2)
                          or (lease_expires_at is not null and lease_expires_at <= now())
                        )
                      order by lease_expires_at asc nulls first
                      limit $3
                      for update skip locked
                    )
                    update publish_jobs j
                    set
                      state = 'queued',
                      claimed_by = null,
                      claim_token = null,
                      lease_expires_at = null,
                      updated_at = now()
                    from abandoned a
                    where j.id = a.id
                    returning j.id::text as id, a.claimed_by as previous_owner, a.reason
                    """,
                    include_all,
                    owner,
                    bounded_limit,
                )

                for row in rows:
                    await self._record_event(
                        conn,
                        job_id=row["id"],
                        event_type="reconciled",
                        from_state=JobState.ACTIVE.value,
                        to_state=JobState.QUEUED.value,
                        actor=actor,
                        payload={"previous_owner": row["previous_owner"], "reason": row["reason"]},
                    )
                return [row["id"] for row in rows]

    async def purge_terminal_jobs(self, *, older_than_seconds: int, limit: int) -> int:
        bounded_limit = max(1, min(limit, 10000))
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                with doomed as (
                  select id
                  from publish_jobs
                  where state = any($1::text[])
                    and updated_at < now() - ($2::int * interval '1 second')
                  order by updated_at asc
                  limit $3
                  for update skip locked
                )
                delete from publish_jobs j
                using doomed d
                where j.id = d.id
                returning j.id::text as id
                """,
                [state.value for state in TERMINAL_STATES],
                max(0, older_than_seconds),
                bounded_limit,
            )
        return len(rows)

    async def _lock_source_id_and_find_duplicate(
        self,
        conn: asyncpg.Connection,
        source_id: str,
        *,
        exclude_job_id: str | None = None,
    ) -> dict[str, Any] | None:
        # Serializes every writer for one sourceId until the transaction ends.
        await conn.execute("select pg_advisory_xact_lock(hashtextextended($1, 0))", source_id)
        dedup_states = [state.value for state in (set(JobState) if self.dedup_include_terminal else NON_TERMINAL_STATES)]
        row = await conn.fetchrow(
            f"""
            select {_JOB_COLUMNS}
            from publish_jobs
            where source_id = $1
              and state = any($2::text[])
              and ($3::int is null or created_at > now() - ($3::int * interval '1 second'))
              and ($4::uuid is null or id <> $4::uuid)
            order by created_at desc, seq desc
            limit 1
            """,
            source_id,
            dedup_states,
            self.dedup_window_seconds,
            exclude_job_id,
        )
        return self._job_row_to_dict(row) if row else None

    async def _record_event(
        self,
        conn: asyncpg.Connection,
        *,
        job_id: str,
        event_type: str,
        from_state: str | None,
        to_state: str | None,
        actor: str | None,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into publish_job_events (
              job_id,
              event_type,
              from_state,
              to_state,
              actor,
              payload
            )
            values ($1::uuid, $2, $3, $4, $5, $6::jsonb)
            """,
            job_id,
            event_type,
            from_state,
            to_state,
            actor,
            json.dumps(payload, default=str),
        )

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection; a dropped or refused connection surfaces as unavailable."""
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("DKGP_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        if self._pool_lock is None:
            self._pool_lock = asyncio.Lock()

        async with self._pool_lock:
            if self._pool is not None:
                return self._pool

            try:
                pool = await asyncpg.create_pool(
                    dsn=self.database_url,
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=15,
                )
            except Exception as exc:  # pragma: no cover - depends on environment
                raise RepositoryUnavailableError("database unavailable") from exc

            if self.auto_create_schema:
                try:
                    await self._apply_schema(pool)
                except BaseException:
                    await pool.close()
                    raise

            self._pool = pool
            return pool

    @staticmethod
    async def _apply_schema(pool: asyncpg.Pool) -> None:
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("select pg_advisory_xact_lock($1)", SCHEMA_LOCK_KEY)
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)

    @staticmethod
    def _normalize_job_id(job_id: str) -> str:
        try:
            return str(UUID(str(job_id)))
        except ValueError as exc:
            raise RepositoryNotFoundError("job not found") from exc

    def _job_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "source": row["source"],
            "source_id": row["source_id"],
            "payload": self._coerce_json_dict(row["payload"]),
            "state": row["state"],
            "priority": int(row["priority"]),
            "attempts": int(row["attempts"]),
            "max_attempts": int(row["max_attempts"]),
            "last_error": self._coerce_optional_json_dict(row["last_error"]),
            "result": self._coerce_optional_json_dict(row["result"]),
            "next_attempt_at": row["next_attempt_at"],
            "claimed_by": row["claimed_by"],
            "claim_token": row["claim_token"],
            "lease_expires_at": row["lease_expires_at"],
            "completed_at": row["completed_at"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @classmethod
    def _coerce_optional_json_dict(cls, value: Any) -> dict[str, Any] | None:
        if value is None:
            return None
        return cls._coerce_json_dict(value)

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
def get_repository() -> PostgresJobRepository:
    settings = get_settings()
    return PostgresJobRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        dedup_window_seconds=settings.dedup_window_seconds,
        dedup_include_terminal=settings.dedup_include_terminal,
        auto_create_schema=settings.auto_create_schema,
    )
