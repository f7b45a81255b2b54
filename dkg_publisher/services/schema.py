"""Idempotent DDL for the publish job store."""

SCHEMA_LOCK_KEY = 7_304_118_452

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    create table if not exists publish_jobs (
      id uuid primary key,
      seq bigserial not null,
      source text,
      source_id text,
      payload jsonb not null,
      state text not null default 'queued',
      priority integer not null default 50,
      attempts integer not null default 0,
      max_attempts integer not null,
      last_error jsonb,
      result jsonb,
      next_attempt_at timestamptz,
      claimed_by text,
      claim_token uuid,
      lease_expires_at timestamptz,
      completed_at timestamptz,
      created_at timestamptz not null default now(),
      updated_at timestamptz not null default now(),
      constraint publish_jobs_state_check
        check (state in ('queued', 'active', 'retry_pending', 'completed', 'failed', 'cancelled')),
      constraint publish_jobs_priority_check check (priority between 0 and 100),
      constraint publish_jobs_attempts_check check (attempts >= 0 and attempts <= max_attempts),
      constraint publish_jobs_max_attempts_check check (max_attempts >= 1),
      constraint publish_jobs_result_check check ((state = 'completed') = (result is not null))
    )
    """,
    """
    create index if not exists publish_jobs_dispatch_idx
      on publish_jobs (state, priority desc, created_at asc, seq asc)
    """,
    """
    create index if not exists publish_jobs_retry_due_idx
      on publish_jobs (next_attempt_at)
      where state = 'retry_pending'
    """,
    """
    create index if not exists publish_jobs_active_source_idx
      on publish_jobs (source_id, created_at desc)
      where state in ('queued', 'active', 'retry_pending')
    """,
    """
    create index if not exists publish_jobs_source_idx
      on publish_jobs (source_id, created_at desc)
    """,
    """
    create index if not exists publish_jobs_lease_idx
      on publish_jobs (lease_expires_at)
      where state = 'active'
    """,
    """
    create index if not exists publish_jobs_completed_at_idx
      on publish_jobs (completed_at)
      where state = 'completed'
    """,
    """
    create table if not exists publish_job_events (
      id bigserial primary key,
      job_id uuid not null references publish_jobs (id) on delete cascade,
      event_type text not null,
      from_state text,
      to_state text,
      actor text,
      payload jsonb not null default '{}'::jsonb,
      created_at timestamptz not null default now()
    )
    """,
    """
    create index if not exists publish_job_events_job_idx
      on publish_job_events (job_id, id)
    """,
    """
    create index if not exists publish_job_events_type_created_idx
      on publish_job_events (event_type, created_at)
    """,
    """
    create table if not exists publish_queue_control (
      id smallint primary key default 1,
      paused boolean not null default false,
      updated_by text,
      updated_at timestamptz not null default now(),
      constraint publish_queue_control_singleton check (id = 1)
    )
    """,
    """
    insert into publish_queue_control (id) values (1)
    on conflict (id) do nothing
    """,
)
