from __future__ import annotations

import asyncio
import copy
import os
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DKGP_OTEL_ENABLED", "false")

from dkg_publisher.core.config import get_settings  # noqa: E402
from dkg_publisher.main import app  # noqa: E402
from dkg_publisher.services.dispatcher import PublishDispatcher  # noqa: E402
from dkg_publisher.services.publish_client import PublishOutcome, PublishSuccess, get_publish_client  # noqa: E402
from dkg_publisher.services.repository import (  # noqa: E402
    DuplicateActiveSourceIdError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from dkg_publisher.services.retry import RetryPolicy  # noqa: E402
from dkg_publisher.services.sessions import ToolSessionRegistry, get_session_registry  # noqa: E402
from dkg_publisher.services.states import (  # noqa: E402
    NON_TERMINAL_STATES,
    TERMINAL_STATES,
    JobState,
    coerce_state,
    ensure_transition_allowed,
)

_WRITABLE_FIELDS = {
    "attempts",
    "last_error",
    "result",
    "next_attempt_at",
    "claimed_by",
    "claim_token",
    "lease_expires_at",
    "completed_at",
}


class FakeJobRepository:
    """In-memory stand-in for PostgresJobRepository with the same compare-and-set semantics."""

    def __init__(self, *, dedup_window_seconds: int = 86400, dedup_include_terminal: bool = False) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []
        self.available = True
        self.dedup_window_seconds = dedup_window_seconds if dedup_window_seconds > 0 else None
        self.dedup_include_terminal = dedup_include_terminal
        self._seq = 0
        self.queue_control: dict[str, Any] = {"paused": False, "updated_by": None, "updated_at": None}

    def _ensure_available(self) -> None:
        if not self.available:
            raise RepositoryUnavailableError("database unavailable")

    def _record_event(
        self,
        job_id: str,
        event_type: str,
        from_state: str | None,
        to_state: str | None,
        actor: str | None,
        payload: dict[str, Any] | None,
    ) -> None:
        self.events.append(
            {
                "id": len(self.events) + 1,
                "job_id": job_id,
                "event_type": event_type,
                "from_state": from_state,
                "to_state": to_state,
                "actor": actor,
                "payload": dict(payload or {}),
                "created_at": datetime.now(timezone.utc),
            }
        )

    def _lookup(self, job_id: str) -> dict[str, Any]:
        try:
            normalized = str(UUID(str(job_id)))
        except ValueError as exc:
            raise RepositoryNotFoundError("job not found") from exc
        job = self.jobs.get(normalized)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job

    def _find_duplicate(self, source_id: str, exclude_job_id: str | None = None) -> dict[str, Any] | None:
        now = datetime.now(timezone.utc)
        states = {state.value for state in JobState} if self.dedup_include_terminal else {
            state.value for state in NON_TERMINAL_STATES
        }
        matches = [
            job
            for job in self.jobs.values()
            if job["source_id"] == source_id
            and job["id"] != exclude_job_id
            and job["state"] in states
            and (
                self.dedup_window_seconds is None
                or job["created_at"] > now - timedelta(seconds=self.dedup_window_seconds)
            )
        ]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda job: (job["created_at"], job["seq"])))

    def events_for(self, job_id: str, event_type: str | None = None) -> list[dict[str, Any]]:
        return [
            event
            for event in self.events
            if event["job_id"] == job_id and (event_type is None or event["event_type"] == event_type)
        ]

    def force(self, job_id: str, **fields: Any) -> dict[str, Any]:
        """Overwrite stored columns directly, bypassing the lifecycle (test setup only)."""
        job = self._lookup(job_id)
        job.update(fields)
        return copy.deepcopy(job)

    async def ping(self) -> None:
        self._ensure_available()

    async def close(self) -> None:
        return None

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
        self._ensure_available()
        now = datetime.now(timezone.utc)
        if source_id:
            existing = self._find_duplicate(source_id)
            if existing is not None:
                raise DuplicateActiveSourceIdError(existing)

        self._seq += 1
        job_id = str(uuid4())
        job = {
            "id": job_id,
            "seq": self._seq,
            "source": source,
            "source_id": source_id,
            "payload": copy.deepcopy(payload),
            "state": JobState.QUEUED.value,
            "priority": priority,
            "attempts": 0,
            "max_attempts": max_attempts,
            "last_error": None,
            "result": None,
            "next_attempt_at": None,
            "claimed_by": None,
            "claim_token": None,
            "lease_expires_at": None,
            "completed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self.jobs[job_id] = job
        self._record_event(job_id, "created", None, JobState.QUEUED.value, actor, {"priority": priority})
        return copy.deepcopy(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        self._ensure_available()
        return copy.deepcopy(self._lookup(job_id))

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
        source_state = coerce_state(from_state)
        target_state = coerce_state(to_state)
        ensure_transition_allowed(source_state, target_state)
        unknown = set(fields or {}) - _WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported job field: {sorted(unknown)[0]}")
        self._ensure_available()

        # Yield so that concurrent callers interleave between read and write.
        await asyncio.sleep(0)

        job = self._lookup(job_id)
        if job["state"] != source_state.value:
            raise RepositoryConflictError(
                f"job is {job['state']}, expected {source_state.value}",
                current_state=job["state"],
            )
        if source_state in TERMINAL_STATES and target_state not in TERMINAL_STATES and job["source_id"]:
            existing = self._find_duplicate(job["source_id"], exclude_job_id=job["id"])
            if existing is not None:
                raise DuplicateActiveSourceIdError(existing)
        job.update(copy.deepcopy(fields or {}))
        job["state"] = target_state.value
        job["updated_at"] = datetime.now(timezone.utc)
        self._record_event(
            job["id"],
            event_type or target_state.value,
            source_state.value,
            target_state.value,
            actor,
            event_payload,
        )
        return copy.deepcopy(job)

    async def list_ready_jobs(self, limit: int) -> list[dict[str, Any]]:
        self._ensure_available()
        now = datetime.now(timezone.utc)
        ready = [
            job
            for job in self.jobs.values()
            if job["state"] == JobState.QUEUED.value
            or (
                job["state"] == JobState.RETRY_PENDING.value
                and job["next_attempt_at"] is not None
                and job["next_attempt_at"] <= now
            )
        ]
        ready.sort(key=lambda job: (-job["priority"], job["created_at"], job["seq"]))
        return [copy.deepcopy(job) for job in ready[: max(1, limit)]]

    async def list_jobs(
        self,
        *,
        state: JobState | str | None = None,
        source_id: str | None = None,
        source: str | None = None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        self._ensure_available()
        rows = list(self.jobs.values())
        if state is not None:
            rows = [job for job in rows if job["state"] == coerce_state(state).value]
        if source_id:
            rows = [job for job in rows if job["source_id"] == source_id]
        if source:
            rows = [job for job in rows if job["source"] == source]
        rows.sort(key=lambda job: (job["created_at"], job["seq"]), reverse=True)
        return [copy.deepcopy(job) for job in rows[offset : offset + limit]]

    async def list_job_events(self, job_id: str, *, limit: int, offset: int) -> list[dict[str, Any]]:
        self._ensure_available()
        job = self._lookup(job_id)
        return [copy.deepcopy(event) for event in self.events_for(job["id"])][offset : offset + limit]

    async def counts_by_state(self) -> dict[str, int]:
        self._ensure_available()
        counts = {state.value: 0 for state in JobState}
        for job in self.jobs.values():
            counts[job["state"]] += 1
        return counts

    async def count_completed_since(self, seconds: int) -> int:
        self._ensure_available()
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max(1, seconds))
        return sum(
            1
            for job in self.jobs.values()
            if job["state"] == JobState.COMPLETED.value and job["completed_at"] and job["completed_at"] >= cutoff
        )

    async def count_failed_since(self, seconds: int) -> int:
        self._ensure_available()
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max(1, seconds))
        return sum(
            1 for job in self.jobs.values() if job["state"] == JobState.FAILED.value and job["updated_at"] >= cutoff
        )

    async def count_expired_leases(self) -> int:
        self._ensure_available()
        now = datetime.now(timezone.utc)
        return sum(
            1
            for job in self.jobs.values()
            if job["state"] == JobState.ACTIVE.value
            and job["lease_expires_at"] is not None
            and job["lease_expires_at"] <= now
        )

    async def publishing_stats(
        self,
        *,
        since_seconds: int | None = None,
        source: str | None = None,
    ) -> list[dict[str, Any]]:
        self._ensure_available()
        now = datetime.now(timezone.utc)
        pending = {state.value for state in NON_TERMINAL_STATES}
        grouped: dict[str | None, list[dict[str, Any]]] = {}
        for job in self.jobs.values():
            if since_seconds is not None and job["created_at"] < now - timedelta(seconds=since_seconds):
                continue
            if source is not None and job["source"] != source:
                continue
            grouped.setdefault(job["source"], []).append(job)

        rows = []
        for name, jobs in grouped.items():
            durations = [
                (job["completed_at"] - job["created_at"]).total_seconds()
                for job in jobs
                if job["state"] == JobState.COMPLETED.value and job["completed_at"] is not None
            ]
            rows.append(
                {
                    "source": name,
                    "total": len(jobs),
                    "completed": sum(1 for job in jobs if job["state"] == JobState.COMPLETED.value),
                    "failed": sum(1 for job in jobs if job["state"] == JobState.FAILED.value),
                    "cancelled": sum(1 for job in jobs if job["state"] == JobState.CANCELLED.value),
                    "pending": sum(1 for job in jobs if job["state"] in pending),
                    "avg_seconds_to_publish": sum(durations) / len(durations) if durations else None,
                }
            )
        rows.sort(key=lambda row: (-row["total"], row["source"] is None, row["source"] or ""))
        return rows

    async def error_distribution(self, *, since_seconds: int, limit: int) -> list[dict[str, Any]]:
        self._ensure_available()
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max(1, since_seconds))
        buckets: dict[str, dict[str, Any]] = {}
        for event in self.events:
            if event["event_type"] not in ("retry_scheduled", "failed") or event["created_at"] < cutoff:
                continue
            code = event["payload"].get("code") or "unknown"
            bucket = buckets.setdefault(code, {"code": code, "count": 0, "last_occurrence": None})
            bucket["count"] += 1
            if bucket["last_occurrence"] is None or event["created_at"] > bucket["last_occurrence"]:
                bucket["last_occurrence"] = event["created_at"]
        ordered = sorted(buckets.values(), key=lambda bucket: (-bucket["count"], bucket["code"]))
        return ordered[: max(1, limit)]

    async def get_queue_control(self) -> dict[str, Any]:
        self._ensure_available()
        return dict(self.queue_control)

    async def is_queue_paused(self) -> bool:
        self._ensure_available()
        return bool(self.queue_control["paused"])

    async def set_queue_paused(self, *, paused: bool, actor: str | None = None) -> dict[str, Any]:
        self._ensure_available()
        self.queue_control = {"paused": paused, "updated_by": actor, "updated_at": datetime.now(timezone.utc)}
        return dict(self.queue_control)

    async def reconcile_active_jobs(
        self,
        *,
        owner: str | None,
        include_all: bool = False,
        limit: int,
        actor: str | None = None,
    ) -> list[str]:
        self._ensure_available()
        now = datetime.now(timezone.utc)
        requeued: list[str] = []
        for job in self.jobs.values():
            if len(requeued) >= max(1, limit):
                break
            if job["state"] != JobState.ACTIVE.value:
                continue
            expired = job["lease_expires_at"] is not None and job["lease_expires_at"] <= now
            if not (include_all or (owner is not None and job["claimed_by"] == owner) or expired):
                continue
            previous_owner = job["claimed_by"]
            job.update(
                state=JobState.QUEUED.value,
                claimed_by=None,
                claim_token=None,
                lease_expires_at=None,
                updated_at=now,
            )
            self._record_event(
                job["id"],
                "reconciled",
                JobState.ACTIVE.value,
                JobState.QUEUED.value,
                actor,
                {"previous_owner": previous_owner, "reason": "lease_expired" if expired else "owner_restart"},
            )
            requeued.append(job["id"])
        return requeued

    async def purge_terminal_jobs(self, *, older_than_seconds: int, limit: int) -> int:
        self._ensure_available()
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max(0, older_than_seconds))
        doomed = [
            job["id"]
            for job in sorted(self.jobs.values(), key=lambda job: job["updated_at"])
            if coerce_state(job["state"]) in TERMINAL_STATES and job["updated_at"] < cutoff
        ][: max(1, limit)]
        for job_id in doomed:
            del self.jobs[job_id]
            self.events = [event for event in self.events if event["job_id"] != job_id]
        return len(doomed)


class ScriptedPublishClient:
    """Publish client returning outcomes from a script; the last outcome repeats."""

    def __init__(
        self,
        outcomes: list[PublishOutcome] | Callable[[Any], PublishOutcome] | None = None,
        *,
        delay_seconds: float = 0.0,
        configured: bool = True,
    ) -> None:
        self._outcomes = outcomes
        self.delay_seconds = delay_seconds
        self._configured = configured
        self.calls: list[dict[str, Any]] = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def publish(self, content: Any, *, privacy: str, epochs: int) -> PublishOutcome:
        call_index = len(self.calls)
        self.calls.append({"content": content, "privacy": privacy, "epochs": epochs})
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self._outcomes is None:
            return PublishSuccess(network_id=f"did:dkg:hardhat1:31337/0xabc/{call_index + 1}", transaction_hash="0xfeed")
        if callable(self._outcomes):
            return self._outcomes(content)
        return self._outcomes[min(call_index, len(self._outcomes) - 1)]


def make_request(source_id: str = "doc-1", **overrides: Any) -> dict[str, Any]:
    request: dict[str, Any] = {
        "content": {"@context": "https://schema.org", "@type": "Article", "name": source_id},
        "metadata": {"source": "test-suite", "sourceId": source_id},
    }
    request.update(overrides)
    return request


def make_dispatcher(repository: Any, client: Any, **overrides: Any) -> PublishDispatcher:
    options: dict[str, Any] = {
        "worker_name": "test-publisher",
        "worker_count": 2,
        "publish_timeout_seconds": 1.0,
        "lease_grace_seconds": 5.0,
        "retry_policy": RetryPolicy(base_seconds=0, max_seconds=0, jitter_ratio=0.0),
        "idle_poll_seconds": 0.01,
        "max_backoff_seconds": 0.05,
        "shutdown_grace_seconds": 1.0,
        "lease_reaper_interval_seconds": 0.05,
        "retention_purge_after_hours": 0,
    }
    options.update(overrides)
    return PublishDispatcher(repository, client, **options)


async def wait_for_states(
    repository: FakeJobRepository,
    job_ids: list[str],
    states: set[str],
    *,
    timeout: float = 5.0,
) -> list[dict[str, Any]]:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        jobs = [await repository.get_job(job_id) for job_id in job_ids]
        if all(job["state"] in states for job in jobs):
            return jobs
        if loop.time() >= deadline:
            raise AssertionError(f"jobs did not reach {sorted(states)}: {[job['state'] for job in jobs]}")
        await asyncio.sleep(0.01)


@pytest.fixture
def repository() -> FakeJobRepository:
    return FakeJobRepository()


@pytest.fixture
def publish_client() -> ScriptedPublishClient:
    return ScriptedPublishClient()


@pytest.fixture
def settings_env() -> Iterator[Callable[..., None]]:
    """Set DKGP_* environment variables for the duration of a test."""
    touched: list[str] = []

    def apply(**values: str) -> None:
        for key, value in values.items():
            name = f"DKGP_{key.upper()}"
            os.environ[name] = value
            touched.append(name)
        get_settings.cache_clear()

    yield apply

    for name in touched:
        os.environ.pop(name, None)
    get_settings.cache_clear()


@pytest.fixture
def sessions() -> ToolSessionRegistry:
    return ToolSessionRegistry(ttl_seconds=3600)


@pytest.fixture
def api_client(
    repository: FakeJobRepository,
    publish_client: ScriptedPublishClient,
    sessions: ToolSessionRegistry,
) -> Iterator[TestClient]:
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_publish_client] = lambda: publish_client
    app.dependency_overrides[get_session_registry] = lambda: sessions

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
