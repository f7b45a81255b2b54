from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

import pytest

from dkg_publisher.services.queue import PriorityJobQueue
from dkg_publisher.services.repository import (
    DuplicateActiveSourceIdError,
    PostgresJobRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
)
from dkg_publisher.services.states import IllegalTransitionError, JobState

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("DKGP_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require DKGP_DATABASE_URL or DATABASE_URL")
    return url


def _with_repository(
    database_url: str,
    body: Callable[[PostgresJobRepository], Awaitable[T]],
    **options: Any,
) -> T:
    async def run() -> T:
        repository = PostgresJobRepository(
            database_url,
            min_pool_size=1,
            max_pool_size=5,
            dedup_window_seconds=options.pop("dedup_window_seconds", 86400),
            dedup_include_terminal=options.pop("dedup_include_terminal", False),
        )
        try:
            pool = await repository._get_pool()
            await pool.execute("truncate table publish_job_events, publish_jobs, publish_queue_control restart identity cascade")
            return await body(repository)
        finally:
            await repository.close()

    return asyncio.run(run())


async def _create(repository: PostgresJobRepository, source_id: str, priority: int = 50) -> dict[str, Any]:
    return await repository.create_job(
        source="integration-test",
        source_id=source_id,
        payload={"content": {"name": source_id}, "publishOptions": {"privacy": "public", "epochs": 2}},
        priority=priority,
        max_attempts=3,
    )


def test_create_and_dedup_by_source_id(database_url: str) -> None:
    async def body(repository: PostgresJobRepository) -> None:
        job = await _create(repository, "doc-1")
        assert job["state"] == "queued"
        assert job["payload"]["content"] == {"name": "doc-1"}

        with pytest.raises(DuplicateActiveSourceIdError) as exc_info:
            await _create(repository, "doc-1")
        assert exc_info.value.existing_job["id"] == job["id"]

        results = await asyncio.gather(*(_create(repository, "doc-2") for _ in range(5)), return_exceptions=True)
        created = [result for result in results if isinstance(result, dict)]
        assert len(created) == 1
        assert all(isinstance(result, (dict, DuplicateActiveSourceIdError)) for result in results)

    _with_repository(database_url, body)


def test_compare_and_set_transitions(database_url: str) -> None:
    async def body(repository: PostgresJobRepository) -> None:
        job = await _create(repository, "doc-1")

        active = await repository.transition_job(
            job["id"],
            from_state=JobState.QUEUED,
            to_state=JobState.ACTIVE,
            fields={"claimed_by": "worker-a", "claim_token": "00000000-0000-0000-0000-0000000000aa"},
        )
        assert active["claimed_by"] == "worker-a"
        assert active["claim_token"] == "00000000-0000-0000-0000-0000000000aa"

        with pytest.raises(RepositoryConflictError) as exc_info:
            await repository.transition_job(job["id"], from_state=JobState.QUEUED, to_state=JobState.ACTIVE)
        assert exc_info.value.current_state == "active"

        with pytest.raises(IllegalTransitionError):
            await repository.transition_job(job["id"], from_state=JobState.ACTIVE, to_state=JobState.CANCELLED)

        with pytest.raises(RepositoryNotFoundError):
            await repository.transition_job(
                "00000000-0000-0000-0000-000000000000",
                from_state=JobState.QUEUED,
                to_state=JobState.ACTIVE,
            )

        completed = await repository.transition_job(
            job["id"],
            from_state=JobState.ACTIVE,
            to_state=JobState.COMPLETED,
            fields={
                "attempts": 1,
                "result": {"networkId": "did:dkg:x", "publishStatus": "published", "transactionHash": None},
                "completed_at": datetime.now(timezone.utc),
                "claimed_by": None,
                "claim_token": None,
            },
        )
        assert completed["result"]["networkId"] == "did:dkg:x"
        assert await repository.count_completed_since(60) == 1

        events = await repository.list_job_events(job["id"], limit=10, offset=0)
        assert [event["event_type"] for event in events] == ["created", "active", "completed"]

        # A completed job frees its sourceId for new submissions.
        assert (await _create(repository, "doc-1"))["id"] != job["id"]

    _with_repository(database_url, body)


def test_queue_orders_by_priority_and_claims_once(database_url: str) -> None:
    async def body(repository: PostgresJobRepository) -> None:
        low = await _create(repository, "low", 10)
        high = await _create(repository, "high", 90)
        mid = await _create(repository, "mid", 50)

        queue = PriorityJobQueue(repository)
        claimed = await asyncio.gather(*(queue.next(f"worker-{index}", lease_seconds=60) for index in range(5)))
        won = [job["id"] for job in claimed if job is not None]

        assert sorted(won) == sorted([low["id"], high["id"], mid["id"]])
        assert claimed.count(None) == 2

    _with_repository(database_url, body)


def test_reconcile_and_purge(database_url: str) -> None:
    async def body(repository: PostgresJobRepository) -> None:
        mine = await _create(repository, "mine")
        theirs = await _create(repository, "theirs")
        expired = await _create(repository, "expired")
        queue = PriorityJobQueue(repository)
        for job, owner, lease in ((mine, "host-a", 600), (theirs, "host-b", 600), (expired, "host-c", 0)):
            await repository.transition_job(
                job["id"],
                from_state=JobState.QUEUED,
                to_state=JobState.ACTIVE,
                fields={
                    "claimed_by": owner,
                    "lease_expires_at": datetime.now(timezone.utc) + timedelta(seconds=lease),
                },
            )

        requeued = await repository.reconcile_active_jobs(owner="host-a", limit=10)
        assert sorted(requeued) == sorted([mine["id"], expired["id"]])
        assert (await repository.get_job(theirs["id"]))["state"] == "active"
        assert (await repository.get_job(mine["id"]))["attempts"] == 0

        counts = await repository.counts_by_state()
        assert counts["queued"] == 2
        assert counts["active"] == 1

        claimed = await queue.next("host-a", lease_seconds=60)
        assert claimed is not None
        await repository.transition_job(
            claimed["id"],
            from_state=JobState.ACTIVE,
            to_state=JobState.FAILED,
            fields={"attempts": 1, "last_error": {"code": "validation_error", "message": "bad"}},
        )
        assert await repository.purge_terminal_jobs(older_than_seconds=3600, limit=10) == 0
        assert await repository.purge_terminal_jobs(older_than_seconds=0, limit=10) == 1
        with pytest.raises(RepositoryNotFoundError):
            await repository.get_job(claimed["id"])

    _with_repository(database_url, body)


def test_reviving_failed_job_respects_live_source_id(database_url: str) -> None:
    async def body(repository: PostgresJobRepository) -> None:
        job = await _create(repository, "doc-2")
        claimed = await PriorityJobQueue(repository).next("worker-a", lease_seconds=60)
        assert claimed is not None
        await repository.transition_job(
            job["id"],
            from_state=JobState.ACTIVE,
            to_state=JobState.FAILED,
            fields={"attempts": 3},
        )
        replacement = await _create(repository, "doc-2")

        with pytest.raises(DuplicateActiveSourceIdError) as exc_info:
            await repository.transition_job(job["id"], from_state=JobState.FAILED, to_state=JobState.QUEUED)
        assert exc_info.value.existing_job["id"] == replacement["id"]
        assert (await repository.get_job(job["id"]))["state"] == "failed"

    _with_repository(database_url, body)


def test_queue_control_and_reporting_queries(database_url: str) -> None:
    async def body(repository: PostgresJobRepository) -> None:
        assert await repository.is_queue_paused() is False
        control = await repository.set_queue_paused(paused=True, actor="ops")
        assert control["paused"] is True
        assert control["updated_by"] == "ops"
        assert await PriorityJobQueue(repository).next("worker-a", lease_seconds=60) is None

        await repository.set_queue_paused(paused=False, actor="ops")
        job = await _create(repository, "doc-1")
        claimed = await PriorityJobQueue(repository).next("worker-a", lease_seconds=60)
        assert claimed is not None and claimed["id"] == job["id"]
        await repository.transition_job(
            job["id"],
            from_state=JobState.ACTIVE,
            to_state=JobState.FAILED,
            fields={"attempts": 1},
            event_type="failed",
            event_payload={"code": "invalid_content", "attempt": 1},
        )

        assert await repository.count_failed_since(60) == 1
        assert await repository.count_expired_leases() == 0
        [stats] = await repository.publishing_stats()
        assert stats["source"] == "integration-test"
        assert (stats["total"], stats["failed"], stats["pending"]) == (1, 1, 0)
        [bucket] = await repository.error_distribution(since_seconds=60, limit=10)
        assert (bucket["code"], bucket["count"]) == ("invalid_content", 1)

    _with_repository(database_url, body)
