from __future__ import annotations

import logging
from typing import Any

from dkg_publisher.services.repository import DuplicateActiveSourceIdError, RepositoryConflictError
from dkg_publisher.services.states import IllegalTransitionError, JobState, coerce_state

logger = logging.getLogger(__name__)

_CANCELLABLE_STATES = frozenset({JobState.QUEUED, JobState.RETRY_PENDING})


class SourceIdInUseError(Exception):
    """Raised when a failed job cannot be requeued because a newer live job owns its sourceId."""

    def __init__(self, job_id: str, existing_job: dict[str, Any]) -> None:
        super().__init__(
            f"job {job_id} cannot be requeued: job {existing_job['id']} is live for "
            f"source_id={existing_job['source_id']}"
        )
        self.job_id = job_id
        self.existing_job = existing_job


class QueueAdminService:
    """Operator actions on jobs. Every action is a compare-and-set transition with an audit event."""

    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def requeue(self, job_id: str, *, actor: str, reason: str | None = None) -> dict[str, Any]:
        job = await self.repository.get_job(job_id)
        state = coerce_state(job["state"])
        if state is not JobState.FAILED:
            raise IllegalTransitionError(state, JobState.QUEUED)

        try:
            requeued = await self.repository.transition_job(
                job_id,
                from_state=JobState.FAILED,
                to_state=JobState.QUEUED,
                fields={"attempts": 0, "last_error": None, "next_attempt_at": None},
                event_type="requeued",
                actor=actor,
                event_payload={"reason": reason, "previous_error": job.get("last_error"), "previous_attempts": job["attempts"]},
            )
        except RepositoryConflictError as exc:
            raise IllegalTransitionError(exc.current_state or state, JobState.QUEUED) from exc
        except DuplicateActiveSourceIdError as exc:
            raise SourceIdInUseError(job["id"], exc.existing_job) from exc

        logger.info("job requeued job_id=%s actor=%s", job_id, actor)
        return requeued

    async def cancel(self, job_id: str, *, actor: str, reason: str | None = None) -> dict[str, Any]:
        job = await self.repository.get_job(job_id)
        state = coerce_state(job["state"])
        if state not in _CANCELLABLE_STATES:
            raise IllegalTransitionError(state, JobState.CANCELLED)

        try:
            cancelled = await self.repository.transition_job(
                job_id,
                from_state=state,
                to_state=JobState.CANCELLED,
                fields={"next_attempt_at": None},
                event_type="cancelled",
                actor=actor,
                event_payload={"reason": reason},
            )
        except RepositoryConflictError as exc:
            # Claimed by a worker between the read and the write.
            raise IllegalTransitionError(exc.current_state or state, JobState.CANCELLED) from exc

        logger.info("job cancelled job_id=%s actor=%s", job_id, actor)
        return cancelled

    async def requeue_failed(self, *, actor: str, source: str | None = None, limit: int = 100) -> list[str]:
        failed = await self.repository.list_jobs(state=JobState.FAILED, source=source, limit=limit, offset=0)
        requeued: list[str] = []
        for job in failed:
            try:
                await self.requeue(job["id"], actor=actor, reason="bulk requeue")
            except (IllegalTransitionError, SourceIdInUseError) as exc:
                logger.info("bulk requeue skipped job_id=%s: %s", job["id"], exc)
                continue
            requeued.append(job["id"])
        return requeued

    async def purge_terminal(self, *, older_than_hours: int, limit: int = 500) -> int:
        purged = await self.repository.purge_terminal_jobs(older_than_seconds=older_than_hours * 3600, limit=limit)
        if purged:
            logger.info("purged terminal jobs count=%s older_than_hours=%s", purged, older_than_hours)
        return purged

    async def reap_expired(self, *, actor: str, limit: int = 100) -> list[str]:
        return await self.repository.reconcile_active_jobs(owner=None, limit=limit, actor=actor)

    async def queue_control(self) -> dict[str, Any]:
        return await self.repository.get_queue_control()

    async def pause(self, *, actor: str) -> dict[str, Any]:
        control = await self.repository.set_queue_paused(paused=True, actor=actor)
        logger.warning("queue paused actor=%s", actor)
        return control

    async def resume(self, *, actor: str) -> dict[str, Any]:
        control = await self.repository.set_queue_paused(paused=False, actor=actor)
        logger.info("queue resumed actor=%s", actor)
        return control
