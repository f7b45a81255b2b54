from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Protocol
from uuid import uuid4

from dkg_publisher.services.repository import RepositoryConflictError, RepositoryNotFoundError
from dkg_publisher.services.states import JobState

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    async def is_queue_paused(self) -> bool: ...

    async def list_ready_jobs(self, limit: int) -> list[dict[str, Any]]: ...

    async def transition_job(self, job_id: str, **kwargs: Any) -> dict[str, Any]: ...


class PriorityJobQueue:
    """Hands out ready jobs highest priority first, oldest first within a priority.

    Claims are compare-and-set transitions on the job row, so any number of
    workers (in this process or another) can call ``next`` concurrently and
    each job is handed to exactly one of them. While an operator has paused
    the queue nothing is handed out.
    """

    def __init__(self, repository: JobStore, *, candidate_batch_size: int = 20) -> None:
        self.repository = repository
        self.candidate_batch_size = candidate_batch_size
        self._wakeup: asyncio.Event | None = None

    async def next(self, owner: str, *, lease_seconds: float) -> dict[str, Any] | None:
        if await self.repository.is_queue_paused():
            return None
        candidates = await self.repository.list_ready_jobs(self.candidate_batch_size)
        for candidate in candidates:
            lease_expires_at = datetime.now(timezone.utc) + timedelta(seconds=lease_seconds)
            try:
                return await self.repository.transition_job(
                    candidate["id"],
                    from_state=candidate["state"],
                    to_state=JobState.ACTIVE,
                    fields={
                        "claimed_by": owner,
                        "claim_token": str(uuid4()),
                        "lease_expires_at": lease_expires_at,
                    },
                    event_type="claimed",
                    actor=owner,
                    event_payload={"attempt": int(candidate["attempts"]) + 1},
                )
            except (RepositoryConflictError, RepositoryNotFoundError):
                logger.debug("claim lost job_id=%s owner=%s", candidate["id"], owner)
                continue
        return None

    def notify(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    async def wait(self, timeout: float) -> None:
        """Sleep until ``notify`` is called or ``timeout`` elapses."""
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return
        finally:
            self._wakeup.clear()
