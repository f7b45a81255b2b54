from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any
from uuid import uuid4

from opentelemetry import trace

from dkg_publisher.core.config import Settings
from dkg_publisher.services.publish_client import PublishClient, PublishOutcome, PublishSuccess, RetryableFailure
from dkg_publisher.services.queue import PriorityJobQueue
from dkg_publisher.services.repository import (
    PostgresJobRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
)
from dkg_publisher.services.retry import RetryPolicy, TransitionPlan, resolve_outcome
from dkg_publisher.services.states import READY_STATES, JobState

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class PublishDispatcher:
    """Runs a fixed pool of workers that drain the priority queue into the publish client."""

    def __init__(
        self,
        repository: PostgresJobRepository,
        client: PublishClient,
        *,
        queue: PriorityJobQueue | None = None,
        worker_name: str = "local-publisher",
        worker_count: int = 5,
        publish_timeout_seconds: float = 120.0,
        lease_grace_seconds: float = 60.0,
        retry_policy: RetryPolicy | None = None,
        idle_poll_seconds: float = 2.0,
        max_backoff_seconds: float = 15.0,
        shutdown_grace_seconds: float = 10.0,
        startup_reconcile_all: bool = False,
        lease_reaper_interval_seconds: float = 15.0,
        lease_reaper_batch_size: int = 100,
        retention_purge_after_hours: int = 0,
        retention_purge_interval_seconds: float = 3600.0,
        retention_purge_batch_size: int = 500,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.client = client
        self.queue = queue or PriorityJobQueue(repository)
        self.worker_name = worker_name
        self.worker_count = max(1, worker_count)
        self.publish_timeout_seconds = publish_timeout_seconds
        self.lease_seconds = publish_timeout_seconds + lease_grace_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.idle_poll_seconds = idle_poll_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.startup_reconcile_all = startup_reconcile_all
        self.lease_reaper_interval_seconds = lease_reaper_interval_seconds
        self.lease_reaper_batch_size = lease_reaper_batch_size
        self.retention_purge_after_hours = retention_purge_after_hours
        self.retention_purge_interval_seconds = retention_purge_interval_seconds
        self.retention_purge_batch_size = retention_purge_batch_size
        self._rng = rng or random.Random()
        self._running = False
        self._startup_reconciled = False
        self._in_flight = 0
        self._workers: list[asyncio.Task[None]] = []
        self._maintenance: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        try:
            await self._reconcile_startup()
        except Exception:
            logger.exception("startup reconciliation failed worker_name=%s; retrying in maintenance", self.worker_name)

        self._workers = [
            asyncio.create_task(self._worker_loop(index), name=f"{self.worker_name}-worker-{index}")
            for index in range(self.worker_count)
        ]
        self._maintenance = asyncio.create_task(self._maintenance_loop(), name=f"{self.worker_name}-maintenance")
        logger.info("dispatcher started worker_name=%s workers=%s", self.worker_name, self.worker_count)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.queue.notify()

        tasks = [*self._workers]
        if self._maintenance is not None:
            self._maintenance.cancel()
            tasks.append(self._maintenance)

        _, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace_seconds) if tasks else (set(), set())
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._workers = []
        self._maintenance = None
        # Jobs cancelled mid-publish stay ACTIVE and are reconciled on the next start.
        logger.info("dispatcher stopped worker_name=%s abandoned=%s", self.worker_name, len(pending))

    def notify(self) -> None:
        self.queue.notify()

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "worker_name": self.worker_name,
            "worker_count": self.worker_count,
            "in_flight": self._in_flight,
        }

    async def _reconcile_startup(self) -> None:
        requeued = await self.repository.reconcile_active_jobs(
            owner=self.worker_name,
            include_all=self.startup_reconcile_all,
            limit=1000,
            actor=self.worker_name,
        )
        self._startup_reconciled = True
        if requeued:
            logger.info("reconciled abandoned jobs worker_name=%s count=%s", self.worker_name, len(requeued))
            self.queue.notify()

    async def _worker_loop(self, index: int) -> None:
        backoff = self.idle_poll_seconds
        while self._running:
            try:
                job = await self.queue.next(self.worker_name, lease_seconds=self.lease_seconds)
                if job is None:
                    await self.queue.wait(self.idle_poll_seconds)
                    continue

                self._in_flight += 1
                try:
                    await self.process_job(job)
                finally:
                    self._in_flight -= 1
                backoff = self.idle_poll_seconds
            except Exception as exc:
                jitter = self._rng.uniform(0.0, 0.5)
                sleep_for = min(max(backoff, 0.05) * (2.0 + jitter), self.max_backoff_seconds)
                logger.exception("worker iteration failed worker=%s: %s; retry in %.1fs", index, exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for

    async def process_job(self, job: dict[str, Any]) -> dict[str, Any] | None:
        with tracer.start_as_current_span("dispatcher.process_job") as span:
            span.set_attribute("job.id", job["id"])
            span.set_attribute("job.attempt", int(job["attempts"]) + 1)

            try:
                outcome = await self._publish(job)
            except Exception:
                logger.warning(
                    "publish client raised; job stays active until reconciled job_id=%s lease_expires_at=%s",
                    job["id"],
                    job.get("lease_expires_at"),
                )
                raise
            plan = resolve_outcome(job, outcome, self.retry_policy, rng=self._rng)
            span.set_attribute("job.outcome", plan.to_state.value)

            recorded = await self._record(job, outcome, plan)
            if recorded is not None:
                logger.info(
                    "job attempt recorded job_id=%s state=%s attempts=%s",
                    recorded["id"],
                    recorded["state"],
                    recorded["attempts"],
                )
            return recorded

    async def _publish(self, job: dict[str, Any]) -> PublishOutcome:
        """Call the publish client under the publish timeout.

        Only a timeout is turned into an outcome. Any other exception
        propagates and leaves the job ACTIVE until its lease expires or the
        next startup sweep requeues it, without consuming an attempt.
        """
        payload = job["payload"]
        options = payload.get("publishOptions") or {}
        try:
            return await asyncio.wait_for(
                self.client.publish(
                    payload["content"],
                    privacy=options.get("privacy", "public"),
                    epochs=int(options.get("epochs", 2)),
                ),
                timeout=self.publish_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return RetryableFailure(
                reason=f"publish did not finish within {self.publish_timeout_seconds:g}s",
                code="timeout",
            )

    async def _record(
        self,
        job: dict[str, Any],
        outcome: PublishOutcome,
        plan: TransitionPlan,
    ) -> dict[str, Any] | None:
        try:
            return await self._apply(job["id"], JobState.ACTIVE, plan)
        except RepositoryConflictError as exc:
            current_state = exc.current_state
        except RepositoryNotFoundError:
            logger.warning("job disappeared before its outcome was recorded job_id=%s", job["id"])
            return None

        # The claim was reconciled away while publishing. A confirmed publish
        # is still recorded if nobody else holds the job.
        if isinstance(outcome, PublishSuccess) and current_state in {state.value for state in READY_STATES}:
            try:
                reclaimed = await self.repository.transition_job(
                    job["id"],
                    from_state=current_state,
                    to_state=JobState.ACTIVE,
                    fields={"claimed_by": self.worker_name, "claim_token": str(uuid4())},
                    event_type="reclaimed",
                    actor=self.worker_name,
                )
                return await self._apply(
                    job["id"],
                    JobState.ACTIVE,
                    resolve_outcome(reclaimed, outcome, self.retry_policy, rng=self._rng),
                )
            except (RepositoryConflictError, RepositoryNotFoundError):
                pass

        logger.warning(
            "dropping stale outcome job_id=%s outcome=%s current_state=%s",
            job["id"],
            plan.to_state.value,
            current_state,
        )
        return None

    async def _apply(self, job_id: str, from_state: JobState, plan: TransitionPlan) -> dict[str, Any]:
        return await self.repository.transition_job(
            job_id,
            from_state=from_state,
            to_state=plan.to_state,
            fields=plan.fields,
            event_type=plan.event_type,
            actor=self.worker_name,
            event_payload=plan.event_payload,
        )

    async def _maintenance_loop(self) -> None:
        last_reap_at = time.monotonic()
        last_purge_at = float("-inf")
        tick = max(0.01, min(self.lease_reaper_interval_seconds, 1.0))

        while self._running:
            try:
                if not self._startup_reconciled:
                    await self._reconcile_startup()

                now = time.monotonic()
                if now - last_reap_at >= self.lease_reaper_interval_seconds:
                    requeued = await self.repository.reconcile_active_jobs(
                        owner=None,
                        limit=self.lease_reaper_batch_size,
                        actor=self.worker_name,
                    )
                    if requeued:
                        logger.info("requeued expired leases: %s", len(requeued))
                        self.queue.notify()
                    last_reap_at = now

                if self.retention_purge_after_hours > 0 and now - last_purge_at >= self.retention_purge_interval_seconds:
                    purged = await self.repository.purge_terminal_jobs(
                        older_than_seconds=self.retention_purge_after_hours * 3600,
                        limit=self.retention_purge_batch_size,
                    )
                    if purged:
                        logger.info("purged terminal jobs: %s", purged)
                    last_purge_at = now
            except Exception:
                logger.exception("dispatcher maintenance failed worker_name=%s", self.worker_name)

            await asyncio.sleep(tick)


def build_dispatcher(settings: Settings, repository: PostgresJobRepository, client: PublishClient) -> PublishDispatcher:
    return PublishDispatcher(
        repository,
        client,
        worker_name=settings.worker_name,
        worker_count=settings.worker_count,
        publish_timeout_seconds=settings.publish_timeout_seconds,
        lease_grace_seconds=settings.lease_grace_seconds,
        retry_policy=RetryPolicy(
            base_seconds=settings.retry_base_seconds,
            max_seconds=settings.retry_max_seconds,
            jitter_ratio=settings.retry_jitter_ratio,
        ),
        idle_poll_seconds=settings.idle_poll_seconds,
        max_backoff_seconds=settings.max_backoff_seconds,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
        startup_reconcile_all=settings.startup_reconcile_all,
        lease_reaper_interval_seconds=settings.lease_reaper_interval_seconds,
        lease_reaper_batch_size=settings.lease_reaper_batch_size,
        retention_purge_after_hours=settings.retention_purge_after_hours,
        retention_purge_interval_seconds=settings.retention_purge_interval_seconds,
        retention_purge_batch_size=settings.retention_purge_batch_size,
    )
