from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

from dkg_publisher.services.admission import AdmissionController, DependencyUnavailableError
from dkg_publisher.services.repository import DuplicateActiveSourceIdError
from dkg_publisher.services.validator import PublishDefaults, validate_publish_request

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    job: dict[str, Any]
    duplicate: bool = False

    @property
    def job_id(self) -> str:
        return self.job["id"]

    @property
    def status(self) -> str:
        return self.job["state"]


class PublishIntakeService:
    """Single entry point for new publish requests, shared by the HTTP API and the agent tools."""

    def __init__(
        self,
        repository: Any,
        publish_client: Any,
        admission: AdmissionController,
        defaults: PublishDefaults | None = None,
        on_enqueued: Callable[[], None] | None = None,
    ) -> None:
        self.repository = repository
        self.publish_client = publish_client
        self.admission = admission
        self.defaults = defaults or PublishDefaults()
        self.on_enqueued = on_enqueued

    async def submit(self, raw: Any, *, actor: str | None = None) -> SubmissionResult:
        await self.admission.check(self.repository, self.publish_client)
        request = validate_publish_request(raw, self.defaults)

        try:
            job = await self.repository.create_job(
                source=request.source,
                source_id=request.source_id,
                payload=request.to_payload(),
                priority=request.priority,
                max_attempts=request.max_attempts,
                actor=actor,
            )
        except DuplicateActiveSourceIdError as exc:
            logger.info(
                "duplicate submission resolved job_id=%s source_id=%s state=%s",
                exc.existing_job["id"],
                request.source_id,
                exc.existing_job["state"],
            )
            return SubmissionResult(job=exc.existing_job, duplicate=True)

        logger.info(
            "job enqueued job_id=%s source=%s source_id=%s priority=%s",
            job["id"],
            request.source,
            request.source_id,
            request.priority,
        )
        if self.on_enqueued is not None:
            self.on_enqueued()
        return SubmissionResult(job=job)

    async def get_status(self, job_id: str) -> dict[str, Any]:
        if self.repository is None:
            raise DependencyUnavailableError("store", "job store is not configured")
        return await self.repository.get_job(job_id)
