from __future__ import annotations

from enum import Enum
from typing import Any

from dkg_publisher.services.repository import RepositoryUnavailableError
from dkg_publisher.services.states import JobState


class AdmissionDecision(str, Enum):
    ACCEPT = "accept"
    QUEUE_FULL = "queue_full"
    IN_FLIGHT_LIMIT = "in_flight_limit"


class DependencyUnavailableError(Exception):
    """Raised when the store or the publish client cannot take new work."""

    def __init__(self, dependency: str, message: str) -> None:
        super().__init__(message)
        self.dependency = dependency


class AdmissionRejectedError(Exception):
    def __init__(self, decision: AdmissionDecision, *, queue_depth: int, in_flight: int) -> None:
        super().__init__(f"submission rejected: {decision.value}")
        self.decision = decision
        self.reason = decision.value
        self.queue_depth = queue_depth
        self.in_flight = in_flight


class AdmissionController:
    """Backpressure gate applied before a submission is accepted.

    A limit of 0 disables that check.
    """

    def __init__(self, *, max_queue_depth: int = 0, max_in_flight: int = 0, retry_after_seconds: int = 30) -> None:
        self.max_queue_depth = max_queue_depth
        self.max_in_flight = max_in_flight
        self.retry_after_seconds = retry_after_seconds

    def decide(self, *, queue_depth: int, in_flight: int) -> AdmissionDecision:
        if self.max_queue_depth > 0 and queue_depth >= self.max_queue_depth:
            return AdmissionDecision.QUEUE_FULL
        if self.max_in_flight > 0 and in_flight >= self.max_in_flight:
            return AdmissionDecision.IN_FLIGHT_LIMIT
        return AdmissionDecision.ACCEPT

    async def check(self, repository: Any, publish_client: Any) -> None:
        if repository is None:
            raise DependencyUnavailableError("store", "job store is not configured")
        if publish_client is None or not publish_client.configured:
            raise DependencyUnavailableError("publish_client", "publish endpoint is not configured")

        try:
            counts = await repository.counts_by_state()
        except RepositoryUnavailableError as exc:
            raise DependencyUnavailableError("store", str(exc)) from exc

        queue_depth = counts.get(JobState.QUEUED.value, 0) + counts.get(JobState.RETRY_PENDING.value, 0)
        in_flight = counts.get(JobState.ACTIVE.value, 0)
        decision = self.decide(queue_depth=queue_depth, in_flight=in_flight)
        if decision is not AdmissionDecision.ACCEPT:
            raise AdmissionRejectedError(decision, queue_depth=queue_depth, in_flight=in_flight)
