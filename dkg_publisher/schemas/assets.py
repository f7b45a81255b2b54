from datetime import datetime
from typing import Any

from dkg_publisher.schemas.base import ApiModel


class SubmissionOut(ApiModel):
    id: str
    status: str
    duplicate: bool = False


class JobStatusOut(ApiModel):
    id: str
    status: str
    attempts: int
    max_attempts: int
    priority: int
    source: str | None = None
    source_id: str | None = None
    result: dict[str, Any] | None = None
    last_error: dict[str, Any] | None = None
    next_attempt_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: dict[str, Any]) -> "JobStatusOut":
        return cls(status=job["state"], **{key: value for key, value in job.items() if key in cls.model_fields})


class QueueCountsOut(ApiModel):
    queued: int = 0
    active: int = 0
    retry_pending: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


class QueueMetricsOut(ApiModel):
    counts: QueueCountsOut
    throughput_per_minute: float
    throughput_window_seconds: int
