from datetime import datetime
from typing import Any, Literal

from pydantic import Field

from dkg_publisher.schemas.assets import JobStatusOut, QueueCountsOut
from dkg_publisher.schemas.base import ApiModel

JobStateFilter = Literal["queued", "active", "retry_pending", "completed", "failed", "cancelled"]


class AdminJobOut(JobStatusOut):
    payload: dict[str, Any] = Field(default_factory=dict)
    claimed_by: str | None = None
    lease_expires_at: datetime | None = None


class JobEventOut(ApiModel):
    id: int
    job_id: str
    event_type: str
    from_state: str | None = None
    to_state: str | None = None
    actor: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class DispatcherStatusOut(ApiModel):
    running: bool
    worker_name: str
    worker_count: int
    in_flight: int


class QueueDashboardOut(ApiModel):
    counts: QueueCountsOut
    throughput_per_minute: float
    throughput_window_seconds: int
    dispatcher: DispatcherStatusOut | None = None
    paused: bool = False


class JobActionRequest(ApiModel):
    reason: str | None = Field(default=None, max_length=500)


class AdminJobsMaintenanceOut(ApiModel):
    affected: int
    job_ids: list[str] = Field(default_factory=list)


class QueueControlOut(ApiModel):
    paused: bool
    updated_by: str | None = None
    updated_at: datetime | None = None


class SourceStatsOut(ApiModel):
    source: str | None = None
    total: int
    completed: int
    failed: int
    cancelled: int
    pending: int
    success_rate: float
    avg_seconds_to_publish: float | None = None


class PublishingMetricsOut(ApiModel):
    totals: SourceStatsOut
    sources: list[SourceStatsOut] = Field(default_factory=list)
    window_seconds: int | None = None


class ErrorBucketOut(ApiModel):
    code: str
    count: int
    last_occurrence: datetime | None = None


class ErrorDistributionOut(ApiModel):
    window_seconds: int
    errors: list[ErrorBucketOut] = Field(default_factory=list)


class HealthReportOut(ApiModel):
    healthy: bool
    database: str
    dispatcher: str
    queue_paused: bool | None = None
    stuck_jobs: int
    recent_failures: int
    failure_window_seconds: int
    warnings: list[str] = Field(default_factory=list)
