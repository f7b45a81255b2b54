from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from dkg_publisher.services.repository import RepositoryUnavailableError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HealthReport:
    database: str
    dispatcher: str
    queue_paused: bool | None = None
    stuck_jobs: int = 0
    recent_failures: int = 0
    failure_window_seconds: int = 3600
    warnings: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.warnings


def dispatcher_state(dispatcher: Any | None) -> str:
    if dispatcher is None:
        return "disabled"
    return "running" if dispatcher.running else "stopped"


async def build_health_report(
    repository: Any,
    dispatcher: Any | None,
    *,
    failure_window_seconds: int = 3600,
    failure_warning_threshold: int = 10,
) -> HealthReport:
    """Check the store and the dispatcher and collect operator-facing warnings.

    Stuck jobs are ACTIVE jobs whose lease already expired and that no reaper
    has requeued yet.
    """
    report = HealthReport(
        database="ok",
        dispatcher=dispatcher_state(dispatcher),
        failure_window_seconds=failure_window_seconds,
    )
    if report.dispatcher == "stopped":
        report.warnings.append("dispatcher stopped")

    try:
        await repository.ping()
        report.queue_paused = await repository.is_queue_paused()
        report.stuck_jobs = await repository.count_expired_leases()
        report.recent_failures = await repository.count_failed_since(failure_window_seconds)
    except RepositoryUnavailableError as exc:
        logger.warning("health check could not reach the database: %s", exc)
        report.database = "unavailable"
        report.warnings.append("database unavailable")
        return report

    if report.queue_paused:
        report.warnings.append("queue paused")
    if report.stuck_jobs:
        report.warnings.append(f"{report.stuck_jobs} jobs active past their lease")
    if report.recent_failures > failure_warning_threshold:
        report.warnings.append(f"{report.recent_failures} jobs failed in the last {failure_window_seconds}s")
    return report
