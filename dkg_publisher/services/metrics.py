from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from dkg_publisher.services.states import COUNT_KEYS, JobState


@dataclass(frozen=True, slots=True)
class QueueMetrics:
    counts: dict[str, int]
    throughput_per_minute: float
    window_seconds: int


@dataclass(frozen=True, slots=True)
class SourceStats:
    source: str | None
    total: int
    completed: int
    failed: int
    cancelled: int
    pending: int
    success_rate: float
    avg_seconds_to_publish: float | None


@dataclass(frozen=True, slots=True)
class PublishingMetrics:
    totals: SourceStats
    sources: list[SourceStats]
    window_seconds: int | None


@dataclass(frozen=True, slots=True)
class ErrorBucket:
    code: str
    count: int
    last_occurrence: datetime | None


async def build_queue_metrics(repository: Any, *, window_seconds: int) -> QueueMetrics:
    """Snapshot per-state counts plus completions per minute over the trailing window."""
    raw_counts = await repository.counts_by_state()
    counts = {COUNT_KEYS[state]: int(raw_counts.get(state.value, 0)) for state in JobState}

    window = max(1, window_seconds)
    completed = await repository.count_completed_since(window)
    throughput = round(completed / (window / 60.0), 3)
    return QueueMetrics(counts=counts, throughput_per_minute=throughput, window_seconds=window)


def success_rate(completed: int, total: int) -> float:
    """Percentage of jobs that completed, 0 when there are none."""
    if total <= 0:
        return 0.0
    return round(completed * 100.0 / total, 2)


def _source_stats(row: dict[str, Any]) -> SourceStats:
    return SourceStats(
        source=row["source"],
        total=int(row["total"]),
        completed=int(row["completed"]),
        failed=int(row["failed"]),
        cancelled=int(row["cancelled"]),
        pending=int(row["pending"]),
        success_rate=success_rate(int(row["completed"]), int(row["total"])),
        avg_seconds_to_publish=row.get("avg_seconds_to_publish"),
    )


async def build_publishing_metrics(
    repository: Any,
    *,
    since_seconds: int | None = None,
    source: str | None = None,
) -> PublishingMetrics:
    """Outcome counts and success rate, overall and per source.

    ``since_seconds`` limits the report to jobs created in the trailing
    window; ``None`` covers every retained job.
    """
    window = max(1, since_seconds) if since_seconds is not None else None
    rows = await repository.publishing_stats(since_seconds=window, source=source)
    sources = [_source_stats(row) for row in rows]

    completed = sum(item.completed for item in sources)
    timed = [(item.avg_seconds_to_publish, item.completed) for item in sources if item.avg_seconds_to_publish is not None]
    timed_total = sum(weight for _, weight in timed)
    totals = SourceStats(
        source=source,
        total=sum(item.total for item in sources),
        completed=completed,
        failed=sum(item.failed for item in sources),
        cancelled=sum(item.cancelled for item in sources),
        pending=sum(item.pending for item in sources),
        success_rate=success_rate(completed, sum(item.total for item in sources)),
        avg_seconds_to_publish=(
            round(sum(avg * weight for avg, weight in timed) / timed_total, 3) if timed_total else None
        ),
    )
    return PublishingMetrics(totals=totals, sources=sources, window_seconds=window)


async def build_error_distribution(repository: Any, *, since_seconds: int, limit: int = 10) -> list[ErrorBucket]:
    rows = await repository.error_distribution(since_seconds=max(1, since_seconds), limit=limit)
    return [ErrorBucket(code=row["code"], count=int(row["count"]), last_occurrence=row["last_occurrence"]) for row in rows]
