from fastapi import APIRouter, Depends, HTTPException, status

from dkg_publisher.core.config import Settings, get_settings
from dkg_publisher.schemas.assets import QueueCountsOut, QueueMetricsOut
from dkg_publisher.services.metrics import build_queue_metrics
from dkg_publisher.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.get("/metrics/queue", response_model=QueueMetricsOut)
async def queue_metrics(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> QueueMetricsOut:
    try:
        metrics = await build_queue_metrics(repository, window_seconds=settings.throughput_window_seconds)
    except RepositoryUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "dependency_unavailable", "message": str(exc)},
        ) from exc

    return QueueMetricsOut(
        counts=QueueCountsOut(**metrics.counts),
        throughput_per_minute=metrics.throughput_per_minute,
        throughput_window_seconds=metrics.window_seconds,
    )
