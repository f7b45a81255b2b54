from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from dkg_publisher.api.deps import get_admin_service, get_dispatcher
from dkg_publisher.core.auth import ADMIN_READ_SCOPE, ADMIN_WRITE_SCOPE, Principal
from dkg_publisher.core.config import Settings, get_settings
from dkg_publisher.core.security import get_admin_principal
from dkg_publisher.schemas.admin import (
    AdminJobOut,
    AdminJobsMaintenanceOut,
    DispatcherStatusOut,
    ErrorBucketOut,
    ErrorDistributionOut,
    HealthReportOut,
    JobActionRequest,
    JobEventOut,
    JobStateFilter,
    PublishingMetricsOut,
    QueueControlOut,
    QueueDashboardOut,
    SourceStatsOut,
)
from dkg_publisher.schemas.assets import QueueCountsOut
from dkg_publisher.services.admin import QueueAdminService, SourceIdInUseError
from dkg_publisher.services.health import build_health_report
from dkg_publisher.services.metrics import build_error_distribution, build_publishing_metrics, build_queue_metrics
from dkg_publisher.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from dkg_publisher.services.states import IllegalTransitionError

router = APIRouter()


def _require(principal: Principal, scope: str) -> None:
    try:
        principal.require_scopes({scope})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def _actor(principal: Principal) -> str:
    return principal.actor_id or principal.subject


@router.get("/queues", response_model=QueueDashboardOut)
async def queue_dashboard(
    principal=Depends(get_admin_principal),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    dispatcher=Depends(get_dispatcher),
) -> QueueDashboardOut:
    _require(principal, ADMIN_READ_SCOPE)

    try:
        metrics = await build_queue_metrics(repository, window_seconds=settings.throughput_window_seconds)
        control = await repository.get_queue_control()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueDashboardOut(
        counts=QueueCountsOut(**metrics.counts),
        throughput_per_minute=metrics.throughput_per_minute,
        throughput_window_seconds=metrics.window_seconds,
        dispatcher=DispatcherStatusOut(**dispatcher.status()) if dispatcher is not None else None,
        paused=control["paused"],
    )


@router.get("/jobs", response_model=list[AdminJobOut])
async def list_jobs(
    principal=Depends(get_admin_principal),
    repository=Depends(get_repository),
    state: JobStateFilter | None = Query(default=None),
    source_id: str | None = Query(default=None, alias="sourceId", min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[AdminJobOut]:
    _require(principal, ADMIN_READ_SCOPE)

    try:
        rows = await repository.list_jobs(state=state, source_id=source_id, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [AdminJobOut.from_job(row) for row in rows]


@router.post("/jobs/requeue-failed", response_model=AdminJobsMaintenanceOut)
async def requeue_failed_jobs(
    principal=Depends(get_admin_principal),
    admin: QueueAdminService = Depends(get_admin_service),
    source: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=100, ge=1, le=1000),
) -> AdminJobsMaintenanceOut:
    _require(principal, ADMIN_WRITE_SCOPE)

    try:
        job_ids = await admin.requeue_failed(actor=_actor(principal), source=source, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return AdminJobsMaintenanceOut(affected=len(job_ids), job_ids=job_ids)


@router.post("/jobs/purge", response_model=AdminJobsMaintenanceOut)
async def purge_terminal_jobs(
    principal=Depends(get_admin_principal),
    admin: QueueAdminService = Depends(get_admin_service),
    older_than_hours: int = Query(default=168, ge=0, alias="olderThanHours"),
    limit: int = Query(default=500, ge=1, le=10000),
) -> AdminJobsMaintenanceOut:
    _require(principal, ADMIN_WRITE_SCOPE)

    try:
        purged = await admin.purge_terminal(older_than_hours=older_than_hours, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return AdminJobsMaintenanceOut(affected=purged)


@router.post("/jobs/reap-expired", response_model=AdminJobsMaintenanceOut)
async def reap_expired_jobs(
    principal=Depends(get_admin_principal),
    admin: QueueAdminService = Depends(get_admin_service),
    limit: int = Query(default=100, ge=1, le=1000),
) -> AdminJobsMaintenanceOut:
    _require(principal, ADMIN_WRITE_SCOPE)

    try:
        job_ids = await admin.reap_expired(actor=_actor(principal), limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return AdminJobsMaintenanceOut(affected=len(job_ids), job_ids=job_ids)


@router.get("/jobs/{job_id}", response_model=AdminJobOut)
async def get_job(
    job_id: str,
    principal=Depends(get_admin_principal),
    repository=Depends(get_repository),
) -> AdminJobOut:
    _require(principal, ADMIN_READ_SCOPE)

    try:
        row = await repository.get_job(job_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return AdminJobOut.from_job(row)


@router.get("/jobs/{job_id}/events", response_model=list[JobEventOut])
async def list_job_events(
    job_id: str,
    principal=Depends(get_admin_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[JobEventOut]:
    _require(principal, ADMIN_READ_SCOPE)

    try:
        await repository.get_job(job_id)
        rows = await repository.list_job_events(job_id, limit=limit, offset=offset)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [JobEventOut(**row) for row in rows]


@router.post("/jobs/{job_id}/requeue", response_model=AdminJobOut)
async def requeue_job(
    job_id: str,
    payload: JobActionRequest | None = Body(default=None),
    principal=Depends(get_admin_principal),
    admin: QueueAdminService = Depends(get_admin_service),
    dispatcher=Depends(get_dispatcher),
) -> AdminJobOut:
    _require(principal, ADMIN_WRITE_SCOPE)

    try:
        row = await admin.requeue(job_id, actor=_actor(principal), reason=payload.reason if payload else None)
    except IllegalTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except SourceIdInUseError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "source_id_in_use", "message": str(exc), "existingJobId": exc.existing_job["id"]},
        ) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if dispatcher is not None:
        dispatcher.notify()
    return AdminJobOut.from_job(row)


@router.post("/jobs/{job_id}/cancel", response_model=AdminJobOut)
async def cancel_job(
    job_id: str,
    payload: JobActionRequest | None = Body(default=None),
    principal=Depends(get_admin_principal),
    admin: QueueAdminService = Depends(get_admin_service),
) -> AdminJobOut:
    _require(principal, ADMIN_WRITE_SCOPE)

    try:
        row = await admin.cancel(job_id, actor=_actor(principal), reason=payload.reason if payload else None)
    except IllegalTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return AdminJobOut.from_job(row)


@router.get("/queue", response_model=QueueControlOut)
async def get_queue_control(
    principal=Depends(get_admin_principal),
    admin: QueueAdminService = Depends(get_admin_service),
) -> QueueControlOut:
    _require(principal, ADMIN_READ_SCOPE)

    try:
        control = await admin.queue_control()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueControlOut(**control)


@router.post("/queue/pause", response_model=QueueControlOut)
async def pause_queue(
    principal=Depends(get_admin_principal),
    admin: QueueAdminService = Depends(get_admin_service),
) -> QueueControlOut:
    _require(principal, ADMIN_WRITE_SCOPE)

    try:
        control = await admin.pause(actor=_actor(principal))
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueControlOut(**control)


@router.post("/queue/resume", response_model=QueueControlOut)
async def resume_queue(
    principal=Depends(get_admin_principal),
    admin: QueueAdminService = Depends(get_admin_service),
    dispatcher=Depends(get_dispatcher),
) -> QueueControlOut:
    _require(principal, ADMIN_WRITE_SCOPE)

    try:
        control = await admin.resume(actor=_actor(principal))
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if dispatcher is not None:
        dispatcher.notify()
    return QueueControlOut(**control)


@router.get("/metrics/publishing", response_model=PublishingMetricsOut)
async def publishing_metrics(
    principal=Depends(get_admin_principal),
    repository=Depends(get_repository),
    source: str | None = Query(default=None, min_length=1),
    since_hours: int | None = Query(default=None, ge=1, alias="sinceHours"),
) -> PublishingMetricsOut:
    _require(principal, ADMIN_READ_SCOPE)

    try:
        metrics = await build_publishing_metrics(
            repository,
            since_seconds=since_hours * 3600 if since_hours is not None else None,
            source=source,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return PublishingMetricsOut(
        totals=SourceStatsOut.model_validate(metrics.totals, from_attributes=True),
        sources=[SourceStatsOut.model_validate(item, from_attributes=True) for item in metrics.sources],
        window_seconds=metrics.window_seconds,
    )


@router.get("/metrics/errors", response_model=ErrorDistributionOut)
async def error_distribution(
    principal=Depends(get_admin_principal),
    repository=Depends(get_repository),
    since_hours: int = Query(default=168, ge=1, alias="sinceHours"),
    limit: int = Query(default=10, ge=1, le=100),
) -> ErrorDistributionOut:
    _require(principal, ADMIN_READ_SCOPE)

    try:
        buckets = await build_error_distribution(repository, since_seconds=since_hours * 3600, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ErrorDistributionOut(
        window_seconds=since_hours * 3600,
        errors=[ErrorBucketOut.model_validate(bucket, from_attributes=True) for bucket in buckets],
    )


@router.get("/health", response_model=HealthReportOut)
async def health_report(
    principal=Depends(get_admin_principal),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    dispatcher=Depends(get_dispatcher),
) -> HealthReportOut:
    _require(principal, ADMIN_READ_SCOPE)

    report = await build_health_report(
        repository,
        dispatcher,
        failure_window_seconds=settings.health_failure_window_seconds,
        failure_warning_threshold=settings.health_failure_warning_threshold,
    )
    return HealthReportOut.model_validate(report, from_attributes=True)
