from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status

from dkg_publisher.api.deps import get_intake_service
from dkg_publisher.schemas.assets import JobStatusOut, SubmissionOut
from dkg_publisher.services.admission import AdmissionRejectedError, DependencyUnavailableError
from dkg_publisher.services.intake import PublishIntakeService
from dkg_publisher.services.repository import RepositoryNotFoundError, RepositoryUnavailableError
from dkg_publisher.services.validator import PublishRequestValidationError

router = APIRouter()


@router.post("/assets", response_model=SubmissionOut, status_code=status.HTTP_202_ACCEPTED)
async def submit_asset(
    payload: Any = Body(default=None),
    intake: PublishIntakeService = Depends(get_intake_service),
) -> SubmissionOut:
    try:
        submission = await intake.submit(payload)
    except PublishRequestValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "validation_error",
                "message": str(exc),
                "fields": exc.fields,
                "errors": exc.errors,
            },
        ) from exc
    except AdmissionRejectedError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": exc.reason, "message": str(exc)},
            headers={"Retry-After": str(intake.admission.retry_after_seconds)},
        ) from exc
    except (DependencyUnavailableError, RepositoryUnavailableError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "dependency_unavailable", "message": str(exc)},
        ) from exc

    return SubmissionOut(id=submission.job_id, status=submission.status, duplicate=submission.duplicate)


@router.get("/assets/status/{job_id}", response_model=JobStatusOut)
async def get_asset_status(
    job_id: str,
    intake: PublishIntakeService = Depends(get_intake_service),
) -> JobStatusOut:
    try:
        job = await intake.get_status(job_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (DependencyUnavailableError, RepositoryUnavailableError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "dependency_unavailable", "message": str(exc)},
        ) from exc

    return JobStatusOut.from_job(job)
