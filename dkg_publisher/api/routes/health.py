from fastapi import APIRouter, Depends

from dkg_publisher.api.deps import get_dispatcher
from dkg_publisher.services.health import dispatcher_state
from dkg_publisher.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz(repository=Depends(get_repository), dispatcher=Depends(get_dispatcher)) -> dict[str, str]:
    database = "ok"
    try:
        await repository.ping()
    except RepositoryUnavailableError:
        database = "unavailable"

    dispatcher_status = dispatcher_state(dispatcher)
    degraded = database != "ok" or dispatcher_status == "stopped"
    return {"status": "degraded" if degraded else "ok", "database": database, "dispatcher": dispatcher_status}
