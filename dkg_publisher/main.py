from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from dkg_publisher.api.router import api_router
from dkg_publisher.core.config import get_settings
from dkg_publisher.core.telemetry import configure_logging, setup_api_telemetry, shutdown_telemetry
from dkg_publisher.services.dispatcher import PublishDispatcher, build_dispatcher
from dkg_publisher.services.publish_client import get_publish_client
from dkg_publisher.services.repository import get_repository

settings = get_settings()
logger = logging.getLogger(__name__)


async def _start_embedded_dispatcher() -> PublishDispatcher | None:
    if not settings.embedded_dispatcher:
        return None
    client = get_publish_client()
    if client is None:
        logger.warning("embedded dispatcher disabled: DKGP_DKG_ENDPOINT is not set")
        return None
    dispatcher = build_dispatcher(settings, get_repository(), client)
    await dispatcher.start()
    return dispatcher


@asynccontextmanager
async def lifespan(app_: FastAPI):
    app_.state.dispatcher = await _start_embedded_dispatcher()
    try:
        yield
    finally:
        dispatcher = app_.state.dispatcher
        app_.state.dispatcher = None
        if dispatcher is not None:
            await dispatcher.stop()
        shutdown_telemetry(telemetry_runtime)
        await get_repository().close()
        get_repository.cache_clear()


configure_logging()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    level = logging.WARNING if response.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "%s %s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


app.include_router(api_router)
