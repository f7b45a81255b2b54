from fastapi import APIRouter

from dkg_publisher.api.routes import admin, assets, health, metrics, tools

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(assets.router, prefix="/api/dkg", tags=["assets"])
api_router.include_router(metrics.router, prefix="/api/dkg", tags=["metrics"])
api_router.include_router(tools.router, prefix="/api/tools", tags=["tools"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
