from fastapi import APIRouter

from ats_pipeline.api.routes import analytics, connectors, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(connectors.router, prefix="/connectors", tags=["connectors"])
api_router.include_router(analytics.router, prefix="/jobs", tags=["analytics"])
