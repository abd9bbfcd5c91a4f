from fastapi import APIRouter

from pushlab.api.v1 import experiments, health, segments

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(segments.router, prefix="/segments", tags=["segments"])
api_router.include_router(experiments.router, prefix="/experiments", tags=["experiments"])
