from fastapi import APIRouter
from src.rollout.api.v1.endpoints import router as deployments_router
from src.rollout.api.v1.templates import router as templates_router

api_router = APIRouter()

api_router.include_router(deployments_router, tags=["deployments"])
api_router.include_router(templates_router, tags=["templates"])
