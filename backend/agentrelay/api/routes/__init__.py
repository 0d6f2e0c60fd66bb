from fastapi import APIRouter

from agentrelay.api.routes import health, interactive

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(interactive.router, tags=["interactive"])
