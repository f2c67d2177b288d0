from fastapi import APIRouter

from agent_tasks.api.v1.endpoints import health, tasks

v1_router = APIRouter()
v1_router.include_router(health.router, tags=["health"])
v1_router.include_router(tasks.router, tags=["tasks"])
