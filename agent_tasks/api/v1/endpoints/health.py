from fastapi import APIRouter, Depends

from agent_tasks.config import settings
from agent_tasks.dependencies import get_handler_registry
from agent_tasks.handlers import StepHandlerRegistry

router = APIRouter()


@router.get("/health")
async def health_check(registry: StepHandlerRegistry = Depends(get_handler_registry)):
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": "0.1.0",
        "handlers": registry.list_all(),
    }
