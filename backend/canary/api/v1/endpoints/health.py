from typing import Any, Dict

from fastapi import APIRouter, Depends

from canary.core.config import settings
from canary.core.engine_provider import get_orchestrator
from canary.services.orchestrator import Orchestrator

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "run_in_progress": orchestrator.is_running,
    }
