from fastapi import APIRouter, Depends, Response

from canary.core.engine_provider import get_orchestrator, get_recorder
from canary.services.orchestrator import Orchestrator

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def scrape_metrics(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Response:
    """
    Prometheus exposition of the canary metrics.

    Every scrape also triggers a canary run in the background; a scrape that
    arrives while a run is active only reads the metrics.
    """
    recorder = get_recorder()
    body = recorder.render()
    orchestrator.try_run()
    return Response(content=body, media_type=recorder.content_type)
