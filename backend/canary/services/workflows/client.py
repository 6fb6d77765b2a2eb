from typing import Any, Dict, List
from urllib.parse import quote

import structlog

from canary.core.config import Settings
from canary.schemas.platform import DeploymentRef, PreparedDeployment, ProcessInstance
from canary.services.platform_client import PlatformClient, join_url, parse_as

logger = structlog.get_logger()

DEPLOYMENT_PAGE_SIZE = 200
HISTORY_LIMIT = 20


class WorkflowClient:
    """Process deployment service (definitions) and engine wrapper (runtime)."""

    def __init__(self, client: PlatformClient, config: Settings):
        self._client = client
        self._deployment_url = config.PROCESS_DEPLOYMENT_URL
        self._engine_url = config.PROCESS_ENGINE_WRAPPER_URL

    async def deploy(self, token: str, deployment: Dict[str, Any]) -> DeploymentRef:
        data = await self._client.request_json(
            "POST",
            join_url(self._deployment_url, "/v3/deployments"),
            token=token,
            params={"source": "sepl"},
            json_body=deployment,
        )
        return parse_as(DeploymentRef, data, source="process deployment")

    async def delete(self, token: str, deployment_id: str) -> None:
        await self._client.delete(
            join_url(self._deployment_url, f"/v3/deployments/{quote(deployment_id, safe='')}"),
            token=token,
        )

    async def prepare(self, token: str, xml: str, svg: str) -> PreparedDeployment:
        data = await self._client.post_json(
            join_url(self._deployment_url, "/v3/prepared-deployments"),
            {"xml": xml, "svg": svg},
            token=token,
        )
        return parse_as(PreparedDeployment, data, source="process deployment")

    async def list_deployment_ids(self, token: str, name: str) -> List[str]:
        """Ids of every deployment named ``name``, across all pages."""
        ids: List[str] = []
        offset = 0
        while True:
            params = {"maxResults": DEPLOYMENT_PAGE_SIZE}
            if offset > 0:
                params["firstResult"] = offset
            data = await self._client.get_json(
                join_url(self._engine_url, "/v2/deployments"), token=token, params=params
            )
            page = parse_as(List[DeploymentRef], data or [], source="process engine")
            ids.extend(deployment.id for deployment in page if deployment.name == name)
            if len(page) < DEPLOYMENT_PAGE_SIZE:
                return ids
            offset += DEPLOYMENT_PAGE_SIZE
            logger.debug("Listing further deployments", offset=offset)

    async def start(self, token: str, deployment_id: str) -> None:
        await self._client.send(
            "GET",
            join_url(self._engine_url, f"/v2/deployments/{quote(deployment_id, safe='')}/start"),
            token=token,
        )

    async def history(self, token: str, max_results: int = HISTORY_LIMIT) -> List[ProcessInstance]:
        data = await self._client.get_json(
            join_url(self._engine_url, "/v2/history/process-instances"),
            token=token,
            params={"maxResults": max_results},
        )
        return parse_as(List[ProcessInstance], data or [], source="process engine")
