import asyncio
from typing import Any, Callable, Optional

import httpx
import structlog

from canary.core.config import Settings, settings
from canary.core.metrics import OutcomeRecorder
from canary.core.run_gate import RunGate
from canary.services.connection_probe import ConnectionProbe, default_client_factory
from canary.services.directory import (
    DeviceDataClient,
    DeviceManagerClient,
    DeviceRepositoryClient,
    PermissionSearchClient,
)
from canary.services.identity import IdentityProvider
from canary.services.orchestrator import Orchestrator
from canary.services.platform_client import PlatformClient
from canary.services.provisioner import ResourceProvisioner
from canary.services.state_verifier import StateVerifier
from canary.services.workflows import COMMAND_WORKFLOW, EVENT_WORKFLOW, WorkflowClient, WorkflowLifecycle

logger = structlog.get_logger()

orchestrator: Optional[Orchestrator] = None
recorder: Optional[OutcomeRecorder] = None
_http_client: Optional[httpx.AsyncClient] = None
_initialization_lock = asyncio.Lock()


def build_orchestrator(
    config: Settings,
    http_client: httpx.AsyncClient,
    outcome_recorder: OutcomeRecorder,
    gate: Optional[RunGate] = None,
    mqtt_client_factory: Callable[[str], Any] = default_client_factory,
    value_source: Optional[Callable[[], int]] = None,
) -> Orchestrator:
    """Wire every collaborator of a run around one shared HTTP client."""
    platform = PlatformClient(http_client, timeout_seconds=config.HTTP_TIMEOUT_SECONDS)
    device_manager = DeviceManagerClient(platform, config.DEVICE_MANAGER_URL, outcome_recorder)
    device_repository = DeviceRepositoryClient(platform, config.DEVICE_REPOSITORY_URL, outcome_recorder)
    permission_search = PermissionSearchClient(platform, config.PERMISSION_SEARCH_URL, outcome_recorder)
    device_data = DeviceDataClient(platform, config.LAST_VALUE_QUERY_URL, outcome_recorder)
    workflow_client = WorkflowClient(platform, config)

    return Orchestrator(
        config=config,
        recorder=outcome_recorder,
        gate=gate or RunGate(),
        identity=IdentityProvider(platform, config, outcome_recorder),
        provisioner=ResourceProvisioner(config, device_manager, device_repository, permission_search),
        probe=ConnectionProbe(config, outcome_recorder, client_factory=mqtt_client_factory),
        verifier=StateVerifier(config, outcome_recorder, device_repository, permission_search, device_data),
        command_workflow=WorkflowLifecycle(COMMAND_WORKFLOW, workflow_client, device_repository, outcome_recorder, config),
        event_workflow=WorkflowLifecycle(EVENT_WORKFLOW, workflow_client, device_repository, outcome_recorder, config),
        value_source=value_source,
    )


async def initialize_engine() -> None:
    """Create the recorder, HTTP client and orchestrator singletons."""
    async with _initialization_lock:
        _ensure_engine()


async def shutdown_engine() -> None:
    """Let an active run finish its teardown, then close the HTTP client."""
    global orchestrator, _http_client
    if orchestrator:
        await orchestrator.shutdown()
    if _http_client:
        await _http_client.aclose()
    orchestrator = None
    _http_client = None
    logger.info("Canary engine stopped")


async def get_orchestrator() -> Orchestrator:
    async with _initialization_lock:
        _ensure_engine()
        assert orchestrator is not None
        return orchestrator


def get_recorder() -> OutcomeRecorder:
    global recorder
    if recorder is None:
        recorder = OutcomeRecorder(prefix=settings.METRICS_PREFIX)
    return recorder


def _ensure_engine() -> None:
    global orchestrator, _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
    if orchestrator is None:
        orchestrator = build_orchestrator(settings, _http_client, get_recorder())
        logger.info("Canary engine initialized")
