"""
Deploy, trigger, verify and remove one reserved-name test workflow.

Lifecycle: Absent -> Deployed -> Triggered -> Verified -> Absent. Startup
removes every deployment left over under the reserved name before creating
its own, and teardown removes every deployment under the reserved name
whether or not verification passed, so each run starts and ends with zero.
"""
import asyncio
import threading
from typing import Awaitable, Callable, List, Optional

import structlog
from pydantic import ValidationError

from canary.core.config import Settings
from canary.core.metrics import OutcomeRecorder
from canary.schemas.platform import CommandEnvelope, Device
from canary.services.directory import DeviceRepositoryClient
from canary.services.exceptions import PlatformError, UnexpectedCommandError, WorkflowLegError
from canary.services.workflows.client import WorkflowClient
from canary.services.workflows.strategies import TriggerMode, WorkflowStrategy

logger = structlog.get_logger()

COMPLETED = "COMPLETED"


class WorkflowLifecycle:
    def __init__(
        self,
        strategy: WorkflowStrategy,
        client: WorkflowClient,
        device_repository: DeviceRepositoryClient,
        recorder: OutcomeRecorder,
        config: Settings,
    ):
        self.strategy = strategy
        self._client = client
        self._device_repository = device_repository
        self._recorder = recorder
        self._config = config
        self._delivered = 0
        self._delivered_lock = threading.Lock()
        self._may_have_deployment = False
        self._log = logger.bind(workflow=strategy.reserved_name)

    # Command sink, called from the MQTT network thread and the command worker.

    def record_delivery(self) -> None:
        with self._delivered_lock:
            self._delivered += 1

    @property
    def delivered_commands(self) -> int:
        with self._delivered_lock:
            return self._delivered

    def reset_delivered(self) -> None:
        with self._delivered_lock:
            self._delivered = 0

    def notify_command(self, topic: str, payload: bytes) -> None:
        """Validate a delivered command against the payload the workflow sends."""
        try:
            envelope = CommandEnvelope.model_validate_json(payload)
        except ValidationError as e:
            raise UnexpectedCommandError(f"undecodable command on {topic}") from e
        expected = self.strategy.expected_command_payload
        if expected is not None and envelope.payload != expected:
            raise UnexpectedCommandError(f"unexpected command payload on {topic}: {envelope.payload!r}")

    async def wait_for_convergence(self) -> None:
        await asyncio.sleep(self._config.GUARANTEE_CHANGE_AFTER)

    async def run(
        self,
        token: str,
        device: Device,
        on_deployed: Optional[Callable[[bool], None]] = None,
        await_trigger: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> bool:
        """
        Full lifecycle for one run.

        ``on_deployed`` is told whether startup succeeded. ``await_trigger``
        (event-driven legs) waits for the qualifying event and reports
        whether it happened; run history is only verified when it did.
        Teardown always runs once a deployment may exist.

        Returns:
            True if startup and the trigger succeeded.
        """
        started = False
        triggered = False
        self._may_have_deployment = False
        try:
            await self.startup(token, device)
            started = True
            if on_deployed is not None:
                on_deployed(True)
            triggered = True
            if await_trigger is not None:
                triggered = await await_trigger()
                if not triggered:
                    self._log.warning("Workflow trigger did not happen, skipping verification")
            await self.wait_for_convergence()
        except WorkflowLegError as e:
            self._log.error("Workflow startup failed", error=str(e))
        finally:
            if not started and on_deployed is not None:
                on_deployed(False)
            if self._may_have_deployment:
                try:
                    await self.teardown(token, verify=started and triggered)
                except WorkflowLegError as e:
                    self._log.error("Workflow teardown failed", error=str(e))
        return started and triggered

    async def startup(self, token: str, device: Device) -> str:
        """
        Replace any stale reserved deployment with a fresh one bound to ``device``.

        Raises:
            WorkflowLegError: listing, deleting, deploying or (for direct
                workflows) starting failed.
        """
        if self.strategy.trigger_mode == TriggerMode.DIRECT:
            self.reset_delivered()

        stale_ids = await self._list_reserved(token)
        if stale_ids:
            self._log.info("Removing stale workflow deployments", count=len(stale_ids))
        await self._delete_all(token, stale_ids)

        service_id = await self._resolve_service_id(token, device)
        await self._check_prepared_deployment(token, device, service_id)

        metrics = self.strategy.metrics
        self._may_have_deployment = True
        try:
            deployment = await self._client.deploy(token, self.strategy.render_deployment(device.id, service_id))
        except PlatformError as e:
            self._recorder.increment(metrics.deployment_err)
            raise WorkflowLegError(f"deployment of {self.strategy.reserved_name} failed: {e}") from e
        self._log.info("Workflow deployed", deployment_id=deployment.id)

        await self.wait_for_convergence()

        if self.strategy.trigger_mode == TriggerMode.DIRECT:
            try:
                await self._client.start(token, deployment.id)
            except PlatformError as e:
                if metrics.start_err:
                    self._recorder.increment(metrics.start_err)
                raise WorkflowLegError(f"start of {deployment.id} failed: {e}") from e
            self._log.info("Workflow started", deployment_id=deployment.id)
        return deployment.id

    async def teardown(self, token: str, verify: bool = True) -> None:
        """
        Verify the run history (optionally) and delete every reserved deployment.

        Raises:
            WorkflowLegError: the deployments could not be listed or one of
                them could not be deleted.
        """
        ids = await self._list_reserved(token)
        if verify:
            if len(ids) != 1:
                self._uncategorized("Unexpected workflow deployment count", expected=1, observed=len(ids))
            await self._verify_instances(token)
            metrics = self.strategy.metrics
            if metrics.unexpected_command_count_err and self.delivered_commands == 0:
                self._log.error("Workflow finished without delivering a command", delivered=0)
                self._recorder.increment(metrics.unexpected_command_count_err)

        await self._delete_all(token, ids, stop_on_error=False)

    async def _list_reserved(self, token: str) -> List[str]:
        try:
            return await self._client.list_deployment_ids(token, self.strategy.reserved_name)
        except PlatformError as e:
            self._uncategorized("Unable to list workflow deployments", error=str(e))
            raise WorkflowLegError(f"listing {self.strategy.reserved_name} deployments failed: {e}") from e

    async def _delete_all(self, token: str, ids: List[str], stop_on_error: bool = True) -> None:
        failures = []
        for deployment_id in ids:
            try:
                await self._client.delete(token, deployment_id)
            except PlatformError as e:
                self._uncategorized("Unable to delete workflow deployment", deployment_id=deployment_id, error=str(e))
                if stop_on_error:
                    raise WorkflowLegError(f"deleting deployment {deployment_id} failed: {e}") from e
                failures.append(deployment_id)
        if failures:
            raise WorkflowLegError(f"deleting deployments {failures} failed")

    async def _resolve_service_id(self, token: str, device: Device) -> str:
        try:
            device_type = await self._device_repository.read_device_type(token, device.device_type_id)
        except PlatformError as e:
            self._uncategorized("Unable to read canary device type", error=str(e))
            raise WorkflowLegError(f"reading device type {device.device_type_id} failed: {e}") from e
        service_id = device_type.service_id(self.strategy.service_local_id)
        if not service_id:
            raise WorkflowLegError(f"device type has no {self.strategy.service_local_id!r} service")
        return service_id

    async def _check_prepared_deployment(self, token: str, device: Device, service_id: str) -> None:
        """Advisory: the canary device and service must be selectable at the anchor element."""
        metrics = self.strategy.metrics
        try:
            prepared = await self._client.prepare(token, self.strategy.load_bpmn(), self.strategy.load_svg())
        except PlatformError as e:
            self._log.error("Prepared deployment failed", error=str(e))
            self._recorder.increment(metrics.prepared_deployment_err)
            return

        found_device = False
        found_service = False
        for element in prepared.elements:
            if element.bpmn_id != self.strategy.anchor_id:
                continue
            selectable = getattr(element, self.strategy.anchor_kind.value)
            if selectable is None:
                continue
            for option in selectable.selection.selection_options:
                if option.device is not None and option.device.id == device.id:
                    found_device = True
                if any(service.id == service_id for service in option.services):
                    found_service = True

        if not found_device:
            self._log.error("Canary device not selectable", device_id=device.id, anchor=self.strategy.anchor_id)
            self._recorder.increment(metrics.prepared_selectables_err)
        if not found_service:
            self._log.error(
                "Canary service not selectable",
                service_id=service_id,
                anchor=self.strategy.anchor_id,
                prepared=prepared.model_dump_json(),
            )
            self._recorder.increment(metrics.prepared_selectables_err)

    async def _verify_instances(self, token: str) -> None:
        try:
            history = await self._client.history(token)
        except PlatformError as e:
            self._uncategorized("Unable to read workflow history", error=str(e))
            return

        instances = [i for i in history if i.processDefinitionName == self.strategy.reserved_name]
        if len(instances) != 1:
            self._uncategorized("Unexpected workflow instance count", expected=1, observed=len(instances))
            return

        instance = instances[0]
        if instance.state != COMPLETED:
            self._log.error(
                "Unexpected workflow instance state",
                instance_id=instance.id,
                expected=COMPLETED,
                observed=instance.state,
            )
            self._recorder.increment(self.strategy.metrics.instance_state_err)
            return
        self._recorder.set(self.strategy.metrics.instance_duration_ms, float(instance.durationInMillis or 0))

    def _uncategorized(self, message: str, **context) -> None:
        self._log.error(message, stack_info=True, **context)
        self._recorder.increment("uncategorized_err")
