"""
Composes one canary run.

    acquire session -> ensure device -> legs (concurrently) -> release session

The four legs (connectivity, command workflow, event workflow, device
metadata) only coordinate through ``RunSignals`` milestones. Every milestone
wait is bounded, and a leg that exits early marks the milestones it still
owes as failed, so a broken leg never stalls its siblings.
"""
import asyncio
import random
from dataclasses import dataclass, field
from typing import Callable, Optional, Set

import structlog

from canary.core.config import Settings
from canary.core.metrics import OutcomeRecorder
from canary.core.run_gate import RunGate
from canary.schemas.platform import Device
from canary.services.connection_probe import ConnectionProbe, ProbeSession
from canary.services.exceptions import IdentityError, PlatformError, TransportError
from canary.services.identity import IdentityProvider, Session
from canary.services.provisioner import ResourceProvisioner
from canary.services.state_verifier import StateVerifier
from canary.services.workflows import WorkflowLifecycle

logger = structlog.get_logger()

SENSOR_VALUE_MAX = 2**31 - 1


class Milestone:
    """One-shot signal between legs carrying a success flag."""

    def __init__(self, name: str):
        self.name = name
        self.ok = False
        self._event = asyncio.Event()

    def mark(self, ok: bool) -> None:
        """First mark wins; later marks are ignored."""
        if self._event.is_set():
            return
        self.ok = ok
        self._event.set()

    async def wait(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for milestone", milestone=self.name, timeout=timeout)
            return False
        return self.ok


@dataclass
class RunSignals:
    # subscribed: the hub session is up and the command subscription was attempted.
    subscribed: Milestone = field(default_factory=lambda: Milestone("subscribed"))
    event_workflow_deployed: Milestone = field(default_factory=lambda: Milestone("event_workflow_deployed"))
    published: Milestone = field(default_factory=lambda: Milestone("published"))
    command_workflow_finished: Milestone = field(default_factory=lambda: Milestone("command_workflow_finished"))


class Orchestrator:
    def __init__(
        self,
        config: Settings,
        recorder: OutcomeRecorder,
        gate: RunGate,
        identity: IdentityProvider,
        provisioner: ResourceProvisioner,
        probe: ConnectionProbe,
        verifier: StateVerifier,
        command_workflow: WorkflowLifecycle,
        event_workflow: WorkflowLifecycle,
        value_source: Optional[Callable[[], int]] = None,
    ):
        self._config = config
        self._recorder = recorder
        self._gate = gate
        self._identity = identity
        self._provisioner = provisioner
        self._probe = probe
        self._verifier = verifier
        self._command_workflow = command_workflow
        self._event_workflow = event_workflow
        self._value_source = value_source or (lambda: random.randint(0, SENSOR_VALUE_MAX))
        self._runs: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._gate.is_running

    def try_run(self) -> bool:
        """
        Start a run in the background unless one is already in flight.

        Never waits for the run. Must be called from the event loop.

        Returns:
            True if a new run was scheduled.
        """
        loop = asyncio.get_running_loop()
        already_running, release = self._gate.try_acquire()
        if already_running:
            logger.info("Canary run already in progress, trigger dropped")
            return False
        task = loop.create_task(self._run(release))
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return True

    async def run_once(self) -> bool:
        """Like ``try_run`` but waits for the run to finish."""
        already_running, release = self._gate.try_acquire()
        if already_running:
            logger.info("Canary run already in progress, trigger dropped")
            return False
        await self._run(release)
        return True

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Give an active run a bounded chance to finish its teardown."""
        if not self._runs:
            return
        logger.info("Waiting for active canary run", timeout=timeout)
        _, pending = await asyncio.wait(set(self._runs), timeout=timeout)
        if pending:
            logger.warning("Canary run still active at shutdown", pending=len(pending))

    async def _run(self, release: Callable[[], None]) -> None:
        logger.info("Canary run started")
        try:
            try:
                session = await self._identity.acquire()
            except IdentityError as e:
                logger.error("Canary run aborted, no session", error=str(e))
                return
            try:
                await self._run_legs(session)
            finally:
                await self._identity.release(session)
        finally:
            release()
            logger.info("Canary run finished")

    async def _run_legs(self, session: Session) -> None:
        token = session.authorization
        try:
            device = await self._provisioner.ensure_device(token)
        except PlatformError as e:
            logger.error("Canary run aborted, unable to ensure device", error=str(e))
            return

        signals = RunSignals()
        legs = {
            "connectivity": self._connectivity_leg(token, device, signals),
            "command_workflow": self._command_workflow_leg(token, device, signals),
            "event_workflow": self._event_workflow_leg(token, device, signals),
            "device_metadata": self._device_metadata_leg(token, device),
        }
        results = await asyncio.gather(*legs.values(), return_exceptions=True)
        for name, result in zip(legs, results):
            if isinstance(result, BaseException):
                logger.error("Canary leg crashed", leg=name, error=repr(result), exc_info=result)
                self._recorder.increment("uncategorized_err")

    async def _connectivity_leg(self, token: str, device: Device, signals: RunSignals) -> None:
        timeout = self._config.LEG_SYNC_TIMEOUT_SECONDS
        probe_session: Optional[ProbeSession] = None
        try:
            await self._verifier.check_connection_state(token, device, expected=False)

            hub = await self._provisioner.ensure_hub(token, device)
            probe_session = await self._probe.connect(hub.id)

            try:
                await self._probe.subscribe(probe_session, device, sink=self._command_workflow)
            except TransportError as e:
                logger.error("Command subscription failed", device_id=device.id, error=str(e))
            # Marked on failure too; the command workflow then records zero delivered commands.
            signals.subscribed.mark(True)

            if not await signals.event_workflow_deployed.wait(timeout):
                logger.warning("Publishing without event workflow deployment")

            value1, value2 = self._value_source(), self._value_source()
            try:
                await self._probe.publish(probe_session, device, value1, value2)
                signals.published.mark(True)
            except TransportError as e:
                logger.error("Sensor publish failed", device_id=device.id, error=str(e))
                signals.published.mark(False)

            await self._verifier.wait_for_convergence()
            await self._verifier.check_connection_state(token, device, expected=True)
            await self._verifier.check_device_values(token, device, value1, value2)

            await signals.command_workflow_finished.wait(timeout)
        except (PlatformError, TransportError) as e:
            logger.error("Connectivity leg aborted", device_id=device.id, error=str(e))
        finally:
            signals.subscribed.mark(False)
            signals.published.mark(False)
            if probe_session is not None:
                await self._probe.disconnect(probe_session)
                await self._verifier.wait_for_convergence()
                await self._verifier.check_connection_state(token, device, expected=False)

    async def _command_workflow_leg(self, token: str, device: Device, signals: RunSignals) -> None:
        try:
            if not await signals.subscribed.wait(self._config.LEG_SYNC_TIMEOUT_SECONDS):
                logger.warning("Skipping command workflow, canary hub is not connected")
                return
            await self._command_workflow.run(token, device)
        finally:
            signals.command_workflow_finished.mark(True)

    async def _event_workflow_leg(self, token: str, device: Device, signals: RunSignals) -> None:
        timeout = self._config.LEG_SYNC_TIMEOUT_SECONDS

        async def await_publish() -> bool:
            return await signals.published.wait(timeout)

        try:
            await self._event_workflow.run(
                token,
                device,
                on_deployed=signals.event_workflow_deployed.mark,
                await_trigger=await_publish,
            )
        finally:
            signals.event_workflow_deployed.mark(False)

    async def _device_metadata_leg(self, token: str, device: Device) -> None:
        try:
            expected_name = await self._provisioner.rename_device(token, device.id)
        except PlatformError as e:
            logger.error("Device rename failed", device_id=device.id, error=str(e))
            return
        await self._verifier.check_metadata_propagation(token, device.id, expected_name)
