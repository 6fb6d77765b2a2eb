"""
Idempotent ensure-or-create provisioning of the canary's device type, device
and hub.

Each canonical resource is found by the ``used-for-canary`` marker attribute
(the hub by its configured name) and reused; it is only created when the
lookup returns nothing. Every write is followed by one convergence wait
because the read models that later verify it are eventually consistent.
No call is retried: the next run repairs whatever this one left behind.
"""
import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from canary.core.config import Settings
from canary.schemas.platform import (
    CMD_SERVICE_LOCAL_ID,
    SENSOR_SERVICE_LOCAL_ID,
    Device,
    DeviceType,
    Hub,
    canary_marker,
)
from canary.services.directory import DeviceManagerClient, DeviceRepositoryClient, PermissionSearchClient

logger = structlog.get_logger()

STRUCTURE_TYPE = "https://schema.org/StructuredValue"
COMMAND_VALUE_PATH = "commands.valueCommand.value"


def _content_variable(path: str, leaf: Dict[str, Any]) -> Dict[str, Any]:
    """Nest ``leaf`` under structure variables named by the dotted ``path``."""
    names = path.split(".")
    variable = {"name": names[-1], **leaf}
    for name in reversed(names[:-1]):
        variable = {"name": name, "type": STRUCTURE_TYPE, "sub_content_variables": [variable]}
    return variable


def _content(variable: Dict[str, Any], serialization: str, segment_id: str) -> Dict[str, Any]:
    return {
        "content_variable": variable,
        "serialization": serialization,
        "protocol_segment_id": segment_id,
    }


def build_device_type(config: Settings) -> Dict[str, Any]:
    """Device type document with one command service and one sensor service."""
    command_inputs = [
        _content(
            _content_variable(
                COMMAND_VALUE_PATH,
                {
                    "type": config.CANARY_CMD_VALUE_TYPE,
                    "characteristic_id": config.CANARY_CMD_CHARACTERISTIC_ID,
                    "function_id": config.CANARY_CMD_FUNCTION_ID,
                },
            ),
            "xml",
            config.CANARY_PROTOCOL_SEGMENT_ID,
        ),
        _content(
            {
                "name": "state",
                "type": config.CANARY_CMD_VALUE_TYPE_2,
                "characteristic_id": config.CANARY_CMD_CHARACTERISTIC_ID_2,
                "function_id": config.CANARY_CMD_FUNCTION_ID_2,
                "value": config.CANARY_CMD_CHARACTERISTIC_ID_2_DEFAULT_VALUE,
            },
            "plain-text",
            config.CANARY_PROTOCOL_SEGMENT_ID_2,
        ),
    ]
    sensor_outputs = [
        _content(
            _content_variable(
                config.CANARY_SENSOR_COLUMN,
                {
                    "type": config.CANARY_SENSOR_VALUE_TYPE,
                    "characteristic_id": config.CANARY_SENSOR_CHARACTERISTIC_ID,
                    "function_id": config.CANARY_SENSOR_FUNCTION_ID,
                    "aspect_id": config.CANARY_SENSOR_ASPECT_ID,
                },
            ),
            config.CANARY_SENSOR_SERIALIZATION,
            config.CANARY_PROTOCOL_SEGMENT_ID,
        ),
        _content(
            _content_variable(
                config.CANARY_SENSOR_COLUMN_2,
                {
                    "type": config.CANARY_SENSOR_VALUE_TYPE_2,
                    "characteristic_id": config.CANARY_SENSOR_CHARACTERISTIC_ID_2,
                    "function_id": config.CANARY_SENSOR_FUNCTION_ID_2,
                    "aspect_id": config.CANARY_SENSOR_ASPECT_ID_2,
                },
            ),
            config.CANARY_SENSOR_SERIALIZATION_2,
            config.CANARY_PROTOCOL_SEGMENT_ID_2,
        ),
    ]
    return {
        "name": "canary-device-type",
        "description": "used by the snowflake canary",
        "device_class_id": config.CANARY_DEVICE_CLASS_ID,
        "attributes": [canary_marker().model_dump()],
        "services": [
            {
                "local_id": CMD_SERVICE_LOCAL_ID,
                "name": "cmd",
                "description": "canary command service, receives commands from the command workflow",
                "interaction": "request",
                "protocol_id": config.CANARY_PROTOCOL_ID,
                "inputs": command_inputs,
                "outputs": [],
            },
            {
                "local_id": SENSOR_SERVICE_LOCAL_ID,
                "name": "sensor",
                "description": "canary sensor service, carries the published readings",
                "interaction": "event",
                "protocol_id": config.CANARY_PROTOCOL_ID,
                "inputs": [],
                "outputs": sensor_outputs,
            },
        ],
    }


def canary_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResourceProvisioner:
    def __init__(
        self,
        config: Settings,
        device_manager: DeviceManagerClient,
        device_repository: DeviceRepositoryClient,
        permission_search: PermissionSearchClient,
    ):
        self._config = config
        self._device_manager = device_manager
        self._device_repository = device_repository
        self._permission_search = permission_search

    async def wait_for_convergence(self) -> None:
        await asyncio.sleep(self._config.GUARANTEE_CHANGE_AFTER)

    async def ensure_device_type(self, token: str) -> DeviceType:
        found = await self._device_repository.list_device_types(token, limit=1)
        if found:
            return found[0]

        logger.info("Creating canary device type")
        device_type = await self._device_manager.create_device_type(token, build_device_type(self._config))
        await self.wait_for_convergence()
        return device_type

    async def ensure_device(self, token: str) -> Device:
        found = await self._device_repository.list_devices(token, limit=1)
        if found:
            return found[0]

        device_type = await self.ensure_device_type(token)
        device = Device(
            local_id=f"canary_{uuid.uuid4()}",
            name=f"canary-{canary_timestamp()}",
            device_type_id=device_type.id,
            attributes=[canary_marker()],
        )
        logger.info("Creating canary device", local_id=device.local_id, device_type_id=device_type.id)
        created = await self._device_manager.create_device(token, device)
        await self.wait_for_convergence()
        return created

    async def ensure_hub(self, token: str, device: Device) -> Hub:
        """
        Return the canonical hub, making sure it lists ``device``.

        An existing hub keeps its other members; the device is added when
        either its id or its local id is missing.
        """
        found = await self._permission_search.find_hubs_by_name(token, self._config.CANARY_HUB_NAME, limit=1)
        if found:
            hub = found[0]
            if hub.references(device):
                return hub
            updated = Hub(
                id=hub.id,
                name=self._config.CANARY_HUB_NAME,
                device_ids=_with_member(hub.device_ids, device.id),
                device_local_ids=_with_member(hub.device_local_ids, device.local_id),
            )
            logger.info("Adding canary device to hub", hub_id=hub.id, device_id=device.id)
            await self._device_manager.update_hub(token, updated)
            await self.wait_for_convergence()
            return updated

        hub = Hub(
            name=self._config.CANARY_HUB_NAME,
            device_ids=[device.id],
            device_local_ids=[device.local_id],
        )
        logger.info("Creating canary hub", name=hub.name)
        created = await self._device_manager.create_hub(token, hub)
        await self.wait_for_convergence()
        return created

    async def rename_device(self, token: str, device_id: str) -> str:
        """Give the device a fresh name through the device manager and return it."""
        device = await self._device_repository.read_device(token, device_id)
        expected_name = f"snowflake-canary-{canary_timestamp()}"
        device.name = expected_name
        await self._device_manager.update_device(token, device)
        await self.wait_for_convergence()
        return expected_name


def _with_member(members: Optional[List[str]], member: str) -> List[str]:
    result = list(members or [])
    if member not in result:
        result.append(member)
    return result
