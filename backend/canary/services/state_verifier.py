"""
Eventual-consistency assertions against the platform's read models.

The verifier does not poll. Callers wait one convergence window, then every
check performs exactly one read. A failed check is recorded on its counter
and logged with the expected and observed values; it never raises.
"""
import asyncio
import json
from typing import Any

import structlog

from canary.core.config import Settings
from canary.core.metrics import OutcomeRecorder
from canary.schemas.platform import SENSOR_SERVICE_LOCAL_ID, Device, LastValueRequest
from canary.services.directory import DeviceDataClient, DeviceRepositoryClient, PermissionSearchClient
from canary.services.exceptions import PlatformError, PlatformResponseError

logger = structlog.get_logger()


def json_normalize(value: Any) -> Any:
    """Bring a value into the shape the platform returns it in after a JSON round trip."""
    return json.loads(json.dumps(value))


def json_equal(left: Any, right: Any) -> bool:
    """Compare decoded JSON values without treating booleans as the numbers 0 and 1."""
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(json_equal(left[key], right[key]) for key in left)
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(json_equal(a, b) for a, b in zip(left, right))
    return left == right


class StateVerifier:
    def __init__(
        self,
        config: Settings,
        recorder: OutcomeRecorder,
        device_repository: DeviceRepositoryClient,
        permission_search: PermissionSearchClient,
        device_data: DeviceDataClient,
    ):
        self._config = config
        self._recorder = recorder
        self._device_repository = device_repository
        self._permission_search = permission_search
        self._device_data = device_data

    async def wait_for_convergence(self) -> None:
        await asyncio.sleep(self._config.GUARANTEE_CHANGE_AFTER)

    async def check_connection_state(self, token: str, device: Device, expected: bool) -> bool:
        try:
            result = await self._permission_search.get_devices(token, [device.id])
        except PlatformResponseError as e:
            self._uncategorized("Unexpected connection state response", error=str(e))
            return False
        except PlatformError as e:
            logger.error("Connection state check failed", device_id=device.id, error=str(e))
            return False

        if not result:
            self._uncategorized("Device missing from permission search", device_id=device.id)
            return False

        observed = result[0].connected
        if observed is not expected:
            logger.error(
                "Unexpected permission search device state",
                device_id=device.id,
                expected=expected,
                observed=result[0].annotations.get("connected"),
            )
            if expected:
                self._recorder.increment("unexpected_permissions_device_offline_state_err")
            else:
                self._recorder.increment("unexpected_permissions_device_online_state_err")
            return False
        return True

    async def check_device_values(self, token: str, device: Device, value1: int, value2: int) -> bool:
        try:
            device_type = await self._device_repository.read_device_type(token, device.device_type_id)
        except PlatformError as e:
            logger.error("Unable to read canary device type", device_type_id=device.device_type_id, error=str(e))
            return False

        service_id = device_type.service_id(SENSOR_SERVICE_LOCAL_ID)
        if not service_id:
            self._uncategorized("Canary device type has no sensor service", device_type_id=device_type.id)
            return False

        requests = [
            LastValueRequest(deviceId=device.id, serviceId=service_id, columnName=self._config.CANARY_SENSOR_COLUMN),
            LastValueRequest(deviceId=device.id, serviceId=service_id, columnName=self._config.CANARY_SENSOR_COLUMN_2),
        ]
        try:
            last_values = await self._device_data.last_values(token, requests)
        except PlatformResponseError as e:
            self._uncategorized("Unexpected last value response", device_id=device.id, error=str(e))
            return False
        except PlatformError as e:
            logger.error("Last value query failed", device_id=device.id, error=str(e))
            last_values = []

        if len(last_values) != 2:
            logger.error("Unexpected device data result count", expected=2, observed=len(last_values))
            self._recorder.increment("unexpected_device_data_err")
            return False

        ok = True
        for index, (last_value, published) in enumerate(zip(last_values, (value1, value2))):
            expected = json_normalize(published)
            if not json_equal(last_value.value, expected):
                logger.error(
                    "Unexpected device data",
                    index=index,
                    column=requests[index].columnName,
                    expected=expected,
                    observed=last_value.value,
                )
                self._recorder.increment("unexpected_device_data_err")
                ok = False
        return ok

    async def check_metadata_propagation(self, token: str, device_id: str, expected_name: str) -> bool:
        """Both the device repository and permission search must show the new name."""
        ok = True
        try:
            repo_device = await self._device_repository.read_device(token, device_id)
        except PlatformError as e:
            logger.error("Unable to read renamed device", device_id=device_id, error=str(e))
            ok = False
        else:
            if repo_device.name != expected_name:
                logger.error(
                    "Device repository metadata not updated",
                    device_id=device_id,
                    expected=expected_name,
                    observed=repo_device.name,
                )
                self._recorder.increment("unexpected_device_repo_metadata_err")
                ok = False

        try:
            projected = await self._permission_search.get_devices(token, [device_id])
        except PlatformError as e:
            logger.error("Unable to query renamed device", device_id=device_id, error=str(e))
            return False
        observed_name = projected[0].name if projected else None
        if observed_name != expected_name:
            logger.error(
                "Permission search metadata not updated",
                device_id=device_id,
                expected=expected_name,
                observed=observed_name,
            )
            self._recorder.increment("unexpected_permissions_metadata_err")
            ok = False
        return ok

    def _uncategorized(self, message: str, **context: Any) -> None:
        logger.error(message, stack_info=True, **context)
        self._recorder.increment("uncategorized_err")
