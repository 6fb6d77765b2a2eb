"""
Clients for the platform's device directory.

The platform splits device metadata into a write side (device manager), a
read side (device repository), a search projection (permission search) that
also carries the ``connected`` annotation, and the last-value query over
device data. Every call is recorded on the matching operation metrics.
"""
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import structlog

from canary.core.metrics import OutcomeRecorder
from canary.schemas.platform import (
    CANARY_MARKER_KEY,
    Device,
    DeviceType,
    Hub,
    LastValue,
    LastValueRequest,
    PermissionDevice,
)
from canary.services.platform_client import PlatformClient, join_url, parse_as

logger = structlog.get_logger()


def _escape(resource_id: str) -> str:
    return quote(resource_id, safe="")


class DeviceManagerClient:
    """Write side: create and update device types, devices and hubs."""

    def __init__(self, client: PlatformClient, base_url: str, recorder: OutcomeRecorder):
        self._client = client
        self._base_url = base_url
        self._recorder = recorder

    async def _write(self, method: str, path: str, token: str, body: Dict[str, Any]) -> Any:
        with self._recorder.track("device_meta_update"):
            return await self._client.request_json(
                method, join_url(self._base_url, path), token=token, json_body=body
            )

    async def create_device_type(self, token: str, device_type: Dict[str, Any]) -> DeviceType:
        data = await self._write("POST", "/device-types?wait=true", token, device_type)
        return parse_as(DeviceType, data, source="device manager")

    async def create_device(self, token: str, device: Device) -> Device:
        data = await self._write("POST", "/devices?wait=true", token, device.model_dump(exclude={"id"}))
        return parse_as(Device, data, source="device manager")

    async def update_device(self, token: str, device: Device) -> Device:
        data = await self._write("PUT", f"/devices/{_escape(device.id)}", token, device.model_dump())
        return parse_as(Device, data, source="device manager")

    async def create_hub(self, token: str, hub: Hub) -> Hub:
        data = await self._write("POST", "/hubs", token, hub.model_dump(exclude={"id"}))
        return parse_as(Hub, data, source="device manager")

    async def update_hub(self, token: str, hub: Hub) -> Hub:
        data = await self._write("PUT", f"/hubs/{_escape(hub.id)}", token, hub.model_dump())
        return parse_as(Hub, data, source="device manager")


class DeviceRepositoryClient:
    """Read side: list by marker attribute and read by id."""

    def __init__(self, client: PlatformClient, base_url: str, recorder: OutcomeRecorder):
        self._client = client
        self._base_url = base_url
        self._recorder = recorder

    async def _read(self, path: str, token: str, params: Optional[Dict[str, Any]] = None) -> Any:
        with self._recorder.track("device_repo_request"):
            return await self._client.get_json(join_url(self._base_url, path), token=token, params=params)

    async def list_device_types(
        self,
        token: str,
        *,
        attribute_key: str = CANARY_MARKER_KEY,
        limit: int = 1,
        offset: int = 0,
        sort: str = "name.asc",
    ) -> List[DeviceType]:
        params = {"limit": limit, "offset": offset, "sort": sort, "attr-keys": attribute_key}
        data = await self._read("/v3/device-types", token, params)
        return parse_as(List[DeviceType], data, source="device repository")

    async def list_devices(
        self,
        token: str,
        *,
        attribute_key: str = CANARY_MARKER_KEY,
        limit: int = 1,
        offset: int = 0,
    ) -> List[Device]:
        params = {"limit": limit, "offset": offset, "attr-keys": attribute_key}
        data = await self._read("/v3/devices", token, params)
        return parse_as(List[Device], data, source="device repository")

    async def read_device_type(self, token: str, device_type_id: str) -> DeviceType:
        data = await self._read(f"/device-types/{_escape(device_type_id)}", token)
        return parse_as(DeviceType, data, source="device repository")

    async def read_device(self, token: str, device_id: str) -> Device:
        data = await self._read(f"/devices/{_escape(device_id)}", token)
        return parse_as(Device, data, source="device repository")


class PermissionSearchClient:
    """Search projection of devices and hubs, queried through ``/v3/query``."""

    def __init__(self, client: PlatformClient, base_url: str, recorder: OutcomeRecorder):
        self._client = client
        self._base_url = base_url
        self._recorder = recorder

    async def _query(self, token: str, message: Dict[str, Any]) -> Any:
        with self._recorder.track("permissions_request"):
            return await self._client.post_json(join_url(self._base_url, "/v3/query"), message, token=token)

    async def get_devices(self, token: str, device_ids: List[str]) -> List[PermissionDevice]:
        message = {
            "resource": "devices",
            "list_ids": {
                "limit": len(device_ids),
                "offset": 0,
                "rights": "r",
                "ids": device_ids,
            },
        }
        data = await self._query(token, message)
        return parse_as(List[PermissionDevice], data or [], source="permission search")

    async def find_hubs_by_name(self, token: str, name: str, limit: int = 1) -> List[Hub]:
        message = {
            "resource": "hubs",
            "find": {
                "limit": limit,
                "offset": 0,
                "rights": "w",
                "sort_by": "name",
                "filter": {
                    "condition": {
                        "feature": "features.name",
                        "operation": "==",
                        "value": name,
                    }
                },
            },
        }
        data = await self._query(token, message)
        return parse_as(List[Hub], data or [], source="permission search")


class DeviceDataClient:
    """Last-value query over stored device data."""

    def __init__(self, client: PlatformClient, url: str, recorder: OutcomeRecorder):
        self._client = client
        self._url = url
        self._recorder = recorder

    async def last_values(self, token: str, requests: List[LastValueRequest]) -> List[LastValue]:
        body = [request.model_dump() for request in requests]
        with self._recorder.track("device_data_request"):
            data = await self._client.post_json(self._url, body, token=token)
            return parse_as(List[LastValue], data or [], source="last value query")
