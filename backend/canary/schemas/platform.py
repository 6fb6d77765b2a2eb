from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

CANARY_MARKER_KEY = "used-for-canary"
CANARY_MARKER_VALUE = "true"
CANARY_MARKER_ORIGIN = "canary"

CMD_SERVICE_LOCAL_ID = "cmd"
SENSOR_SERVICE_LOCAL_ID = "sensor"


class Attribute(BaseModel):
    key: str
    value: str = ""
    origin: str = ""


def canary_marker() -> Attribute:
    return Attribute(key=CANARY_MARKER_KEY, value=CANARY_MARKER_VALUE, origin=CANARY_MARKER_ORIGIN)


# Device repository / device manager resources. Unknown fields are kept so a
# read-modify-write (device rename) does not drop platform-owned data.
class ServiceDescriptor(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    local_id: str = ""
    name: str = ""


class DeviceType(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    name: str = ""
    services: List[ServiceDescriptor] = Field(default_factory=list)
    attributes: List[Attribute] = Field(default_factory=list)

    def service_id(self, local_id: str) -> Optional[str]:
        for service in self.services:
            if service.local_id == local_id:
                return service.id or None
        return None


class Device(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    local_id: str = ""
    name: str = ""
    device_type_id: str = ""
    attributes: List[Attribute] = Field(default_factory=list)


class Hub(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    name: str = ""
    device_ids: List[str] = Field(default_factory=list)
    device_local_ids: List[str] = Field(default_factory=list)

    def references(self, device: Device) -> bool:
        return device.id in self.device_ids and device.local_id in self.device_local_ids


class PermissionDevice(BaseModel):
    """Device as projected by the permission search service."""

    model_config = ConfigDict(extra="allow")

    id: str = ""
    name: str = ""
    local_id: str = ""
    device_type_id: str = ""
    annotations: Dict[str, Any] = Field(default_factory=dict)

    @property
    def connected(self) -> Optional[bool]:
        value = self.annotations.get("connected")
        return value if isinstance(value, bool) else None


class LastValueRequest(BaseModel):
    deviceId: str
    serviceId: str
    columnName: str


class LastValue(BaseModel):
    time: Optional[str] = None
    value: Any = None


# Identity provider
class OpenIdToken(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str = ""
    expires_in: float = 0
    refresh_expires_in: float = 0
    token_type: str = ""


# Process deployment / engine wrapper
class DeploymentRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""


class ProcessInstance(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    processDefinitionName: str = ""
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    durationInMillis: Optional[int] = None
    state: str = ""


class NamedRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str = ""


class SelectionOption(BaseModel):
    model_config = ConfigDict(extra="ignore")

    device: Optional[NamedRef] = None
    services: List[NamedRef] = Field(default_factory=list)


class Selection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    selection_options: List[SelectionOption] = Field(default_factory=list)


class SelectableElement(BaseModel):
    model_config = ConfigDict(extra="ignore")

    selection: Selection = Field(default_factory=Selection)


class PreparedElement(BaseModel):
    model_config = ConfigDict(extra="ignore")

    bpmn_id: str = ""
    task: Optional[SelectableElement] = None
    conditional_event: Optional[SelectableElement] = None


class PreparedDeployment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str = ""
    elements: List[PreparedElement] = Field(default_factory=list)


# Connector envelopes
class CommandEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    correlation_id: str = ""
    payload: Dict[str, str] = Field(default_factory=dict)
    timestamp: int = 0
    completion_strategy: str = ""


class ResponseEnvelope(BaseModel):
    correlation_id: str
    payload: Dict[str, str] = Field(default_factory=dict)
