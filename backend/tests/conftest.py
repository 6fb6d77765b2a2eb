import itertools
import json
import os
import re
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, unquote

import httpx
import paho.mqtt.client as mqtt
import pytest
import pytest_asyncio

# Add the backend directory to the Python path
backend_dir = Path(__file__).parent.parent
sys.path.append(str(backend_dir))

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_LEVEL", "warning")
os.environ.setdefault("GUARANTEE_CHANGE_AFTER", "0")

from canary.core.config import Settings
from canary.core.engine_provider import build_orchestrator
from canary.core.metrics import OutcomeRecorder
from canary.schemas.platform import CANARY_MARKER_KEY, Device
from canary.services.directory import (
    DeviceDataClient,
    DeviceManagerClient,
    DeviceRepositoryClient,
    PermissionSearchClient,
)
from canary.services.platform_client import PlatformClient

COMMAND_PAYLOAD = {"data": '<commands><valueCommand value="42"/></commands>', "metadata": "on"}
_XML_VALUE = re.compile(r'value="(-?\d+)"')


class FakeReasonCode:
    def __init__(self, failure: bool = False, text: str = "Success"):
        self.is_failure = failure
        self._text = text

    def __str__(self) -> str:
        return self._text


class FakeMessage:
    def __init__(self, topic: str, payload: bytes):
        self.topic = topic
        self.payload = payload


class FakeMessageInfo:
    def __init__(self, rc: int = mqtt.MQTT_ERR_SUCCESS, published: bool = True):
        self.rc = rc
        self._published = published

    def wait_for_publish(self, timeout: Optional[float] = None) -> None:
        return None

    def is_published(self) -> bool:
        return self._published


class FakeMqttClient:
    """Just enough of paho's client surface, delivering synchronously through a FakeBroker."""

    def __init__(self, broker: "FakeBroker", client_id: str):
        self.broker = broker
        self.client_id = client_id
        self.on_connect = None
        self.on_disconnect = None
        self.on_subscribe = None
        self.credentials: Optional[Tuple[str, str]] = None
        self.address: Optional[Tuple[str, int]] = None
        self.tls = False
        self.connected = False
        self.loop_running = False
        self.subscriptions: List[Tuple[str, int]] = []
        self._callbacks: List[Tuple[str, Callable]] = []
        self._mids = itertools.count(1)

    def username_pw_set(self, username: str, password: str) -> None:
        self.credentials = (username, password)

    def reconnect_delay_set(self, min_delay: int = 1, max_delay: int = 120) -> None:
        return None

    def tls_set(self) -> None:
        self.tls = True

    def connect_async(self, host: str, port: int, keepalive: int = 60) -> None:
        self.address = (host, port)

    def loop_start(self) -> None:
        self.loop_running = True
        if self.broker.refuse_connect:
            self.on_connect(self, None, {}, FakeReasonCode(True, "Not authorized"), None)
            return
        self.connected = True
        self.broker.clients.append(self)
        self.on_connect(self, None, {}, FakeReasonCode(), None)

    def loop_stop(self) -> None:
        self.loop_running = False

    def disconnect(self) -> None:
        if self.connected:
            self.connected = False
            self.broker.clients.remove(self)

    def message_callback_add(self, sub: str, callback: Callable) -> None:
        self._callbacks.append((sub, callback))

    def subscribe(self, topic: str, qos: int = 0):
        mid = next(self._mids)
        if self.broker.drop_subacks:
            return mqtt.MQTT_ERR_SUCCESS, mid
        self.subscriptions.append((topic, qos))
        self.on_subscribe(self, None, mid, [FakeReasonCode()], None)
        return mqtt.MQTT_ERR_SUCCESS, mid

    def publish(self, topic: str, payload: bytes, qos: int = 0) -> FakeMessageInfo:
        self.broker.received(topic, payload, qos)
        return FakeMessageInfo(published=not self.broker.drop_pubacks)

    def dispatch(self, topic: str, payload: bytes) -> None:
        subscribed = {sub for sub, _ in self.subscriptions}
        for sub, callback in list(self._callbacks):
            if sub in subscribed and mqtt.topic_matches_sub(sub, topic):
                callback(self, None, FakeMessage(topic, payload))


class FakeBroker:
    def __init__(self):
        self.clients: List[FakeMqttClient] = []
        self.created: List[FakeMqttClient] = []
        self.published: List[Tuple[str, bytes, int]] = []
        self.listeners: List[Callable[[str, bytes], None]] = []
        self.refuse_connect = False
        self.drop_subacks = False
        self.drop_pubacks = False
        self._lock = threading.Lock()

    def client_factory(self, client_id: str) -> FakeMqttClient:
        client = FakeMqttClient(self, client_id)
        self.created.append(client)
        return client

    def received(self, topic: str, payload: bytes, qos: int) -> None:
        with self._lock:
            self.published.append((topic, payload, qos))
        for listener in self.listeners:
            listener(topic, payload)

    def deliver(self, topic: str, payload: bytes) -> None:
        for client in list(self.clients):
            client.dispatch(topic, payload)

    def published_on(self, prefix: str) -> List[Tuple[str, bytes, int]]:
        with self._lock:
            return [entry for entry in self.published if entry[0].startswith(prefix)]


class FakePlatform:
    """
    In-memory stand-in for the platform services behind ``httpx.MockTransport``.

    Services are told apart by host (auth.test, manager.test, ...). Failures
    can be injected per method and ``host + path`` prefix.
    """

    def __init__(self, broker: Optional[FakeBroker] = None):
        self.broker = broker
        self.calls: List[Tuple[str, str, str]] = []
        self.device_types: Dict[str, dict] = {}
        self.devices: Dict[str, dict] = {}
        self.projected_names: Dict[str, str] = {}
        self.hubs: Dict[str, dict] = {}
        self.deployments: Dict[str, dict] = {}
        self.instances: List[dict] = []
        self.last_values: Optional[List[dict]] = None
        self.failures: Dict[Tuple[str, str], int] = {}
        self.auth_status = 200
        self.login_forms: List[Dict[str, str]] = []
        self.logout_forms: List[Dict[str, str]] = []
        self.connected_override: Optional[bool] = None
        self.freeze_projection = False
        self.instance_state = "COMPLETED"
        self.command_payload = dict(COMMAND_PAYLOAD)
        self._ids = itertools.count(1)
        if broker is not None:
            broker.listeners.append(self._on_mqtt_message)

    # Test helpers

    def fail(self, method: str, prefix: str, status: int = 500) -> None:
        self.failures[(method, prefix)] = status

    def calls_to(self, method: str, prefix: str) -> List[Tuple[str, str, str]]:
        return [call for call in self.calls if call[0] == method and f"{call[1]}{call[2]}".startswith(prefix)]

    def deployment_names(self) -> List[str]:
        return [deployment["name"] for deployment in self.deployments.values()]

    def seed_canary_device(self) -> Device:
        device_type = self._store_device_type(
            {
                "name": "canary-device-type",
                "attributes": [{"key": CANARY_MARKER_KEY, "value": "true", "origin": "canary"}],
                "services": [
                    {"local_id": "cmd", "name": "cmd"},
                    {"local_id": "sensor", "name": "sensor"},
                ],
            }
        )
        device = self._store_device(
            {
                "local_id": "canary_seeded",
                "name": "canary-seeded",
                "device_type_id": device_type["id"],
                "attributes": [{"key": CANARY_MARKER_KEY, "value": "true", "origin": "canary"}],
            }
        )
        return Device.model_validate(device)

    def add_deployment(self, name: str, deployment_id: Optional[str] = None) -> str:
        deployment_id = deployment_id or self._next_id("deployment")
        self.deployments[deployment_id] = {"id": deployment_id, "name": name, "body": {}}
        return deployment_id

    @property
    def connected(self) -> bool:
        if self.connected_override is not None:
            return self.connected_override
        return bool(self.broker and self.broker.clients)

    # Transport

    def handle(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        path = request.url.path
        method = request.method
        self.calls.append((method, host, path))
        for (fail_method, prefix), status in self.failures.items():
            if fail_method == method and f"{host}{path}".startswith(prefix):
                return httpx.Response(status, text="injected failure")
        handler = getattr(self, f"_{host.split('.')[0]}")
        return handler(request, method, path)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _store_device_type(self, body: dict) -> dict:
        body["id"] = body.get("id") or self._next_id("device-type")
        for service in body.get("services", []):
            service["id"] = f"urn:service:{service['local_id']}"
        self.device_types[body["id"]] = body
        return body

    def _store_device(self, body: dict) -> dict:
        body["id"] = body.get("id") or self._next_id("device")
        self.devices[body["id"]] = body
        if not self.freeze_projection or body["id"] not in self.projected_names:
            self.projected_names[body["id"]] = body["name"]
        return body

    def _auth(self, request: httpx.Request, method: str, path: str) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        if path.endswith("/token"):
            self.login_forms.append(form)
            if self.auth_status != 200:
                return httpx.Response(self.auth_status, json={"error": "invalid_grant"})
            return httpx.Response(
                200,
                json={
                    "access_token": "access-token",
                    "refresh_token": "refresh-token",
                    "expires_in": 300,
                    "token_type": "Bearer",
                },
            )
        if path.endswith("/logout"):
            self.logout_forms.append(form)
            return httpx.Response(204)
        return httpx.Response(404)

    def _repo(self, request: httpx.Request, method: str, path: str) -> httpx.Response:
        params = request.url.params
        if path in ("/v3/device-types", "/v3/devices"):
            resources = self.device_types if path.endswith("device-types") else self.devices
            key = params.get("attr-keys")
            matches = [r for r in resources.values() if any(a["key"] == key for a in r.get("attributes", []))]
            return httpx.Response(200, json=matches[: int(params.get("limit", len(matches)))])
        resource_kind, resource_id = path.strip("/").split("/", 1)
        resources = self.device_types if resource_kind == "device-types" else self.devices
        resource = resources.get(unquote(resource_id))
        if resource is None:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, json=resource)

    def _manager(self, request: httpx.Request, method: str, path: str) -> httpx.Response:
        body = json.loads(request.content)
        if method == "POST" and path == "/device-types":
            return httpx.Response(200, json=self._store_device_type(body))
        if method == "POST" and path == "/devices":
            return httpx.Response(200, json=self._store_device(body))
        if method == "POST" and path == "/hubs":
            body["id"] = self._next_id("hub")
            self.hubs[body["id"]] = body
            return httpx.Response(200, json=body)
        if method == "PUT" and path.startswith("/devices/"):
            return httpx.Response(200, json=self._store_device(body))
        if method == "PUT" and path.startswith("/hubs/"):
            self.hubs[body["id"]] = body
            return httpx.Response(200, json=body)
        return httpx.Response(404)

    def _permissions(self, request: httpx.Request, method: str, path: str) -> httpx.Response:
        body = json.loads(request.content)
        if body["resource"] == "devices":
            result = []
            for device_id in body["list_ids"]["ids"]:
                device = self.devices.get(device_id)
                if device is None:
                    continue
                result.append(
                    {
                        "id": device_id,
                        "name": self.projected_names.get(device_id, device["name"]),
                        "local_id": device["local_id"],
                        "device_type_id": device["device_type_id"],
                        "annotations": {"connected": self.connected},
                    }
                )
            return httpx.Response(200, json=result)
        if body["resource"] == "hubs":
            name = body["find"]["filter"]["condition"]["value"]
            hubs = [hub for hub in self.hubs.values() if hub["name"] == name]
            return httpx.Response(200, json=hubs[: body["find"]["limit"]])
        return httpx.Response(400)

    def _data(self, request: httpx.Request, method: str, path: str) -> httpx.Response:
        return httpx.Response(200, json=self.last_values or [])

    def _deployment(self, request: httpx.Request, method: str, path: str) -> httpx.Response:
        if method == "POST" and path == "/v3/deployments":
            assert request.url.params.get("source") == "sepl"
            body = json.loads(request.content)
            deployment_id = self._next_id("deployment")
            self.deployments[deployment_id] = {"id": deployment_id, "name": body["name"], "body": body}
            return httpx.Response(200, json={"id": deployment_id, "name": body["name"]})
        if method == "DELETE" and path.startswith("/v3/deployments/"):
            deployment_id = unquote(path.rsplit("/", 1)[1])
            self.deployments.pop(deployment_id, None)
            self.instances = [i for i in self.instances if i["deploymentId"] != deployment_id]
            return httpx.Response(200)
        if method == "POST" and path == "/v3/prepared-deployments":
            options = []
            for device in self.devices.values():
                device_type = self.device_types.get(device["device_type_id"], {})
                options.append(
                    {
                        "device": {"id": device["id"], "name": device["name"]},
                        "services": [{"id": s["id"], "name": s["name"]} for s in device_type.get("services", [])],
                    }
                )
            selectable = {"selection": {"selection_options": options}}
            return httpx.Response(
                200,
                json={
                    "id": "",
                    "name": "prepared",
                    "elements": [
                        {"bpmn_id": "Task_0yuqb45", "task": selectable},
                        {"bpmn_id": "StartEvent_1", "conditional_event": selectable},
                    ],
                },
            )
        return httpx.Response(404)

    def _engine(self, request: httpx.Request, method: str, path: str) -> httpx.Response:
        params = request.url.params
        if path == "/v2/deployments":
            refs = [{"id": d["id"], "name": d["name"]} for d in self.deployments.values()]
            offset = int(params.get("firstResult", 0))
            return httpx.Response(200, json=refs[offset : offset + int(params["maxResults"])])
        if path == "/v2/history/process-instances":
            return httpx.Response(200, json=self.instances[-int(params["maxResults"]) :])
        if path.startswith("/v2/deployments/") and path.endswith("/start"):
            deployment_id = unquote(path.split("/")[3])
            deployment = self.deployments.get(deployment_id)
            if deployment is None:
                return httpx.Response(404, text="unknown deployment")
            self._add_instance(deployment)
            self._send_command(deployment)
            return httpx.Response(200, json={})
        return httpx.Response(404)

    def _add_instance(self, deployment: dict) -> None:
        self.instances.append(
            {
                "id": self._next_id("instance"),
                "deploymentId": deployment["id"],
                "processDefinitionName": deployment["name"],
                "state": self.instance_state,
                "durationInMillis": 120,
            }
        )

    def _send_command(self, deployment: dict) -> None:
        if self.broker is None:
            return
        rendered = json.dumps(deployment["body"])
        for device in self.devices.values():
            if device["id"] not in rendered:
                continue
            device_type = self.device_types[device["device_type_id"]]
            service_id = next(s["id"] for s in device_type["services"] if s["local_id"] == "cmd")
            envelope = {
                "correlation_id": self._next_id("correlation"),
                "payload": self.command_payload,
                "timestamp": 1700000000,
                "completion_strategy": "pessimistic",
            }
            self.broker.deliver(f"command/{device['local_id']}/{service_id}", json.dumps(envelope).encode())

    def _on_mqtt_message(self, topic: str, payload: bytes) -> None:
        if not topic.startswith("event/"):
            return
        message = json.loads(payload)
        value1 = int(_XML_VALUE.search(message["data"]).group(1))
        value2 = int(message["metadata"])
        self.last_values = [
            {"time": "2024-01-01T00:00:00Z", "value": value1},
            {"time": "2024-01-01T00:00:00Z", "value": value2},
        ]
        for deployment in list(self.deployments.values()):
            if deployment["name"] == "canary_event_process":
                self._add_instance(deployment)


@pytest.fixture
def canary_settings() -> Settings:
    return Settings(
        APP_ENV="test",
        GUARANTEE_CHANGE_AFTER=0,
        HTTP_TIMEOUT_SECONDS=5,
        AUTH_TIMEOUT_SECONDS=5,
        MQTT_ACK_TIMEOUT_SECONDS=1,
        MQTT_DISCONNECT_LINGER_SECONDS=0.5,
        LEG_SYNC_TIMEOUT_SECONDS=5,
        AUTH_ENDPOINT="http://auth.test",
        AUTH_REALM="master",
        AUTH_CLIENT_ID="canary-client",
        AUTH_USERNAME="canary",
        AUTH_PASSWORD="secret",
        PERMISSION_SEARCH_URL="http://permissions.test",
        DEVICE_MANAGER_URL="http://manager.test",
        DEVICE_REPOSITORY_URL="http://repo.test",
        CONNECTOR_MQTT_BROKER_URL="tcp://broker.test:1883",
        LAST_VALUE_QUERY_URL="http://data.test/last-values",
        PROCESS_DEPLOYMENT_URL="http://deployment.test",
        PROCESS_ENGINE_WRAPPER_URL="http://engine.test",
        CANARY_PROTOCOL_SEGMENT_NAME="data",
        CANARY_PROTOCOL_SEGMENT_NAME_2="metadata",
        CANARY_HUB_NAME="canary-hub",
    )


@pytest.fixture
def recorder() -> OutcomeRecorder:
    return OutcomeRecorder()


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def platform(broker: FakeBroker) -> FakePlatform:
    return FakePlatform(broker)


@pytest_asyncio.fixture
async def platform_client(platform: FakePlatform):
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform.handle)) as http_client:
        yield PlatformClient(http_client, timeout_seconds=5)


@pytest.fixture
def directory(platform_client: PlatformClient, canary_settings: Settings, recorder: OutcomeRecorder):
    return {
        "device_manager": DeviceManagerClient(platform_client, canary_settings.DEVICE_MANAGER_URL, recorder),
        "device_repository": DeviceRepositoryClient(platform_client, canary_settings.DEVICE_REPOSITORY_URL, recorder),
        "permission_search": PermissionSearchClient(platform_client, canary_settings.PERMISSION_SEARCH_URL, recorder),
        "device_data": DeviceDataClient(platform_client, canary_settings.LAST_VALUE_QUERY_URL, recorder),
    }


@pytest_asyncio.fixture
async def orchestrator(platform: FakePlatform, broker: FakeBroker, canary_settings: Settings, recorder: OutcomeRecorder):
    values = iter([7, 3] * 10)
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform.handle)) as http_client:
        yield build_orchestrator(
            canary_settings,
            http_client,
            recorder,
            mqtt_client_factory=broker.client_factory,
            value_source=lambda: next(values),
        )
