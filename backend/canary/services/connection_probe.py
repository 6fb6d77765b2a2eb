"""
MQTT side of the canary: act as the canary hub, answer commands and publish
one synthetic sensor reading.

paho runs its network loop on its own thread. Callbacks never touch asyncio
state directly: they count a delivered command synchronously and hand the
message to the event loop with ``call_soon_threadsafe``. Blocking waits for
acknowledgments run in ``asyncio.to_thread`` and are always bounded.
"""
import asyncio
import json
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, Set, Tuple
from urllib.parse import urlparse

import paho.mqtt.client as mqtt
import structlog
from pydantic import ValidationError

from canary.core.config import Settings
from canary.core.metrics import OutcomeRecorder
from canary.schemas.platform import CommandEnvelope, Device, ResponseEnvelope
from canary.services.exceptions import CanaryError, TransportError

logger = structlog.get_logger()

COMMAND_QOS = 2
PUBLISH_QOS = 2
DEFAULT_PORTS = {"tcp": 1883, "mqtt": 1883, "ssl": 8883, "mqtts": 8883, "tls": 8883}
TLS_SCHEMES = {"ssl", "mqtts", "tls"}


class CommandSink(Protocol):
    """Receiver of commands delivered to the canary device."""

    def record_delivery(self) -> None:
        ...

    def notify_command(self, topic: str, payload: bytes) -> None:
        ...


def default_client_factory(client_id: str) -> Any:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        clean_session=True,
    )


def parse_broker_url(url: str) -> Tuple[str, int, bool]:
    parsed = urlparse(url if "://" in url else f"tcp://{url}")
    scheme = (parsed.scheme or "tcp").lower()
    if scheme not in DEFAULT_PORTS:
        raise ValueError(f"unsupported broker scheme: {scheme}")
    host = parsed.hostname or "localhost"
    port = parsed.port or DEFAULT_PORTS[scheme]
    return host, port, scheme in TLS_SCHEMES


def command_topic(device: Device) -> str:
    return f"command/{device.local_id}/+"


def sensor_topic(device: Device) -> str:
    return f"event/{device.local_id}/sensor"


def response_topic(command_topic_name: str) -> str:
    return command_topic_name.replace("command/", "response/", 1)


def build_response(payload: bytes) -> ResponseEnvelope:
    """Echo the command's correlation id with every payload key mapped to ``""``."""
    request = CommandEnvelope.model_validate_json(payload)
    return ResponseEnvelope(
        correlation_id=request.correlation_id,
        payload={key: "" for key in request.payload},
    )


def build_sensor_message(config: Settings, value1: int, value2: int) -> bytes:
    xml_message = f'<measurements><measurement value="{value1}" /></measurements>'
    message = {
        config.CANARY_PROTOCOL_SEGMENT_NAME_2: str(value2),
        config.CANARY_PROTOCOL_SEGMENT_NAME: xml_message,
    }
    return json.dumps(message).encode("utf-8")


def _is_failure(reason_code: Any) -> bool:
    if hasattr(reason_code, "is_failure"):
        return bool(reason_code.is_failure)
    return bool(reason_code)


class _AckTracker:
    """
    Matches SUBACKs to subscribe message ids.

    The broker may acknowledge before ``subscribe()`` has returned the mid to
    the caller, so acks for unknown mids are remembered.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._waiting: Dict[int, threading.Event] = {}
        self._results: Dict[int, bool] = {}

    def acknowledge(self, mid: int, ok: bool) -> None:
        with self._lock:
            self._results[mid] = ok
            event = self._waiting.pop(mid, None)
        if event is not None:
            event.set()

    def wait(self, mid: int, timeout: float) -> Optional[bool]:
        with self._lock:
            if mid in self._results:
                return self._results.pop(mid)
            event = self._waiting.setdefault(mid, threading.Event())
        if not event.wait(timeout):
            with self._lock:
                self._waiting.pop(mid, None)
            return None
        with self._lock:
            return self._results.pop(mid, None)


@dataclass
class ProbeSession:
    """One MQTT connection acting as the canary hub."""

    hub_id: str
    client: Any
    loop: asyncio.AbstractEventLoop
    connected: threading.Event = field(default_factory=threading.Event)
    connect_error: Optional[str] = None
    acks: _AckTracker = field(default_factory=_AckTracker)
    inbox: "asyncio.Queue[Tuple[str, bytes]]" = field(default_factory=asyncio.Queue)
    worker: Optional[asyncio.Task] = None


class ConnectionProbe:
    def __init__(
        self,
        config: Settings,
        recorder: OutcomeRecorder,
        client_factory: Callable[[str], Any] = default_client_factory,
    ):
        self._config = config
        self._recorder = recorder
        self._client_factory = client_factory
        self._workers: Set[asyncio.Task] = set()

    async def connect(self, hub_id: str) -> ProbeSession:
        """
        Open a clean session identified by the hub id and wait for CONNACK.

        Raises:
            TransportError: the broker refused the connection or did not
                answer within ``MQTT_ACK_TIMEOUT_SECONDS``.
        """
        host, port, use_tls = parse_broker_url(self._config.CONNECTOR_MQTT_BROKER_URL)
        client = self._client_factory(hub_id)
        session = ProbeSession(hub_id=hub_id, client=client, loop=asyncio.get_running_loop())

        def on_connect(_client, _userdata, _flags, reason_code, _properties=None):
            if _is_failure(reason_code):
                session.connect_error = str(reason_code)
                logger.warning("MQTT connect refused", hub_id=hub_id, reason=str(reason_code))
            else:
                session.connect_error = None
                logger.debug("MQTT connected", hub_id=hub_id)
            session.connected.set()

        def on_disconnect(_client, _userdata, _flags, reason_code, _properties=None):
            if _is_failure(reason_code):
                logger.warning("MQTT connection lost", hub_id=hub_id, reason=str(reason_code))

        def on_subscribe(_client, _userdata, mid, reason_codes, _properties=None):
            codes = reason_codes if isinstance(reason_codes, (list, tuple)) else [reason_codes]
            session.acks.acknowledge(mid, not any(_is_failure(code) for code in codes))

        client.on_connect = on_connect
        client.on_disconnect = on_disconnect
        client.on_subscribe = on_subscribe
        client.username_pw_set(self._config.AUTH_USERNAME, self._config.AUTH_PASSWORD)
        client.reconnect_delay_set(min_delay=1, max_delay=30)
        if use_tls:
            client.tls_set()

        try:
            with self._recorder.track("connector_login"):
                client.connect_async(host, port, keepalive=self._config.MQTT_KEEPALIVE_SECONDS)
                client.loop_start()
                answered = await asyncio.to_thread(session.connected.wait, self._config.MQTT_ACK_TIMEOUT_SECONDS)
                if not answered:
                    raise TransportError(f"no CONNACK from {host}:{port} for {hub_id}")
                if session.connect_error:
                    raise TransportError(f"connect refused for {hub_id}: {session.connect_error}")
        except TransportError:
            client.loop_stop()
            raise
        except (OSError, ValueError) as e:
            client.loop_stop()
            raise TransportError(f"unable to connect to {host}:{port}: {e}") from e

        logger.info("Canary hub connected", hub_id=hub_id, broker=f"{host}:{port}")
        return session

    async def subscribe(self, session: ProbeSession, device: Device, sink: Optional[CommandSink] = None) -> None:
        """Subscribe to the device's command topic and start the auto-responder."""
        topic = command_topic(device)

        def on_command(_client, _userdata, message):
            # Count before handing off: the delivered count must not depend on the worker.
            if sink is not None:
                sink.record_delivery()
            try:
                session.loop.call_soon_threadsafe(
                    session.inbox.put_nowait, (message.topic, bytes(message.payload))
                )
            except RuntimeError:
                logger.warning("Command arrived after the run loop closed", topic=message.topic)

        session.client.message_callback_add(topic, on_command)
        if session.worker is None:
            session.worker = asyncio.create_task(self._command_worker(session, sink))
            self._workers.add(session.worker)
            session.worker.add_done_callback(self._workers.discard)

        with self._recorder.track("connector_subscribe"):
            result, mid = session.client.subscribe(topic, qos=COMMAND_QOS)
            if result != mqtt.MQTT_ERR_SUCCESS:
                raise TransportError(f"subscribe to {topic} failed: {mqtt.error_string(result)}")
            granted = await asyncio.to_thread(session.acks.wait, mid, self._config.MQTT_ACK_TIMEOUT_SECONDS)
            if granted is None:
                raise TransportError(f"no SUBACK for {topic}")
            if not granted:
                raise TransportError(f"subscription to {topic} refused")
        logger.debug("Subscribed to commands", topic=topic)

    async def publish(self, session: ProbeSession, device: Device, value1: int, value2: int) -> None:
        """Publish one sensor reading and wait for the QoS 2 handshake."""
        payload = build_sensor_message(self._config, value1, value2)
        topic = sensor_topic(device)
        with self._recorder.track("connector_publish"):
            await self._publish(session, topic, payload)
        logger.debug("Sensor reading published", topic=topic, value1=value1, value2=value2)

    async def disconnect(self, session: ProbeSession) -> None:
        """Let pending command responses drain for the linger, then close."""
        try:
            await asyncio.wait_for(session.inbox.join(), timeout=self._config.MQTT_DISCONNECT_LINGER_SECONDS)
        except asyncio.TimeoutError:
            logger.debug("Disconnecting with unanswered commands", pending=session.inbox.qsize())
        session.client.disconnect()
        session.client.loop_stop()
        if session.worker is not None:
            session.worker.cancel()
        logger.info("Canary hub disconnected", hub_id=session.hub_id)

    async def _publish(self, session: ProbeSession, topic: str, payload: bytes) -> None:
        timeout = self._config.MQTT_ACK_TIMEOUT_SECONDS

        def publish_and_wait() -> None:
            info = session.client.publish(topic, payload, qos=PUBLISH_QOS)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise TransportError(f"publish to {topic} failed: {mqtt.error_string(info.rc)}")
            try:
                info.wait_for_publish(timeout)
            except (RuntimeError, ValueError) as e:
                raise TransportError(f"publish to {topic} failed: {e}") from e
            if not info.is_published():
                raise TransportError(f"publish to {topic} not acknowledged within {timeout}s")

        await asyncio.to_thread(publish_and_wait)

    async def _command_worker(self, session: ProbeSession, sink: Optional[CommandSink]) -> None:
        while True:
            topic, payload = await session.inbox.get()
            try:
                try:
                    await self._respond(session, topic, payload)
                except Exception as e:
                    logger.error("Command response failed", topic=topic, error=str(e), stack_info=True)
                    self._recorder.increment("uncategorized_err")
                if sink is not None:
                    try:
                        sink.notify_command(topic, payload)
                    except CanaryError as e:
                        logger.error("Unexpected command", topic=topic, error=str(e))
                        self._recorder.increment("uncategorized_err")
            finally:
                session.inbox.task_done()

    async def _respond(self, session: ProbeSession, topic: str, payload: bytes) -> None:
        try:
            response = build_response(payload)
        except ValidationError as e:
            raise TransportError(f"undecodable command envelope on {topic}") from e
        await self._publish(session, response_topic(topic), response.model_dump_json().encode("utf-8"))
