"""MQTT hub connection (paho-mqtt).

Speaks the IoT Hub module flavour of MQTT 3.1.1 that the edge hub exposes:

  telemetry        devices/{d}/modules/{m}/messages/events/{property bag}
  module inputs    devices/{d}/modules/{m}/inputs/{input}/{property bag}
  twin GET         $iothub/twin/GET/?$rid={rid}
  twin reported    $iothub/twin/PATCH/properties/reported/?$rid={rid}
  twin responses   $iothub/twin/res/{status}/?$rid={rid}
  desired patches  $iothub/twin/PATCH/properties/desired/?$version={v}
  direct methods   $iothub/methods/POST/{name}/?$rid={rid}
  method replies   $iothub/methods/res/{status}/?$rid={rid}

Reconnection with backoff is paho's. This class only counts consecutive
failed attempts and reports RETRY_EXPIRED once the budget is spent; what to
do about it is the connection status handler's call.

Callbacks (status, desired patches, methods, inputs) run on a single
dispatcher thread, never on paho's network thread: handlers may issue twin
requests whose responses arrive on the network thread.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, quote

import paho.mqtt.client as mqtt

from .config import ModuleSettings
from .credentials import generate_sas_token, redact, sas_token_expiry
from .hub import (
    ConnectionStatusHandler,
    DeliveryError,
    DesiredConfigHandler,
    InputMessageHandler,
    Message,
    MethodHandler,
    MethodResponse,
    TransportError,
    UnsupportedTransportError,
)
from .lifecycle import ConnectionChangeReason, ConnectionEvent, ConnectionStatus, TransportProtocol

logger = logging.getLogger(__name__)

API_VERSION = "2018-06-30"
KEEPALIVE_SECONDS = 60
RECONNECT_MIN_DELAY = 1
RECONNECT_MAX_DELAY = 60
# Bound on QoS 1 messages paho keeps in flight or queued for resend.
MAX_QUEUED_MESSAGES = 100
# Blocking waits wake up this often to notice interrupt().
POLL_SECONDS = 0.1

TWIN_RESPONSE_PREFIX = "$iothub/twin/res/"
TWIN_DESIRED_PREFIX = "$iothub/twin/PATCH/properties/desired/"
METHOD_PREFIX = "$iothub/methods/POST/"

# CONNACK refusals that mean "credentials rejected" (MQTT 3.1.1 codes and
# their MQTT 5 equivalents, which paho reports for both protocol versions).
_AUTH_REFUSED = {4, 5, 134, 135}


def split_topic(topic: str) -> Tuple[str, Dict[str, str]]:
    """Split `path/?k=v&k2=v2` into (path, {k: v})."""

    path, _, query = topic.partition("/?")
    return path.rstrip("/"), dict(parse_qsl(query, keep_blank_values=True))


def build_event_topic(device_id: str, module_id: str, output_name: str, message: Message) -> str:
    parts = [f"$.on={quote(output_name, safe='')}"]
    if message.content_type:
        parts.append(f"$.ct={quote(message.content_type, safe='')}")
    if message.content_encoding:
        parts.append(f"$.ce={quote(message.content_encoding, safe='')}")
    for k, v in message.properties.items():
        parts.append(f"{quote(str(k), safe='')}={quote(str(v), safe='')}")
    return f"devices/{device_id}/modules/{module_id}/messages/events/" + "&".join(parts)


def parse_input_topic(prefix: str, topic: str) -> Optional[Tuple[str, Dict[str, str]]]:
    """Return (input_name, properties) for a module input topic, else None."""

    if not topic.startswith(prefix):
        return None
    input_name, _, bag = topic[len(prefix):].partition("/")
    if not input_name:
        return None
    return input_name, dict(parse_qsl(bag, keep_blank_values=True))


@dataclass
class _PendingRequest:
    done: threading.Event = field(default_factory=threading.Event)
    status: int = 0
    body: bytes = b""


class MqttHubConnection:
    def __init__(
        self,
        *,
        host: str,
        hub_hostname: str,
        device_id: str,
        module_id: str,
        port: int = 8883,
        sas_token: str = "",
        shared_access_key: str = "",
        sas_ttl_seconds: int = 3600,
        ca_cert_file: str = "",
        use_tls: bool = True,
        max_reconnect_attempts: int = 10,
        request_timeout_seconds: float = 30.0,
        client: Optional[mqtt.Client] = None,
    ) -> None:
        self._host = host
        self._hub_hostname = hub_hostname or host
        self._device_id = device_id
        self._module_id = module_id
        self._port = port
        self._sas_token = sas_token
        self._shared_access_key = shared_access_key
        self._sas_ttl_seconds = sas_ttl_seconds
        self._ca_cert_file = ca_cert_file
        self._use_tls = use_tls
        self._max_reconnect_attempts = max(1, int(max_reconnect_attempts))
        self._request_timeout = float(request_timeout_seconds)

        self._input_prefix = f"devices/{device_id}/modules/{module_id}/inputs/"

        if client is None:
            client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=f"{device_id}/{module_id}",
                protocol=mqtt.MQTTv311,
            )
        self._client = client
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_connect_fail = self._on_connect_fail
        self._client.on_message = self._on_message
        self._client.max_queued_messages_set(MAX_QUEUED_MESSAGES)

        self._dispatcher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="hub-callbacks")
        self._rid_counter = itertools.count(1)
        self._pending: Dict[str, _PendingRequest] = {}
        self._pending_lock = threading.Lock()

        self._connected = threading.Event()
        self._interrupted = threading.Event()
        self._closing = False
        self._failed_attempts = 0
        self._retry_expired = False

        self._status_handler: Optional[ConnectionStatusHandler] = None
        self._desired_handler: Optional[DesiredConfigHandler] = None
        self._method_handlers: Dict[str, MethodHandler] = {}
        self._default_method_handler: Optional[MethodHandler] = None
        self._input_handlers: Dict[str, InputMessageHandler] = {}

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def _current_password(self) -> str:
        if self._shared_access_key:
            resource_uri = f"{self._hub_hostname}/devices/{self._device_id}/modules/{self._module_id}"
            self._sas_token = generate_sas_token(
                resource_uri, self._shared_access_key, ttl_seconds=self._sas_ttl_seconds
            )
        return self._sas_token

    def _refresh_credentials(self) -> None:
        username = f"{self._hub_hostname}/{self._device_id}/{self._module_id}/?api-version={API_VERSION}"
        self._client.username_pw_set(username, self._current_password())

    def open(self) -> None:
        logger.info(
            "Connecting to %s:%s as %s/%s (token=%s)",
            self._host,
            self._port,
            self._device_id,
            self._module_id,
            redact(self._sas_token) or ("derived" if self._shared_access_key else "missing"),
        )
        try:
            self._refresh_credentials()
            if self._use_tls:
                self._client.tls_set(ca_certs=self._ca_cert_file or None)
            self._client.reconnect_delay_set(min_delay=RECONNECT_MIN_DELAY, max_delay=RECONNECT_MAX_DELAY)
            self._client.connect_async(self._host, self._port, keepalive=KEEPALIVE_SECONDS)
        except (OSError, ValueError) as e:
            raise TransportError(f"cannot connect to {self._host}:{self._port}: {e}") from e

        self._client.loop_start()

        deadline = time.monotonic() + self._request_timeout
        while not self._connected.wait(POLL_SECONDS):
            if self._interrupted.is_set():
                raise TransportError("interrupted while connecting")
            if self._retry_expired:
                raise TransportError("connection retries expired while opening")
            if time.monotonic() >= deadline:
                raise TransportError(f"timed out connecting to {self._host}:{self._port}")

    def interrupt(self) -> None:
        """Fail blocked and future sends and twin requests fast with DeliveryError.

        Safe to call from a signal handler.
        """

        self._interrupted.set()

    def close(self) -> None:
        self.interrupt()
        was_connected = self._connected.is_set()
        self._closing = True
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()
        if not was_connected:
            self._emit_status(ConnectionStatus.DISABLED, ConnectionChangeReason.CLIENT_CLOSE)
        self._dispatcher.shutdown(wait=True)

    def _emit_status(self, status: ConnectionStatus, reason: ConnectionChangeReason) -> None:
        if self._status_handler is not None:
            self._dispatch(self._status_handler, ConnectionEvent(status=status, reason=reason))

    def _auth_failure_reason(self, reason_code: Any) -> ConnectionChangeReason:
        if reason_code.value not in _AUTH_REFUSED:
            return ConnectionChangeReason.COMMUNICATION_ERROR
        expiry = sas_token_expiry(self._sas_token)
        if expiry is not None and expiry <= time.time():
            return ConnectionChangeReason.EXPIRED_SAS_TOKEN
        return ConnectionChangeReason.BAD_CREDENTIAL

    def _record_failed_attempt(self, reason: ConnectionChangeReason) -> None:
        self._failed_attempts += 1
        logger.warning(
            "Connection attempt %s/%s failed: %s",
            self._failed_attempts,
            self._max_reconnect_attempts,
            reason.value,
        )
        if self._failed_attempts >= self._max_reconnect_attempts:
            if not self._retry_expired:
                self._retry_expired = True
                self._emit_status(ConnectionStatus.DISCONNECTED, ConnectionChangeReason.RETRY_EXPIRED)
            return
        self._emit_status(ConnectionStatus.DISCONNECTED, reason)
        if self._shared_access_key:
            self._refresh_credentials()

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            self._record_failed_attempt(self._auth_failure_reason(reason_code))
            return

        self._failed_attempts = 0
        self._retry_expired = False
        client.subscribe(
            [
                (TWIN_RESPONSE_PREFIX + "#", 0),
                (TWIN_DESIRED_PREFIX + "#", 0),
                (METHOD_PREFIX + "#", 0),
                (self._input_prefix + "#", 1),
            ]
        )
        self._connected.set()
        self._emit_status(ConnectionStatus.CONNECTED, ConnectionChangeReason.CONNECTION_OK)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        was_connected = self._connected.is_set()
        self._connected.clear()
        if self._closing:
            self._emit_status(ConnectionStatus.DISABLED, ConnectionChangeReason.CLIENT_CLOSE)
            return
        # A refused CONNACK is followed by a disconnect; it was counted in _on_connect.
        if was_connected:
            self._emit_status(ConnectionStatus.DISCONNECTED, ConnectionChangeReason.COMMUNICATION_ERROR)
            if self._shared_access_key:
                self._refresh_credentials()

    def _on_connect_fail(self, client, userdata) -> None:
        self._record_failed_attempt(ConnectionChangeReason.NO_NETWORK)

    def _on_message(self, client, userdata, msg) -> None:
        topic = msg.topic
        payload = msg.payload or b""

        if topic.startswith(TWIN_RESPONSE_PREFIX):
            path, query = split_topic(topic)
            self._resolve_pending(query.get("$rid", ""), path[len(TWIN_RESPONSE_PREFIX):], payload)
        elif topic.startswith(TWIN_DESIRED_PREFIX):
            self._on_desired_patch(payload)
        elif topic.startswith(METHOD_PREFIX):
            path, query = split_topic(topic)
            self._dispatch(self._invoke_method, path[len(METHOD_PREFIX):], query.get("$rid", ""), payload)
        else:
            parsed = parse_input_topic(self._input_prefix, topic)
            if parsed is None:
                logger.debug("Ignoring message on unexpected topic %s", topic)
                return
            input_name, props = parsed
            self._on_input_message(input_name, props, payload)

    def _resolve_pending(self, rid: str, status: str, payload: bytes) -> None:
        with self._pending_lock:
            pending = self._pending.get(rid)
        if pending is None:
            logger.debug("Dropping twin response for unknown rid=%s", rid)
            return
        try:
            pending.status = int(status)
        except ValueError:
            pending.status = 500
        pending.body = payload
        pending.done.set()

    def _on_desired_patch(self, payload: bytes) -> None:
        if self._desired_handler is None:
            logger.debug("Dropping desired properties patch: no handler registered yet")
            return
        try:
            patch = json.loads(payload.decode("utf-8")) if payload else {}
        except ValueError:
            logger.warning("Ignoring malformed desired properties patch")
            return
        if isinstance(patch, dict):
            logger.info("Desired property change received")
            logger.debug(json.dumps(patch))
            self._dispatch(self._desired_handler, patch)

    def _on_input_message(self, input_name: str, props: Dict[str, str], payload: bytes) -> None:
        handler = self._input_handlers.get(input_name)
        if handler is None:
            logger.debug("No handler for input %s", input_name, extra={"input_name": input_name})
            return
        message = Message(
            body=payload,
            content_type=props.pop("$.ct", ""),
            content_encoding=props.pop("$.ce", "") or "utf-8",
            properties={k: v for k, v in props.items() if not k.startswith("$.")},
            input_name=input_name,
        )
        self._dispatch(handler, message)

    # ------------------------------------------------------------------
    # Callback dispatch (dispatcher thread)
    # ------------------------------------------------------------------

    def _dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            self._dispatcher.submit(self._run_callback, fn, *args)
        except RuntimeError:
            # Executor already shut down (close() in progress).
            logger.debug("Dropping callback %s after close", getattr(fn, "__name__", fn))

    @staticmethod
    def _run_callback(fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Hub callback %s failed", getattr(fn, "__name__", fn))

    def _invoke_method(self, name: str, rid: str, payload: bytes) -> None:
        handler = self._method_handlers.get(name) or self._default_method_handler
        logger.info("Direct method %s invoked", name, extra={"method": name})

        try:
            request = json.loads(payload.decode("utf-8")) if payload else None
        except ValueError:
            request = payload.decode("utf-8", errors="replace")

        if handler is None:
            response = MethodResponse(404, {"error": f"Method {name} not implemented"})
        else:
            try:
                response = handler(request)
            except Exception as e:
                logger.exception("Direct method %s failed", name, extra={"method": name})
                response = MethodResponse(500, {"error": str(e)})

        body = json.dumps(response.payload).encode("utf-8")
        try:
            self._publish(f"$iothub/methods/res/{response.status}/?$rid={rid}", body, qos=0)
        except DeliveryError as e:
            logger.warning("Could not answer direct method %s: %s", name, e, extra={"method": name})

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _publish(self, topic: str, payload: bytes, *, qos: int) -> None:
        """Publish and wait for the broker's acknowledgement (QoS 1) or the socket write (QoS 0).

        Fails fast while disconnected: paho would otherwise queue the message
        and resend it after reconnecting, long after the caller gave up on it.
        """

        error = None
        if self._interrupted.is_set():
            error = "connection interrupted"
        elif not self._connected.is_set():
            error = "not connected"
        else:
            try:
                info = self._client.publish(topic, payload, qos=qos)
                if info.rc != mqtt.MQTT_ERR_SUCCESS:
                    error = mqtt.error_string(info.rc)
                else:
                    error = self._wait_published(info)
            except (ValueError, RuntimeError) as e:
                error = str(e)
        if error is not None:
            raise DeliveryError(f"publish to {topic.split('?', 1)[0]} failed: {error}")

    def _wait_published(self, info: mqtt.MQTTMessageInfo) -> Optional[str]:
        deadline = time.monotonic() + self._request_timeout
        while not info.is_published():
            if self._interrupted.is_set():
                return "connection interrupted"
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return f"not acknowledged within {self._request_timeout:.0f}s"
            info.wait_for_publish(timeout=min(POLL_SECONDS, remaining))
        return None

    def _twin_request(self, topic_template: str, payload: bytes) -> Tuple[int, bytes]:
        rid = str(next(self._rid_counter))
        pending = _PendingRequest()
        with self._pending_lock:
            self._pending[rid] = pending
        try:
            self._publish(topic_template.format(rid=rid), payload, qos=0)
            deadline = time.monotonic() + self._request_timeout
            while not pending.done.wait(POLL_SECONDS):
                if self._interrupted.is_set():
                    raise DeliveryError(f"twin request rid={rid} interrupted")
                if time.monotonic() >= deadline:
                    raise DeliveryError(f"twin request rid={rid} timed out")
            return pending.status, pending.body
        finally:
            with self._pending_lock:
                self._pending.pop(rid, None)

    def send_event(self, output_name: str, message: Message) -> None:
        topic = build_event_topic(self._device_id, self._module_id, output_name, message)
        self._publish(topic, message.body, qos=1)

    def get_desired_config(self) -> Dict[str, Any]:
        status, body = self._twin_request("$iothub/twin/GET/?$rid={rid}", b"")
        if status >= 300:
            raise DeliveryError(f"twin GET failed with status {status}")
        try:
            twin = json.loads(body.decode("utf-8")) if body else {}
        except ValueError as e:
            raise DeliveryError("twin GET returned malformed JSON") from e
        desired = twin.get("desired") if isinstance(twin, dict) else None
        return dict(desired) if isinstance(desired, dict) else {}

    def update_reported_config(self, doc: Mapping[str, Any]) -> None:
        payload = json.dumps(dict(doc)).encode("utf-8")
        status, _ = self._twin_request("$iothub/twin/PATCH/properties/reported/?$rid={rid}", payload)
        if status >= 300:
            raise DeliveryError(f"reported properties update failed with status {status}")

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def set_desired_config_callback(self, handler: DesiredConfigHandler) -> None:
        self._desired_handler = handler

    def set_connection_status_callback(self, handler: ConnectionStatusHandler) -> None:
        self._status_handler = handler

    def set_method_handler(self, name: Optional[str], handler: MethodHandler) -> None:
        if name is None:
            self._default_method_handler = handler
        else:
            self._method_handlers[name] = handler

    def set_input_message_handler(self, input_name: str, handler: InputMessageHandler) -> None:
        self._input_handlers[input_name] = handler


def create_connection(settings: ModuleSettings, protocol: TransportProtocol) -> MqttHubConnection:
    """Build the module's hub connection for the selected protocol."""

    if protocol is not TransportProtocol.MQTT:
        raise UnsupportedTransportError(f"{protocol.value} transport is not available; set UpstreamProtocol=MQTT")

    missing = [
        name
        for name, value in (
            ("IOTEDGE_GATEWAYHOSTNAME/IOTEDGE_IOTHUBHOSTNAME", settings.connect_hostname),
            ("IOTEDGE_DEVICEID", settings.device_id),
            ("IOTEDGE_MODULEID", settings.module_id),
        )
        if not value
    ]
    if missing:
        raise TransportError(f"missing module identity: {', '.join(missing)}")
    if not settings.sas_token and not settings.shared_access_key:
        raise TransportError("no credentials: set EDGE_SAS_TOKEN or EdgeHubConnectionString")

    return MqttHubConnection(
        host=settings.connect_hostname,
        hub_hostname=settings.hub_hostname,
        device_id=settings.device_id,
        module_id=settings.module_id,
        port=settings.mqtt_port,
        sas_token=settings.sas_token,
        shared_access_key=settings.shared_access_key,
        sas_ttl_seconds=settings.sas_ttl_seconds,
        ca_cert_file=settings.ca_cert_file,
        use_tls=settings.use_tls,
        max_reconnect_attempts=settings.max_reconnect_attempts,
        request_timeout_seconds=settings.request_timeout_seconds,
    )
