"""Upstream hub connection interface.

Modules depend on this small surface rather than on transport internals:

- open / close, interrupt (fail blocked sends and twin requests during shutdown)
- send_event(output, message)
- get_desired_config / update_reported_config (module twin)
- set_desired_config_callback / set_connection_status_callback
- set_method_handler / set_input_message_handler

`edgegen.mqtt_transport.MqttHubConnection` is the production implementation.
Callbacks run on a dispatcher thread owned by the connection, so a handler
may call back into the connection (e.g. report properties from a desired
patch handler).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from .lifecycle import ConnectionEvent


class HubError(RuntimeError):
    """Base class for hub connection failures."""


class TransportError(HubError):
    """Raised when the connection cannot be created or opened."""


class UnsupportedTransportError(TransportError):
    """Raised when the selected wire protocol has no transport in this build."""


class DeliveryError(HubError):
    """Raised when a send / twin operation fails or times out."""


@dataclass(frozen=True)
class Message:
    body: bytes
    content_type: str = "application/json"
    content_encoding: str = "utf-8"
    properties: Dict[str, str] = field(default_factory=dict)
    input_name: Optional[str] = None

    def text(self) -> str:
        return self.body.decode(self.content_encoding or "utf-8")


@dataclass(frozen=True)
class MethodResponse:
    status: int
    payload: Any = None


DesiredConfigHandler = Callable[[Dict[str, Any]], None]
ConnectionStatusHandler = Callable[[ConnectionEvent], None]
MethodHandler = Callable[[Any], MethodResponse]
InputMessageHandler = Callable[[Message], None]


class HubConnection(Protocol):
    def open(self) -> None: ...

    def close(self) -> None: ...

    def interrupt(self) -> None: ...

    def send_event(self, output_name: str, message: Message) -> None: ...

    def get_desired_config(self) -> Dict[str, Any]: ...

    def update_reported_config(self, doc: Mapping[str, Any]) -> None: ...

    def set_desired_config_callback(self, handler: DesiredConfigHandler) -> None: ...

    def set_connection_status_callback(self, handler: ConnectionStatusHandler) -> None: ...

    def set_method_handler(self, name: Optional[str], handler: MethodHandler) -> None: ...

    def set_input_message_handler(self, input_name: str, handler: InputMessageHandler) -> None: ...
