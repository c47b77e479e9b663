"""Connection lifecycle decisions.

The transport library owns reconnection with backoff. This module only
decides, per status change, whether to keep running or to give up:

- every change is logged with status + reason
- RETRY_EXPIRED (the transport exhausted its own reconnection budget) is
  fatal: the module stops with exit code 1 and the edge agent restarts it
- everything else, including reasons added in the future, keeps running

It also resolves the upstream wire protocol from UpstreamProtocol.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class _TolerantEnum(enum.Enum):
    """Enum that maps unknown values and names onto UNKNOWN."""

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            key = value.strip().replace("-", "_").upper()
            if key in cls.__members__:
                return cls.__members__[key]
            for member in cls:
                if str(member.value).lower() == value.strip().lower():
                    return member
        return cls.__members__["UNKNOWN"]


class ConnectionStatus(_TolerantEnum):
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"
    DISABLED = "Disabled"
    SUSPENDED = "Suspended"
    UNKNOWN = "Unknown"


class ConnectionChangeReason(_TolerantEnum):
    CONNECTION_OK = "ConnectionOk"
    EXPIRED_SAS_TOKEN = "ExpiredSasToken"
    DEVICE_DISABLED = "DeviceDisabled"
    BAD_CREDENTIAL = "BadCredential"
    RETRY_EXPIRED = "RetryExpired"
    NO_NETWORK = "NoNetwork"
    COMMUNICATION_ERROR = "CommunicationError"
    CLIENT_CLOSE = "ClientClose"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ConnectionEvent:
    status: ConnectionStatus
    reason: ConnectionChangeReason

    @classmethod
    def parse(cls, status: str, reason: str) -> "ConnectionEvent":
        return cls(status=ConnectionStatus(status), reason=ConnectionChangeReason(reason))


class Action(enum.Enum):
    CONTINUE = "continue"
    TERMINATE = "terminate"


def classify(event: ConnectionEvent) -> Action:
    if event.reason is ConnectionChangeReason.RETRY_EXPIRED:
        return Action.TERMINATE
    return Action.CONTINUE


class ConnectionLifecycle:
    """Connection status handler that stops the module on unrecoverable loss."""

    def __init__(self, on_terminate: Callable[[], None]) -> None:
        self._on_terminate = on_terminate

    def handle(self, event: ConnectionEvent) -> Action:
        logger.info(
            "Module connection changed. New status=%s Reason=%s",
            event.status.value,
            event.reason.value,
            extra={"status": event.status.value, "reason": event.reason.value},
        )

        action = classify(event)
        if action is Action.TERMINATE:
            logger.error("Connection can not be re-established. Exiting module")
            self._on_terminate()
        return action

    __call__ = handle


class TransportProtocol(enum.Enum):
    AMQP = "AMQP"
    MQTT = "MQTT"


DEFAULT_TRANSPORT_PROTOCOL = TransportProtocol.MQTT


def select_transport_protocol(value: Optional[str]) -> TransportProtocol:
    """Resolve UpstreamProtocol (AMQP|MQTT). Anything else falls back to MQTT."""

    raw = (value or "").strip()
    if not raw:
        return DEFAULT_TRANSPORT_PROTOCOL

    upper = raw.upper()
    if upper == TransportProtocol.AMQP.value:
        return TransportProtocol.AMQP
    if upper == TransportProtocol.MQTT.value:
        return TransportProtocol.MQTT

    logger.warning(
        "Ignoring unknown UpstreamProtocol=%s. Using default=%s",
        raw,
        DEFAULT_TRANSPORT_PROTOCOL.value,
    )
    return DEFAULT_TRANSPORT_PROTOCOL
