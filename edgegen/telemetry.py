from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from .hub import Message

CONTENT_TYPE = "application/json"
CONTENT_ENCODING = "utf-8"
SEQUENCE_PROPERTY = "sequenceNumber"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_device_time(ts: datetime) -> str:
    """RFC 3339 UTC timestamp with a `Z` suffix."""

    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class TelemetryEnvelope:
    device_id: str
    device_time: str
    temperature: float
    humidity: int
    sequence: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceTime": self.device_time,
            "temperature": self.temperature,
            "humidity": self.humidity,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def to_message(self) -> Message:
        return Message(
            body=self.to_json().encode(CONTENT_ENCODING),
            content_type=CONTENT_TYPE,
            content_encoding=CONTENT_ENCODING,
            properties={SEQUENCE_PROPERTY: str(self.sequence)},
        )
