"""Module connection credentials.

Edge modules authenticate to the hub with a shared access signature (SAS)
token. The runtime either hands the module a ready-made token or a
connection string holding the shared access key to mint tokens from.

Token format:
  SharedAccessSignature sr=<url-encoded resource>&sig=<url-encoded signature>&se=<expiry epoch>

The signature is HMAC-SHA256 over "<url-encoded resource>\\n<expiry>" keyed
with the base64-decoded shared access key.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import parse_qs, quote


@dataclass(frozen=True)
class ConnectionInfo:
    hostname: str
    device_id: str
    module_id: str = ""
    shared_access_key: str = ""
    gateway_hostname: str = ""

    @property
    def resource_uri(self) -> str:
        uri = f"{self.hostname}/devices/{self.device_id}"
        if self.module_id:
            uri += f"/modules/{self.module_id}"
        return uri


def parse_connection_string(value: str) -> ConnectionInfo:
    """Parse a `Key=Value;Key=Value` module connection string."""

    parts: Dict[str, str] = {}
    for segment in (value or "").split(";"):
        segment = segment.strip()
        if not segment:
            continue
        if "=" not in segment:
            raise ValueError(f"Malformed connection string segment: {segment!r}")
        # Keys are base64 and may end with '=' padding, so split once.
        key, v = segment.split("=", 1)
        parts[key.strip().lower()] = v.strip()

    hostname = parts.get("hostname", "")
    device_id = parts.get("deviceid", "")
    if not hostname or not device_id:
        raise ValueError("Connection string requires HostName and DeviceId")

    return ConnectionInfo(
        hostname=hostname,
        device_id=device_id,
        module_id=parts.get("moduleid", ""),
        shared_access_key=parts.get("sharedaccesskey", ""),
        gateway_hostname=parts.get("gatewayhostname", ""),
    )


def generate_sas_token(
    resource_uri: str,
    key_b64: str,
    *,
    ttl_seconds: int = 3600,
    now: Optional[float] = None,
) -> str:
    """Mint a SAS token for `resource_uri` valid for `ttl_seconds`."""

    if not key_b64:
        raise ValueError("shared access key is required")
    try:
        key = base64.b64decode(key_b64.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError("shared access key is not valid base64") from e

    expiry = int((time.time() if now is None else now) + ttl_seconds)
    sr = quote(resource_uri, safe="")
    to_sign = f"{sr}\n{expiry}".encode("utf-8")
    sig = base64.b64encode(hmac.new(key, to_sign, hashlib.sha256).digest()).decode("ascii")
    return f"SharedAccessSignature sr={sr}&sig={quote(sig, safe='')}&se={expiry}"


def sas_token_expiry(token: str) -> Optional[int]:
    """Return the `se` expiry of a SAS token, or None when absent/invalid."""

    body = (token or "").strip()
    if body.startswith("SharedAccessSignature "):
        body = body[len("SharedAccessSignature "):]
    values = parse_qs(body).get("se")
    if not values:
        return None
    try:
        return int(values[0])
    except ValueError:
        return None


def redact(value: str, *, keep: int = 6) -> str:
    """Return a safe-to-log preview of a secret."""

    v = str(value or "")
    if not v:
        return ""
    if len(v) <= keep:
        return "***"
    return v[:keep] + "…"
