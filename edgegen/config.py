from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .credentials import parse_connection_string


MIN_SAMPLING_RATE_MS = 1
MAX_SAMPLING_RATE_MS = 60_000
DEFAULT_SAMPLING_RATE_MS = 1000


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name, default)
    return str(v).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except Exception:
        return int(default)


def _truthy(v: str) -> bool:
    return str(v).strip().lower() in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True)
class ModuleSettings:
    # Identity
    hub_hostname: str
    gateway_hostname: str
    device_id: str
    module_id: str

    # Credentials: either a pre-issued SAS token or a key to mint tokens from.
    sas_token: str
    shared_access_key: str
    sas_ttl_seconds: int
    ca_cert_file: str

    # Transport
    upstream_protocol: str
    mqtt_port: int
    use_tls: bool
    max_reconnect_attempts: int
    request_timeout_seconds: int

    # Data generator
    output_name: str
    sampling_rate_ms: int
    seed: Optional[int]

    # SQL writer
    sql_connection_string: str

    # Logging
    log_level: str
    log_format: str  # json|console

    @property
    def connect_hostname(self) -> str:
        """Host the module connects to: the edge gateway when present."""

        return self.gateway_hostname or self.hub_hostname

    @staticmethod
    def from_env() -> "ModuleSettings":
        hub_hostname = _env("IOTEDGE_IOTHUBHOSTNAME", "")
        gateway_hostname = _env("IOTEDGE_GATEWAYHOSTNAME", "")
        device_id = _env("IOTEDGE_DEVICEID", "")
        module_id = _env("IOTEDGE_MODULEID", "")
        shared_access_key = ""

        # A full connection string wins over the individual IOTEDGE_* variables.
        conn_str = _env("EdgeHubConnectionString", "")
        if conn_str:
            info = parse_connection_string(conn_str)
            hub_hostname = info.hostname
            device_id = info.device_id
            module_id = info.module_id or module_id
            gateway_hostname = info.gateway_hostname or gateway_hostname
            shared_access_key = info.shared_access_key

        sampling_rate_ms = _env_int("EDGE_SAMPLING_RATE_MS", DEFAULT_SAMPLING_RATE_MS)
        sampling_rate_ms = min(MAX_SAMPLING_RATE_MS, max(MIN_SAMPLING_RATE_MS, sampling_rate_ms))

        seed_raw = _env("EDGE_SEED", "")
        seed = None
        if seed_raw:
            try:
                seed = int(seed_raw)
            except Exception:
                seed = None

        return ModuleSettings(
            hub_hostname=hub_hostname,
            gateway_hostname=gateway_hostname,
            device_id=device_id,
            module_id=module_id,
            sas_token=_env("EDGE_SAS_TOKEN", ""),
            shared_access_key=shared_access_key,
            sas_ttl_seconds=max(60, _env_int("EDGE_SAS_TTL_SECONDS", 3600)),
            ca_cert_file=_env("EdgeModuleCACertificateFile", ""),
            upstream_protocol=_env("UpstreamProtocol", ""),
            mqtt_port=_env_int("EDGE_MQTT_PORT", 8883),
            use_tls=_truthy(_env("EDGE_USE_TLS", "true")),
            max_reconnect_attempts=max(1, _env_int("EDGE_MAX_RECONNECT_ATTEMPTS", 10)),
            request_timeout_seconds=max(1, _env_int("EDGE_REQUEST_TIMEOUT_SECONDS", 30)),
            output_name=_env("EDGE_OUTPUT_NAME", "output1") or "output1",
            sampling_rate_ms=sampling_rate_ms,
            seed=seed,
            sql_connection_string=_env("SQL_CONNECTION_STRING", "") or _env("SQLConnectionString", ""),
            log_level=_env("RuntimeLogLevel", "info").lower() or "info",
            log_format=_env("LOG_FORMAT", "console").lower(),
        )
