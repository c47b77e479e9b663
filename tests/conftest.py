"""Pytest configuration.

Adds the repo root to sys.path so `import edgegen` works without an editable
install, and provides an in-memory hub connection for module-level tests.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


class FakeHubConnection:
    """Records everything a module does with its connection."""

    def __init__(self, desired: Optional[Dict[str, Any]] = None) -> None:
        self.desired = dict(desired or {})
        self.sent: List[Tuple[str, Any]] = []
        self.reported: List[Dict[str, Any]] = []
        self.opened = False
        self.closed = False
        self.interrupted = False
        self.send_error: Optional[Exception] = None
        self.report_error: Optional[Exception] = None
        self.open_error: Optional[Exception] = None

        self.status_handler = None
        self.desired_handler = None
        self.method_handlers: Dict[Optional[str], Any] = {}
        self.input_handlers: Dict[str, Any] = {}

    def open(self) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def interrupt(self) -> None:
        self.interrupted = True

    def close(self) -> None:
        self.closed = True

    def send_event(self, output_name: str, message: Any) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((output_name, message))

    def get_desired_config(self) -> Dict[str, Any]:
        return dict(self.desired)

    def update_reported_config(self, doc: Mapping[str, Any]) -> None:
        if self.report_error is not None:
            raise self.report_error
        self.reported.append(dict(doc))

    def set_desired_config_callback(self, handler) -> None:
        self.desired_handler = handler

    def set_connection_status_callback(self, handler) -> None:
        self.status_handler = handler

    def set_method_handler(self, name, handler) -> None:
        self.method_handlers[name] = handler

    def set_input_message_handler(self, input_name: str, handler) -> None:
        self.input_handlers[input_name] = handler


@pytest.fixture
def fake_hub() -> FakeHubConnection:
    return FakeHubConnection()


def _module_settings(**overrides: Any):
    from edgegen.config import ModuleSettings

    base: Dict[str, Any] = dict(
        hub_hostname="hub.example.net",
        gateway_hostname="",
        device_id="edge-1",
        module_id="tempSensor",
        sas_token="SharedAccessSignature sr=x&sig=y&se=1",
        shared_access_key="",
        sas_ttl_seconds=3600,
        ca_cert_file="",
        upstream_protocol="",
        mqtt_port=8883,
        use_tls=True,
        max_reconnect_attempts=3,
        request_timeout_seconds=5,
        output_name="output1",
        sampling_rate_ms=1000,
        seed=1,
        sql_connection_string="",
        log_level="info",
        log_format="console",
    )
    base.update(overrides)
    return ModuleSettings(**base)


@pytest.fixture
def make_settings():
    return _module_settings
