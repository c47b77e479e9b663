"""HTTP relay module.

Executes HTTP calls on behalf of a remote caller through direct methods, for
devices sitting in firewalled on-prem networks:

- ExecuteGet  {"url": ...}
- ExecutePost {"url": ..., "requestPayload": "<json string>"}

The endpoint's response body is returned to the method caller. Methods
without a handler get a 404 from the connection.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import requests

from .config import ModuleSettings
from .hub import DeliveryError, HubConnection, MethodResponse, TransportError
from .logging_setup import setup_logging
from .mqtt_transport import create_connection
from .runtime import ConnectionFactory, StopSignal, install_signal_handlers, open_module_connection, startup_exit_code

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
EXECUTE_GET = "ExecuteGet"
EXECUTE_POST = "ExecutePost"


@dataclass(frozen=True)
class RestRequest:
    url: str = ""
    request_payload: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "RestRequest":
        """Build from a method payload; keys are matched case-insensitively."""

        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError:
                return cls()
        if not isinstance(payload, Mapping):
            return cls()

        lowered = {str(k).lower(): v for k, v in payload.items()}
        body = lowered.get("requestpayload")
        if body is not None and not isinstance(body, str):
            body = json.dumps(body)
        return cls(url=str(lowered.get("url") or "").strip(), request_payload=body or "")


def relay_response(
    status: int,
    *,
    client_url: Optional[str] = None,
    error: Optional[str] = None,
    client_response: Optional[str] = None,
) -> MethodResponse:
    body: Dict[str, str] = {}
    if client_url is not None:
        body["clientUrl"] = client_url
    if error is not None:
        body["error"] = error
    if client_response is not None:
        body["clientResponse"] = client_response
    return MethodResponse(status, body)


class HttpRelay:
    def __init__(self, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS, session: Optional[requests.Session] = None):
        self._timeout = float(timeout_seconds)
        self._session = session or requests.Session()

    def execute_get(self, payload: Any) -> MethodResponse:
        return self._execute("GET", RestRequest.from_payload(payload))

    def execute_post(self, payload: Any) -> MethodResponse:
        request = RestRequest.from_payload(payload)
        if not request.request_payload:
            raise ValueError("No request payload for POST request supplied.")
        return self._execute("POST", request)

    def _execute(self, method: str, request: RestRequest) -> MethodResponse:
        logger.info("Received REST call request for method %s", method)

        if not request.url:
            logger.error("No valid method payload received")
            return relay_response(
                400, error="No valid method payload received. At least Url parameter required in request payload."
            )

        logger.info(
            "Executing HTTP %s method against endpoint %s with timeout of %ss", method, request.url, self._timeout
        )
        try:
            if method == "GET":
                resp = self._session.get(request.url, timeout=self._timeout)
            else:
                resp = self._session.post(
                    request.url,
                    data=request.request_payload.encode("utf-8"),
                    headers={"Content-Type": "application/json; charset=utf-8"},
                    timeout=self._timeout,
                )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error("HTTP %s against %s failed: %s", method, request.url, e)
            return relay_response(500, client_url=request.url, error=str(e))

        logger.info("HTTP operation successfully completed StatusCode=%s.", resp.status_code)
        return relay_response(200, client_url=request.url, client_response=resp.text)

    def register(self, connection: HubConnection) -> None:
        connection.set_method_handler(EXECUTE_GET, self.execute_get)
        connection.set_method_handler(EXECUTE_POST, self.execute_post)


def run(
    settings: Optional[ModuleSettings] = None,
    *,
    connection_factory: ConnectionFactory = create_connection,
    install_signals: bool = True,
    stop: Optional[StopSignal] = None,
) -> int:
    settings = settings or ModuleSettings.from_env()
    setup_logging(log_level=settings.log_level, log_format=settings.log_format, module_id=settings.module_id)
    logger.info("Module %s starting up...", settings.module_id)

    stop = stop or StopSignal()
    if install_signals:
        install_signal_handlers(stop)
    try:
        connection = open_module_connection(settings, stop, connection_factory)
    except (TransportError, DeliveryError) as e:
        logger.error("Could not open module connection: %s", e)
        return startup_exit_code(stop)

    try:
        HttpRelay(timeout_seconds=settings.request_timeout_seconds).register(connection)
        stop.wait()
    finally:
        connection.close()

    return stop.exit_code
