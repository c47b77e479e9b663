"""Process-level plumbing shared by the edge modules.

Shutdown model:
- SIGTERM / SIGINT (edge agent stopping the container) -> exit code 0
- unrecoverable connection loss (RETRY_EXPIRED) -> exit code 1, and the
  edge agent restarts the module
"""

from __future__ import annotations

import logging
import signal
import threading
from typing import Callable, List, Optional

from .config import ModuleSettings
from .hub import HubConnection, HubError
from .lifecycle import ConnectionLifecycle, TransportProtocol, select_transport_protocol

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1

ConnectionFactory = Callable[[ModuleSettings, TransportProtocol], HubConnection]


class StopSignal:
    """Cancellation shared by the emission loop and the async callbacks."""

    def __init__(self) -> None:
        self._event = threading.Event()
        # Re-entrant: cancel() also runs from signal handlers on the main thread.
        self._lock = threading.RLock()
        self._exit_code = EXIT_OK
        self._listeners: List[Callable[[], None]] = []

    @property
    def exit_code(self) -> int:
        with self._lock:
            return self._exit_code

    def cancel(self, exit_code: int = EXIT_OK) -> None:
        with self._lock:
            # A fatal exit code is never downgraded by a later clean shutdown.
            if exit_code != EXIT_OK:
                self._exit_code = exit_code
            first = not self._event.is_set()
            self._event.set()
            listeners = list(self._listeners) if first else []
        for listener in listeners:
            listener()

    def on_cancel(self, listener: Callable[[], None]) -> None:
        """Call `listener` once on the first cancel (immediately if already cancelled).

        Listeners may run inside a signal handler, so they must only flip flags.
        """

        with self._lock:
            if not self._event.is_set():
                self._listeners.append(listener)
                return
        listener()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to `timeout` seconds. Returns True if cancelled."""

        return self._event.wait(timeout)


def startup_exit_code(stop: StopSignal) -> int:
    """Exit code for a startup step that failed.

    A failure caused by a shutdown already in progress keeps that shutdown's code.
    """

    return stop.exit_code if stop.is_set() else EXIT_FATAL


def install_signal_handlers(stop: StopSignal) -> None:
    def _handler(signum, _frame) -> None:
        logger.info("Received signal %s, shutting down", signal.Signals(signum).name)
        stop.cancel(EXIT_OK)

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def open_module_connection(
    settings: ModuleSettings,
    stop: StopSignal,
    factory: ConnectionFactory,
) -> HubConnection:
    """Create and open the module's hub connection.

    The connection status handler is registered before opening so the first
    CONNECTED transition is observed too.
    """

    protocol = select_transport_protocol(settings.upstream_protocol)
    connection = factory(settings, protocol)

    lifecycle = ConnectionLifecycle(on_terminate=lambda: stop.cancel(EXIT_FATAL))
    connection.set_connection_status_callback(lifecycle.handle)
    # Cancelling releases sends and twin requests blocked on the hub.
    stop.on_cancel(connection.interrupt)
    try:
        connection.open()
    except HubError:
        connection.close()
        raise

    logger.info("Edge Hub module client initialized using %s", protocol.value)
    return connection
