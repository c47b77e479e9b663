from __future__ import annotations

import signal

import pytest

from edgegen.hub import TransportError
from edgegen.lifecycle import ConnectionChangeReason, ConnectionEvent, ConnectionStatus, TransportProtocol
from edgegen.runtime import (
    EXIT_FATAL,
    EXIT_OK,
    StopSignal,
    install_signal_handlers,
    open_module_connection,
    startup_exit_code,
)


def test_fatal_exit_code_is_not_downgraded() -> None:
    stop = StopSignal()
    stop.cancel(EXIT_FATAL)
    stop.cancel(EXIT_OK)

    assert stop.is_set()
    assert stop.exit_code == EXIT_FATAL
    assert stop.wait(0) is True


def test_wait_times_out_when_not_cancelled() -> None:
    assert StopSignal().wait(0.01) is False


def test_open_registers_lifecycle_before_opening(fake_hub, make_settings) -> None:
    seen = {}

    def factory(settings, protocol):
        seen["protocol"] = protocol
        return fake_hub

    stop = StopSignal()
    conn = open_module_connection(make_settings(upstream_protocol="mqtt"), stop, factory)

    assert conn is fake_hub
    assert fake_hub.opened
    assert seen["protocol"] is TransportProtocol.MQTT
    assert fake_hub.status_handler is not None

    fake_hub.status_handler(ConnectionEvent(ConnectionStatus.DISCONNECTED, ConnectionChangeReason.COMMUNICATION_ERROR))
    assert not stop.is_set()

    fake_hub.status_handler(ConnectionEvent(ConnectionStatus.DISCONNECTED, ConnectionChangeReason.RETRY_EXPIRED))
    assert stop.is_set()
    assert stop.exit_code == EXIT_FATAL


def test_open_propagates_transport_errors(fake_hub, make_settings) -> None:
    fake_hub.open_error = TransportError("refused")
    with pytest.raises(TransportError):
        open_module_connection(make_settings(), StopSignal(), lambda s, p: fake_hub)


def test_signal_handlers_cancel_cleanly() -> None:
    saved = signal.getsignal(signal.SIGTERM), signal.getsignal(signal.SIGINT)
    stop = StopSignal()
    try:
        install_signal_handlers(stop)
        signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
    finally:
        signal.signal(signal.SIGTERM, saved[0])
        signal.signal(signal.SIGINT, saved[1])

    assert stop.is_set()
    assert stop.exit_code == EXIT_OK


def test_cancel_listeners_run_once() -> None:
    stop = StopSignal()
    calls = []
    stop.on_cancel(lambda: calls.append("first"))

    stop.cancel()
    stop.cancel(EXIT_FATAL)
    stop.on_cancel(lambda: calls.append("late"))

    assert calls == ["first", "late"]


def test_cancel_interrupts_the_connection(fake_hub, make_settings) -> None:
    stop = StopSignal()
    open_module_connection(make_settings(), stop, lambda s, p: fake_hub)
    assert not fake_hub.interrupted

    stop.cancel()

    assert fake_hub.interrupted


def test_startup_failure_keeps_requested_shutdown_code() -> None:
    stop = StopSignal()
    assert startup_exit_code(stop) == EXIT_FATAL

    stop.cancel(EXIT_OK)
    assert startup_exit_code(stop) == EXIT_OK
