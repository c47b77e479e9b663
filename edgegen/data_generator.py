"""Data generator module: simulated temperature/humidity telemetry."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .config import ModuleSettings
from .emitter import EmissionLoop
from .hub import DeliveryError, TransportError
from .logging_setup import setup_logging
from .mqtt_transport import create_connection
from .runtime import ConnectionFactory, StopSignal, install_signal_handlers, open_module_connection, startup_exit_code
from .sensor import SensorModel
from .synchronizer import ConfigSynchronizer

logger = logging.getLogger(__name__)


def run(
    settings: Optional[ModuleSettings] = None,
    *,
    connection_factory: ConnectionFactory = create_connection,
    install_signals: bool = True,
    stop: Optional[StopSignal] = None,
    sensor: Optional[SensorModel] = None,
) -> int:
    """Run until SIGTERM/SIGINT (exit 0) or unrecoverable connection loss (exit 1)."""

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
        synchronizer = ConfigSynchronizer(connection, initial_interval_ms=settings.sampling_rate_ms)
        try:
            synchronizer.merge_document(connection.get_desired_config())
        except DeliveryError as e:
            logger.error("Could not sync initial module config: %s", e)
            return startup_exit_code(stop)

        def _on_desired(patch: Dict[str, Any]) -> None:
            try:
                synchronizer.merge_document(patch)
            except DeliveryError as e:
                logger.warning("Could not report samplingrate: %s", e)

        connection.set_desired_config_callback(_on_desired)

        loop = EmissionLoop(
            connection,
            sensor or SensorModel.from_seed(settings.seed),
            synchronizer,
            stop,
            device_id=settings.module_id,
            output_name=settings.output_name,
        )
        loop.run()
    finally:
        connection.close()

    return stop.exit_code
