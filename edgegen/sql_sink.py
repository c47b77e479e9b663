"""SQL writer module.

Persists batches routed to this module's inputs into Postgres:

- inputRaw: raw sensor readings        -> temperature_humidity
- inputAsa: windowed stream aggregates -> aggregated_measurements

Each message body is a JSON array of rows. Inserts are parameterized and
batched with execute_values; one connection per batch.
"""

from __future__ import annotations

import contextlib
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, ContextManager, Dict, List, Mapping, Optional, Tuple

import psycopg2
import psycopg2.extras

from .config import ModuleSettings
from .hub import DeliveryError, HubConnection, Message, TransportError
from .logging_setup import setup_logging
from .mqtt_transport import create_connection
from .runtime import (
    EXIT_FATAL,
    ConnectionFactory,
    StopSignal,
    install_signal_handlers,
    open_module_connection,
    startup_exit_code,
)

logger = logging.getLogger(__name__)

RAW_INPUT = "inputRaw"
AGGREGATE_INPUT = "inputAsa"
RAW_TABLE = "temperature_humidity"
AGGREGATE_TABLE = "aggregated_measurements"

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {RAW_TABLE} (
  id BIGSERIAL PRIMARY KEY,
  device_time TIMESTAMPTZ NOT NULL,
  device_id TEXT NOT NULL,
  event_id TEXT,
  temperature DOUBLE PRECISION,
  humidity INTEGER,
  inserted_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS {AGGREGATE_TABLE} (
  id BIGSERIAL PRIMARY KEY,
  device_id TEXT NOT NULL,
  window_end_time TIMESTAMPTZ NOT NULL,
  avg_temperature DOUBLE PRECISION,
  avg_humidity DOUBLE PRECISION,
  inserted_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

RAW_INSERT_SQL = f"INSERT INTO {RAW_TABLE} (device_time, device_id, event_id, temperature, humidity) VALUES %s;"
AGGREGATE_INSERT_SQL = (
    f"INSERT INTO {AGGREGATE_TABLE} (device_id, window_end_time, avg_temperature, avg_humidity) VALUES %s;"
)

RawRow = Tuple[datetime, str, Optional[str], Optional[float], Optional[int]]
AggregateRow = Tuple[str, datetime, Optional[float], Optional[float]]


@contextlib.contextmanager
def get_conn(dsn: str, *, connect_timeout: int = 5):
    conn = psycopg2.connect(dsn, connect_timeout=connect_timeout)
    try:
        yield conn
    finally:
        conn.close()


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        s = str(value or "").strip()
        if not s:
            raise ValueError("missing timestamp")
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        ts = datetime.fromisoformat(s)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _opt_int(value: Any) -> Optional[int]:
    f = _opt_float(value)
    return None if f is None else int(round(f))


def parse_batch(message: Message) -> List[Mapping[str, Any]]:
    """Decode a message body into a list of row objects (empty body -> [])."""

    text = message.text().strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ValueError(f"{message.input_name or 'input'}: body is not valid JSON") from e
    if isinstance(data, Mapping):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, Mapping) for item in data):
        raise ValueError(f"{message.input_name or 'input'}: expected a JSON array of objects")
    return data


def raw_row(item: Mapping[str, Any]) -> RawRow:
    device_id = str(item.get("deviceId") or "").strip()
    if not device_id:
        raise ValueError("raw row without deviceId")
    # Older producers spell the field "temperatur".
    temperature = item.get("temperature", item.get("temperatur"))
    event_id = item.get("eventId")
    return (
        parse_timestamp(item.get("deviceTime")),
        device_id,
        None if event_id is None else str(event_id),
        _opt_float(temperature),
        _opt_int(item.get("humidity")),
    )


def aggregate_row(item: Mapping[str, Any]) -> AggregateRow:
    device_id = str(item.get("deviceId") or "").strip()
    if not device_id:
        raise ValueError("aggregate row without deviceId")
    return (
        device_id,
        parse_timestamp(item.get("WindowEndTime")),
        _opt_float(item.get("avgTemperature")),
        _opt_float(item.get("avgHumidity")),
    )


class SqlWriter:
    def __init__(self, connect: Callable[[], ContextManager[Any]]):
        self._connect = connect
        self._lock = threading.Lock()
        self.counters: Dict[str, int] = {RAW_INPUT: 0, AGGREGATE_INPUT: 0}

    @classmethod
    def from_dsn(cls, dsn: str) -> "SqlWriter":
        if not dsn:
            raise ValueError("SQL_CONNECTION_STRING is not set")
        return cls(lambda: get_conn(dsn))

    def init_schema(self) -> None:
        with self._connect() as conn:
            conn.autocommit = True
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)

    def _insert(self, sql: str, rows: List[Tuple[Any, ...]]) -> int:
        if not rows:
            return 0
        with self._connect() as conn:
            conn.autocommit = True
            with conn.cursor() as cur:
                psycopg2.extras.execute_values(cur, sql, rows, page_size=500)
        return len(rows)

    def _count(self, input_name: str) -> int:
        with self._lock:
            self.counters[input_name] += 1
            return self.counters[input_name]

    def handle_raw(self, message: Message) -> int:
        n = self._count(RAW_INPUT)
        logger.info("Received raw message: %s", n, extra={"input_name": RAW_INPUT})
        rows = [raw_row(item) for item in parse_batch(message)]
        inserted = self._insert(RAW_INSERT_SQL, rows)
        logger.info("%s rows were inserted into %s", inserted, RAW_TABLE, extra={"rows": inserted})
        return inserted

    def handle_aggregates(self, message: Message) -> int:
        n = self._count(AGGREGATE_INPUT)
        logger.info("Received aggregate message: %s", n, extra={"input_name": AGGREGATE_INPUT})
        rows = [aggregate_row(item) for item in parse_batch(message)]
        inserted = self._insert(AGGREGATE_INSERT_SQL, rows)
        logger.info("%s rows were inserted into %s", inserted, AGGREGATE_TABLE, extra={"rows": inserted})
        return inserted

    def register(self, connection: HubConnection) -> None:
        connection.set_input_message_handler(RAW_INPUT, self.handle_raw)
        connection.set_input_message_handler(AGGREGATE_INPUT, self.handle_aggregates)


def run(
    settings: Optional[ModuleSettings] = None,
    *,
    connection_factory: ConnectionFactory = create_connection,
    writer: Optional[SqlWriter] = None,
    install_signals: bool = True,
    stop: Optional[StopSignal] = None,
) -> int:
    settings = settings or ModuleSettings.from_env()
    setup_logging(log_level=settings.log_level, log_format=settings.log_format, module_id=settings.module_id)

    try:
        writer = writer or SqlWriter.from_dsn(settings.sql_connection_string)
        writer.init_schema()
    except (ValueError, psycopg2.Error) as e:
        logger.error("SQL writer cannot start: %s", e)
        return EXIT_FATAL

    stop = stop or StopSignal()
    if install_signals:
        install_signal_handlers(stop)
    try:
        connection = open_module_connection(settings, stop, connection_factory)
    except (TransportError, DeliveryError) as e:
        logger.error("Could not open module connection: %s", e)
        return startup_exit_code(stop)

    try:
        writer.register(connection)
        stop.wait()
    finally:
        connection.close()

    return stop.exit_code
