from __future__ import annotations

import contextlib
from datetime import datetime, timezone

import pytest

from edgegen import sql_sink
from edgegen.hub import Message
from edgegen.runtime import StopSignal
from edgegen.sql_sink import (
    AGGREGATE_INPUT,
    AGGREGATE_INSERT_SQL,
    RAW_INPUT,
    RAW_INSERT_SQL,
    SqlWriter,
    aggregate_row,
    parse_batch,
    parse_timestamp,
    raw_row,
)


class FakeCursor:
    def __init__(self, log) -> None:
        self.log = log

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None

    def execute(self, sql, params=None) -> None:
        self.log.append(("execute", sql, params))


class FakeConn:
    def __init__(self) -> None:
        self.log = []
        self.autocommit = False
        self.opened = 0

    def cursor(self):
        return FakeCursor(self.log)


@pytest.fixture
def fake_db(monkeypatch):
    conn = FakeConn()

    @contextlib.contextmanager
    def connect():
        conn.opened += 1
        yield conn

    def fake_execute_values(cur, sql, rows, template=None, page_size=100):
        cur.log.append(("execute_values", sql, list(rows)))

    monkeypatch.setattr(sql_sink.psycopg2.extras, "execute_values", fake_execute_values)
    return conn, SqlWriter(connect)


def _msg(body: str, input_name: str = RAW_INPUT) -> Message:
    return Message(body=body.encode("utf-8"), input_name=input_name)


def test_parse_timestamp() -> None:
    assert parse_timestamp("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert parse_timestamp("2024-03-01T10:00:00").tzinfo is timezone.utc
    with pytest.raises(ValueError):
        parse_timestamp("")
    with pytest.raises(ValueError):
        parse_timestamp("yesterday")


def test_parse_batch() -> None:
    assert parse_batch(_msg("")) == []
    assert parse_batch(_msg('[{"deviceId": "a"}]')) == [{"deviceId": "a"}]
    assert parse_batch(_msg('{"deviceId": "a"}')) == [{"deviceId": "a"}]
    with pytest.raises(ValueError):
        parse_batch(_msg("{not json"))
    with pytest.raises(ValueError):
        parse_batch(_msg("[1, 2]"))


def test_raw_row_accepts_legacy_temperature_spelling() -> None:
    row = raw_row(
        {"deviceId": "tempSensor", "eventId": 7, "temperatur": "21.5", "humidity": "55", "deviceTime": "2024-03-01T10:00:00Z"}
    )
    assert row == (datetime(2024, 3, 1, 10, tzinfo=timezone.utc), "tempSensor", "7", 21.5, 55)

    row = raw_row({"deviceId": "t", "temperature": 3, "humidity": None, "deviceTime": "2024-03-01T10:00:00Z"})
    assert row[2:] == (None, 3.0, None)


def test_rows_require_device_id() -> None:
    with pytest.raises(ValueError):
        raw_row({"deviceTime": "2024-03-01T10:00:00Z"})
    with pytest.raises(ValueError):
        aggregate_row({"WindowEndTime": "2024-03-01T10:00:00Z"})


def test_aggregate_row() -> None:
    row = aggregate_row(
        {"deviceId": "tempSensor", "WindowEndTime": "2024-03-01T10:05:00Z", "avgTemperature": "20.25", "avgHumidity": 51.5}
    )
    assert row == ("tempSensor", datetime(2024, 3, 1, 10, 5, tzinfo=timezone.utc), 20.25, 51.5)


def test_handle_raw_inserts_batch(fake_db) -> None:
    conn, writer = fake_db
    body = (
        '[{"deviceId": "tempSensor", "temperature": 20.1, "humidity": 60, "deviceTime": "2024-03-01T10:00:00Z"},'
        ' {"deviceId": "tempSensor", "temperature": 20.4, "humidity": 58, "deviceTime": "2024-03-01T10:00:01Z"}]'
    )

    assert writer.handle_raw(_msg(body)) == 2

    kind, sql, rows = conn.log[0]
    assert kind == "execute_values"
    assert sql == RAW_INSERT_SQL
    assert [r[3] for r in rows] == [20.1, 20.4]
    assert conn.autocommit is True
    assert writer.counters[RAW_INPUT] == 1


def test_handle_aggregates_inserts_batch(fake_db) -> None:
    conn, writer = fake_db
    body = '[{"deviceId": "tempSensor", "WindowEndTime": "2024-03-01T10:05:00Z", "avgTemperature": 20.2, "avgHumidity": 59.0}]'

    assert writer.handle_aggregates(_msg(body, AGGREGATE_INPUT)) == 1
    assert conn.log[0][1] == AGGREGATE_INSERT_SQL
    assert writer.counters[AGGREGATE_INPUT] == 1


def test_empty_body_skips_database(fake_db) -> None:
    conn, writer = fake_db

    assert writer.handle_raw(_msg("")) == 0
    assert conn.opened == 0
    assert writer.counters[RAW_INPUT] == 1


def test_init_schema_creates_tables(fake_db) -> None:
    conn, writer = fake_db
    writer.init_schema()

    kind, sql, _ = conn.log[0]
    assert kind == "execute"
    assert "CREATE TABLE IF NOT EXISTS temperature_humidity" in sql
    assert "CREATE TABLE IF NOT EXISTS aggregated_measurements" in sql


def test_from_dsn_requires_connection_string() -> None:
    with pytest.raises(ValueError):
        SqlWriter.from_dsn("")


def test_run_registers_inputs(fake_db, fake_hub, make_settings) -> None:
    _, writer = fake_db
    stop = StopSignal()
    stop.cancel()

    code = sql_sink.run(
        make_settings(), connection_factory=lambda s, p: fake_hub, writer=writer, install_signals=False, stop=stop
    )

    assert code == 0
    assert set(fake_hub.input_handlers) == {RAW_INPUT, AGGREGATE_INPUT}
    assert fake_hub.closed


def test_run_without_connection_string_exits_1(fake_hub, make_settings) -> None:
    code = sql_sink.run(make_settings(sql_connection_string=""), connection_factory=lambda s, p: fake_hub, install_signals=False)
    assert code == 1
    assert not fake_hub.opened
