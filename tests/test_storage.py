import json
import threading

import pytest

from chcache.connection import ClickHouseConfig, ClickHouseError
from chcache.storage import (
    ClickhouseStorage,
    StorageClosedError,
    StorageConfig,
    StorageConfigError,
    build_args,
    is_connection_error,
)


class FakeConnection:
    def __init__(self, failures=0, message="boom"):
        self.failures = failures
        self.message = message
        self.inserts = []
        self.closed = False
        self.inserted = threading.Event()

    def insert(self, table, columns, rows, timeout=None):
        if self.failures:
            self.failures -= 1
            raise ClickHouseError(self.message)
        self.inserts.append((table, list(columns), [list(r) for r in rows], timeout))
        self.inserted.set()

    def close(self):
        self.closed = True


class FakeConnector:
    def __init__(self, *connections):
        self.pending = list(connections)
        self.configs = []
        self.created = []

    def __call__(self, config):
        self.configs.append(config)
        conn = self.pending.pop(0) if self.pending else FakeConnection()
        self.created.append(conn)
        return conn


def _conn_config(**overrides):
    values = dict(addresses=["localhost:8123"], database="default", username="default")
    values.update(overrides)
    return ClickHouseConfig(**values)


def make_config(**overrides):
    values = dict(
        connection=_conn_config(),
        table_name="events",
        field_names=["id", "name", "meta"],
        write_time=3600.0,
        backoff_base=0.001,
        backoff_max=0.001,
    )
    values.update(overrides)
    return StorageConfig(**values)


@pytest.mark.parametrize(
    "config, message",
    [
        (make_config(table_name=""), "no table name"),
        (make_config(field_names=[]), "no field names"),
        (make_config(connection=_conn_config(addresses=[])), "no ClickHouse address"),
        (make_config(connection=_conn_config(database="")), "database name"),
        (make_config(connection=_conn_config(username="")), "user name"),
    ],
)
def test_missing_settings_are_rejected(config, message):
    with pytest.raises(StorageConfigError, match=message):
        ClickhouseStorage(config, FakeConnector())


def test_defaults_are_applied():
    connector = FakeConnector()
    storage = ClickhouseStorage(make_config(write_time=0.0), connector)
    cfg = storage.config
    assert (cfg.write_time, cfg.max_batch, cfg.max_retries) == (2.0, 500, 5)
    assert connector.configs[0].max_open_conns == 10
    assert connector.configs[0].dial_timeout == 5.0
    assert connector.configs[0].write_timeout == 60.0


def test_store_writes_rows_in_field_order():
    conn = FakeConnection()
    storage = ClickhouseStorage(make_config(), FakeConnector(conn))
    storage.add({"name": "a", "id": 1, "extra": True})
    storage.add({"id": 2, "name": None, "meta": "m"})
    storage.store()
    table, columns, rows, timeout = conn.inserts[0]
    assert table == "events"
    assert columns == ["id", "name", "meta"]
    assert rows == [[1, "a", ""], [2, None, "m"]]
    assert timeout == 60.0
    assert storage.metrics.snapshot().success_inserts == 1
    assert len(storage) == 0


def test_json_fields_are_serialised():
    conn = FakeConnection()
    storage = ClickhouseStorage(make_config(json_fields=["meta"]), FakeConnector(conn))
    payload = {"b": [1, 2], "a": {"x": "ü"}}
    storage.add({"id": 1, "meta": payload})
    storage.add({"id": 2, "meta": "already text"})
    storage.add({"id": 3, "meta": None})
    storage.add({"id": 4, "meta": {1, 2}})
    storage.store()
    rows = conn.inserts[0][2]
    assert json.loads(rows[0][2]) == payload
    assert rows[1][2] == "already text"
    assert rows[2][2] is None
    assert rows[3][2] == ""


def test_add_does_not_modify_callers_row():
    storage = ClickhouseStorage(make_config(json_fields=["meta"]), FakeConnector())
    row = {"id": 1, "meta": [1]}
    storage.add(row)
    assert row == {"id": 1, "meta": [1]}


def test_empty_store_writes_nothing():
    conn = FakeConnection()
    storage = ClickhouseStorage(make_config(), FakeConnector(conn))
    storage.store()
    assert conn.inserts == []
    assert storage.metrics.snapshot().success_inserts == 0


def test_exit_flushes_and_refuses_new_rows():
    conn = FakeConnection()
    storage = ClickhouseStorage(make_config(), FakeConnector(conn))
    storage.add({"id": 1})
    storage.exit()
    assert conn.inserts[0][2] == [[1, "", ""]]
    with pytest.raises(StorageClosedError, match="storage is exiting"):
        storage.add({"id": 2})


def test_retry_after_failure_reports_error():
    conn = FakeConnection(failures=1)
    storage = ClickhouseStorage(make_config(max_retries=2), FakeConnector(conn))
    calls = []
    storage.on_batch_error = lambda batch, err: calls.append((batch, str(err)))
    storage.add({"id": 1})
    storage.store()
    assert calls == [([{"id": 1}], "boom")]
    snap = storage.metrics.snapshot()
    assert (snap.success_inserts, snap.failed_inserts, snap.last_batch_size) == (1, 1, 1)
    assert len(conn.inserts) == 1


def test_all_retries_failed_returns_rows_to_buffer():
    conn = FakeConnection(failures=10)
    connector = FakeConnector(conn)
    storage = ClickhouseStorage(make_config(max_retries=1), connector)
    storage.add({"id": 1})
    storage.store()
    assert storage.metrics.snapshot().failed_inserts == 2
    assert len(storage) == 1
    assert len(connector.created) == 1
    conn.failures = 0
    storage.store()
    assert conn.inserts[0][2] == [[1, "", ""]]
    assert len(storage) == 0


def test_connection_error_triggers_reconnect():
    first = FakeConnection(failures=1, message="dial tcp: connection refused")
    second = FakeConnection()
    connector = FakeConnector(first, second)
    storage = ClickhouseStorage(make_config(max_retries=1), connector)
    storage.add({"id": 5})
    storage.store()
    assert first.closed
    assert second.inserts[0][2] == [[5, "", ""]]
    assert len(connector.created) == 2


def test_max_batch_triggers_flush():
    conn = FakeConnection()
    storage = ClickhouseStorage(make_config(max_batch=2), FakeConnector(conn))
    storage.add({"id": 1})
    assert not conn.inserted.is_set()
    storage.add({"id": 2})
    assert conn.inserted.wait(5)
    assert conn.inserts[0][2] == [[1, "", ""], [2, "", ""]]


def test_periodic_worker_flushes():
    conn = FakeConnection()
    storage = ClickhouseStorage(make_config(write_time=0.05), FakeConnector(conn))
    storage.add({"id": 9})
    assert conn.inserted.wait(5)
    assert conn.inserts[0][2] == [[9, "", ""]]


@pytest.mark.parametrize(
    "err, expected",
    [
        (None, False),
        (Exception("driver: bad connection"), True),
        (Exception("dial tcp: connection refused"), True),
        (Exception("read: connection reset by peer"), True),
        (Exception("syntax error"), False),
    ],
)
def test_is_connection_error(err, expected):
    assert is_connection_error(err) is expected


def test_build_args_fills_missing_with_empty_string():
    assert build_args(["a", "b", "c"], {"c": 3, "a": None}) == [None, "", 3]