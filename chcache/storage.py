"""Buffered batch writer that flushes rows into a ClickHouse table."""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from .connection import ClickHouseConfig, connect
from .metrics import Metrics

log = logging.getLogger(__name__)

BatchErrorHandler = Callable[[list[dict[str, Any]], Exception], None]

_CONNECTION_ERROR_MARKERS = (
    "bad connection",
    "connection refused",
    "driver: bad connection",
    "connection reset",
)


@dataclass
class StorageConfig:
    """Storage settings; zero values are replaced by defaults, times in seconds."""

    connection: ClickHouseConfig
    table_name: str = ""
    field_names: list[str] = field(default_factory=list)
    write_time: float = 0.0
    max_batch: int = 0
    json_fields: list[str] = field(default_factory=list)
    max_retries: int = 0
    backoff_base: float = 0.0
    backoff_max: float = 0.0


class StorageConfigError(ValueError):
    """Raised when a mandatory storage setting is missing."""


class StorageClosedError(RuntimeError):
    """Raised when rows are added after the storage was told to exit."""


def _with_defaults(config: StorageConfig) -> StorageConfig:
    conn = config.connection
    if not config.table_name:
        raise StorageConfigError("no table name provided in config")
    if not config.field_names:
        raise StorageConfigError("no field names provided in config")
    if not conn.addresses:
        raise StorageConfigError("no ClickHouse address provided in config")
    if not conn.database:
        raise StorageConfigError("no ClickHouse database name provided in config")
    if not conn.username:
        raise StorageConfigError("no ClickHouse user name provided in config")
    conn = dataclasses.replace(
        conn,
        addresses=list(conn.addresses),
        max_open_conns=conn.max_open_conns if conn.max_open_conns > 0 else 10,
        dial_timeout=conn.dial_timeout or 5.0,
        read_timeout=conn.read_timeout or 60.0,
        write_timeout=conn.write_timeout or 60.0,
    )
    return dataclasses.replace(
        config,
        connection=conn,
        field_names=list(config.field_names),
        json_fields=list(config.json_fields),
        write_time=config.write_time or 2.0,
        max_batch=config.max_batch or 500,
        max_retries=config.max_retries or 5,
        backoff_base=config.backoff_base or 1.0,
        backoff_max=config.backoff_max or 30.0,
    )


def is_connection_error(err: Optional[BaseException]) -> bool:
    """Tell whether an error looks like a lost connection."""
    if err is None:
        return False
    message = str(err)
    return any(marker in message for marker in _CONNECTION_ERROR_MARKERS)


def build_args(fields: list[str], row: Mapping[str, Any]) -> list[Any]:
    """Order a row's values by field name; missing fields become ''."""
    return [row.get(name, "") for name in fields]


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


class ClickhouseStorage:
    """Collects rows in memory and writes them to ClickHouse in batches.

    A background thread flushes the buffer every ``write_time`` seconds, and a
    flush also starts whenever the buffer reaches ``max_batch`` rows. Failed
    writes are retried with exponential back-off and, if every attempt fails,
    the rows go back into the buffer.
    """

    def __init__(
        self,
        config: StorageConfig,
        connector: Optional[Callable[[ClickHouseConfig], Any]] = None,
    ) -> None:
        self.config = _with_defaults(config)
        self.metrics = Metrics()
        self.on_batch_error: Optional[BatchErrorHandler] = None
        self._connector = connector or connect
        self._lock = threading.Lock()
        self._data: list[dict[str, Any]] = []
        self._quit = threading.Event()
        self._json_fields = frozenset(self.config.json_fields)
        self._conn = self._connector(self.config.connection)
        self._worker = threading.Thread(
            target=self._work, name="clickhouse-storage-writer", daemon=True
        )
        self._worker.start()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def add(self, row: Mapping[str, Any]) -> None:
        """Buffer one row, serialising its JSON fields to text."""
        if self._quit.is_set():
            log.info("add called after exit, ignoring")
            raise StorageClosedError("storage is exiting")
        record = dict(row)
        for name in self._json_fields:
            value = record.get(name)
            if value is None or isinstance(value, str):
                continue
            try:
                record[name] = _to_json(value)
            except (TypeError, ValueError) as exc:
                log.warning("JSON encoding error for field=%s: %s", name, exc)
                record[name] = ""
        log.debug("adding to buffer: %r", record)
        with self._lock:
            self._data.append(record)
            size = len(self._data)
        max_batch = self.config.max_batch
        log.debug("buffer size: %d (max_batch=%d)", size, max_batch)
        if max_batch > 0 and size >= max_batch:
            log.debug("buffer reached max_batch, flushing")
            threading.Thread(target=self.store, daemon=True).start()

    def store(self) -> None:
        """Write the buffered rows to ClickHouse now."""
        with self._lock:
            batch, self._data = self._data, []
        if not batch:
            log.debug("store: no data to write")
            return
        log.debug("store: writing batch of %d rows", len(batch))
        cfg = self.config
        rows = [build_args(cfg.field_names, row) for row in batch]
        for attempt in range(cfg.max_retries + 1):
            with self._lock:
                conn = self._conn
            try:
                conn.insert(
                    cfg.table_name, cfg.field_names, rows, cfg.connection.write_timeout
                )
            except Exception as exc:
                log.warning("store: insert failed: %s", exc)
                self._handle_failure(batch, exc)
                if attempt < cfg.max_retries:
                    delay = min(cfg.backoff_base * (1 << attempt), cfg.backoff_max)
                    log.debug("store: sleeping %.3fs before retry", delay)
                    time.sleep(delay)
                    continue
                log.warning("store: all retries failed, returning data to buffer")
                with self._lock:
                    self._data.extend(batch)
                return
            log.debug("store: wrote %d rows", len(batch))
            self.metrics.inc_success(len(batch))
            return

    def exit(self) -> None:
        """Refuse further rows and write what is buffered."""
        self._quit.set()
        self.store()

    def _handle_failure(self, batch: list[dict[str, Any]], err: Exception) -> None:
        if is_connection_error(err):
            log.info("store: connection error detected, reconnecting")
            try:
                self._reconnect()
            except Exception as rec_err:
                log.warning("store: reconnect failed: %s", rec_err)
        self.metrics.inc_failed(len(batch))
        if self.on_batch_error is not None:
            self.on_batch_error(batch, err)

    def _reconnect(self) -> None:
        with self._lock:
            fresh = self._connector(self.config.connection)
            old, self._conn = self._conn, fresh
        if old is not None:
            try:
                old.close()
            except Exception as exc:
                log.debug("closing old connection failed: %s", exc)

    def _work(self) -> None:
        while True:
            time.sleep(self.config.write_time)
            self.store()