"""Connection to a ClickHouse server over its HTTP interface."""

from __future__ import annotations

import contextlib
import datetime
import decimal
import json
import logging
import threading
import urllib.error
import urllib.parse
import urllib.request
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

log = logging.getLogger(__name__)

QUERY_SETTINGS = {"max_execution_time": 60}


@dataclass
class ClickHouseConfig:
    """Connection parameters; timeouts are in seconds, zero means none."""

    addresses: list[str] = field(default_factory=list)
    database: str = ""
    username: str = ""
    password: str = ""
    max_open_conns: int = 0
    dial_timeout: float = 0.0
    read_timeout: float = 0.0
    write_timeout: float = 0.0


class ClickHouseError(Exception):
    """Raised when the server cannot be reached or rejects a request."""


def _timeout(value: float | None) -> float | None:
    return value if value and value > 0 else None


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, datetime.date):
        return value.isoformat()
    if isinstance(value, (decimal.Decimal, uuid.UUID)):
        return str(value)
    raise TypeError(f"value of type {type(value).__name__} cannot be sent")


def _transport_error(address: str, exc: Exception) -> ClickHouseError:
    reason = exc.reason if isinstance(exc, urllib.error.URLError) else exc
    if isinstance(reason, ConnectionRefusedError):
        kind = "connection refused"
    elif isinstance(reason, ConnectionResetError):
        kind = "connection reset"
    elif isinstance(reason, TimeoutError):
        kind = "timeout"
    else:
        kind = "bad connection"
    return ClickHouseError(f"{kind} ({address}): {reason}")


class ClickHouseConnection:
    """A pooled, fail-over connection to one or more ClickHouse servers."""

    def __init__(self, config: ClickHouseConfig) -> None:
        if not config.addresses:
            raise ClickHouseError(
                "you should provide at least one server address in config"
            )
        self.config = config
        self._closed = False
        self._preferred = 0
        self._slots = (
            threading.BoundedSemaphore(config.max_open_conns)
            if config.max_open_conns > 0
            else None
        )

    def ping(self, timeout: float | None = None) -> None:
        """Check that a server answers; raise ClickHouseError otherwise."""
        if timeout is None:
            timeout = self.config.dial_timeout
        body = self._request("/ping", None, None, timeout)
        if body.strip() != b"Ok.":
            raise ClickHouseError(f"unexpected ping response: {body!r}")

    def insert(
        self,
        table: str,
        columns: Sequence[str],
        rows: Iterable[Sequence[Any]],
        timeout: float | None = None,
    ) -> None:
        """Insert rows, each holding one value per column, into a table."""
        columns = list(columns)
        if timeout is None:
            timeout = self.config.write_timeout
        lines = []
        for row in rows:
            row = list(row)
            if len(row) != len(columns):
                raise ClickHouseError(
                    f"expected {len(columns)} values in a row, got {len(row)}"
                )
            try:
                lines.append(
                    json.dumps(
                        dict(zip(columns, row)),
                        ensure_ascii=False,
                        default=_encode_value,
                    )
                )
            except (TypeError, ValueError) as exc:
                raise ClickHouseError(f"cannot encode row: {exc}") from exc
        query = f"INSERT INTO {table} ({','.join(columns)}) FORMAT JSONEachRow"
        payload = "".join(line + "\n" for line in lines).encode("utf-8")
        self._request("/", {"query": query}, payload, timeout)

    def close(self) -> None:
        """Close the connection; later requests fail."""
        self._closed = True

    def _request(
        self,
        path: str,
        params: dict[str, str] | None,
        data: bytes | None,
        timeout: float | None,
    ) -> bytes:
        if self._closed:
            raise ClickHouseError("bad connection: connection is closed")
        query: dict[str, Any] = {}
        if params is not None:
            query.update(params)
            if self.config.database:
                query["database"] = self.config.database
            query.update(QUERY_SETTINGS)
        headers = {
            "X-ClickHouse-User": self.config.username,
            "X-ClickHouse-Key": self.config.password,
        }
        count = len(self.config.addresses)
        order = [(self._preferred + step) % count for step in range(count)]
        last_error: ClickHouseError | None = None
        with self._slots or contextlib.nullcontext():
            for index in order:
                address = self.config.addresses[index]
                url = f"http://{address}{path}"
                if query:
                    url += "?" + urllib.parse.urlencode(query)
                request = urllib.request.Request(
                    url,
                    data=data,
                    headers=headers,
                    method="POST" if data is not None else "GET",
                )
                try:
                    with urllib.request.urlopen(
                        request, timeout=_timeout(timeout)
                    ) as response:
                        body = response.read()
                except urllib.error.HTTPError as exc:
                    detail = exc.read().decode("utf-8", "replace").strip()
                    raise ClickHouseError(
                        f"server {address} returned {exc.code}: {detail}"
                    ) from exc
                except (urllib.error.URLError, OSError) as exc:
                    last_error = _transport_error(address, exc)
                    log.debug("request to %s failed: %s", address, last_error)
                    continue
                self._preferred = index
                return body
        assert last_error is not None
        raise last_error


def connect(config: ClickHouseConfig) -> ClickHouseConnection:
    """Open a connection and make sure a server answers within the dial timeout."""
    conn = ClickHouseConnection(config)
    conn.ping(config.dial_timeout)
    return conn