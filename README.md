# chcache

`chcache` collects rows in memory and writes them to a ClickHouse table in
batches. A background thread flushes the buffer at a fixed interval, and a
flush also starts as soon as the buffer reaches its batch size. Failed
batches are retried with exponential back-off. If every attempt fails, the
rows go back into the buffer for the next flush.

The package has no dependencies outside the standard library. It talks to
ClickHouse over the server's HTTP interface.

## Installation

```
pip install chcache
```

## Usage

```python
from chcache.connection import ClickHouseConfig
from chcache.storage import ClickhouseStorage, StorageConfig

password = "password"
server = ClickHouseConfig(
    addresses=["localhost:8123"],
    database="default",
    username="default",
    password=password,
)
config = StorageConfig(
    connection=server,
    table_name="events",
    field_names=["id", "name", "payload"],
    json_fields=["payload"],
)

storage = ClickhouseStorage(config)

storage.add({"id": 1, "name": "first", "payload": {"a": 1}})
storage.add({"id": 2, "name": "second"})

storage.store()   # flush now, without waiting for the timer
storage.exit()    # refuse further rows and flush what is left
```

`ClickhouseStorage(config, connector=None)` opens its connection with
`chcache.connection.connect` unless another `connector` is given. A connector
is any callable that takes a `ClickHouseConfig` and returns an object with
`insert(table, columns, rows, timeout)` and `close()`. This lets you write
somewhere else, for example in tests. The same connector is called again
whenever the storage reconnects.

`len(storage)` gives the number of rows currently buffered.

After `exit()`, `add()` raises `StorageClosedError`. A missing mandatory
setting raises `StorageConfigError` when the storage is created. The
mandatory settings are the table name, the column names, at least one server
address, the database name and the user name.

### Rows

Rows are mappings keyed by column name, and `add()` copies each one. When a
batch is written, the values are put in the order of `field_names`
(`build_args`). A column that is missing from a row is written as an empty
string.

A column listed in `json_fields` is serialised to compact JSON text with
sorted keys, unless its value is already a string or is `None`. A value that
cannot be encoded is replaced by an empty string.

`chcache.structmap.struct_to_map` turns a dataclass instance into a row:

```python
from dataclasses import dataclass, field
import datetime

from chcache.structmap import struct_to_map

@dataclass
class Event:
    id: int
    day: datetime.date
    note: str = field(default="", metadata={"db": "comment"})
    internal: int = field(default=0, metadata={"db": "-"})

struct_to_map(Event(1, datetime.date(2024, 5, 1), "hi"))
# {'id': 1, 'day': '2024-05-01', 'comment': 'hi'}
```

The rules are:

- A field's column name comes from `metadata["db"]` and defaults to the
  field name. A name of `"-"` leaves the field out.
- Dates and datetimes are written as `YYYY-MM-DD`.
- UUIDs, decimals, IP addresses and paths are written as their text.
- Nested dataclasses become nested dictionaries.
- Anything that is not a dataclass instance raises `TypeError`.

### Defaults

Times are in seconds. A setting left at zero takes its default.

| Setting                              | Default |
|--------------------------------------|---------|
| `write_time` (flush interval)        | 2       |
| `max_batch`                          | 500     |
| `max_retries`                        | 5       |
| `backoff_base`                       | 1       |
| `backoff_max`                        | 30      |
| `max_open_conns`                     | 10      |
| `dial_timeout`                       | 5       |
| `read_timeout`, `write_timeout`      | 60      |

The delay before retry *n*, counting from 0, is `backoff_base * 2**n`, capped
at `backoff_max`. When an error looks like a lost connection, the storage
reconnects before the next attempt. `is_connection_error` decides this: the
message mentions "bad connection", "connection refused" or "connection
reset".

### Connection

`ClickHouseConnection` sends requests to the addresses (`host:port`) in turn
and starts with the last one that answered. A refused, reset or timed-out
request moves on to the next address. An HTTP error from a server raises
`ClickHouseError` at once.

- `max_open_conns` limits how many requests run at the same time.
- `connect(config)` creates a connection and checks it with `ping()`, using
  the dial timeout.
- Inserts use the write timeout and are sent as `JSONEachRow` with
  `max_execution_time=60`.
- After `close()`, every request fails.

### Monitoring

`storage.metrics` is a `Metrics` object. It counts successful and failed
batch writes and records the size of the last batch. `snapshot()` returns a
consistent `MetricsSnapshot`.

If `storage.on_batch_error` is set, it is called with the batch and the error
after every failed attempt.

## What it does not do

- There is no command-line tool.
- The connection can only ping and insert. It runs no queries and reads no
  data back.
- Connections are plain HTTP. There is no TLS and no native-protocol client.
- `read_timeout` is given a default but is not used by any request.
- The background flushing thread is a daemon thread that runs until the
  process ends. `exit()` stops new rows and flushes, but does not stop that
  thread.

## Running the tests

```
pip install -e .[test]
pytest
```