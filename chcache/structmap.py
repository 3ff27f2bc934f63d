"""Conversion of dataclass instances to column maps."""

from __future__ import annotations

import dataclasses
import datetime
import decimal
import ipaddress
import pathlib
import uuid
from typing import Any

_TEXT_TYPES = (
    uuid.UUID,
    decimal.Decimal,
    ipaddress.IPv4Address,
    ipaddress.IPv6Address,
    pathlib.PurePath,
)


def _is_instance(value: Any) -> bool:
    return dataclasses.is_dataclass(value) and not isinstance(value, type)


def _convert(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, datetime.date):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, _TEXT_TYPES):
        return str(value)
    if _is_instance(value):
        return struct_to_map(value)
    return value


def struct_to_map(model: Any) -> dict[str, Any]:
    """Map a dataclass instance's fields to a dict of column values.

    A field's column name comes from ``metadata["db"]`` and defaults to the
    field name; a name of ``"-"`` leaves the field out. Dates are written as
    ``YYYY-MM-DD``, values with a canonical text form as that text, and
    nested dataclasses as nested maps.
    """
    if not _is_instance(model):
        raise TypeError(f"expected a dataclass instance, got {type(model).__name__}")
    result: dict[str, Any] = {}
    for item in dataclasses.fields(model):
        key = item.metadata.get("db", "")
        if key == "-":
            continue
        result[key or item.name] = _convert(getattr(model, item.name))
    return result