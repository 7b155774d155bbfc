"""Field-level change diffs for the audit trail.

Every diff is a mapping of field name to ``{"old": ..., "new": ...}`` with
values reduced to JSON primitives, so entries never depend on ORM or driver
types. The functions are pure and never raise for well-formed mappings.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import inspect


# Fields the storage layer assigns on its own.
SYSTEM_FIELDS = frozenset({"id", "created_at", "updated_at"})
# The modification timestamp changes on every write and carries no information.
UPDATE_EXCLUDED_FIELDS = frozenset({"updated_at"})

FieldChange = dict[str, Any]
Changes = dict[str, FieldChange]


def model_fields(row: Any) -> dict[str, Any]:
    # Read mapped column values only; relationships would trigger lazy loads.
    mapper = inspect(row).mapper
    return {attr.key: getattr(row, attr.key) for attr in mapper.column_attrs}


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps come back from SQLite; they were written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return serialize_value(value.value)
    if isinstance(value, bool):
        return value
    if isinstance(value, datetime):
        return _as_utc(value).isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        # Integral decimals stay integers so 5.00 and 5 read the same in a diff.
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, Mapping):
        return {str(key): serialize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [serialize_value(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=repr)
        return items
    return value


def values_differ(old: Any, new: Any) -> bool:
    if old is None and new is None:
        return False
    if old is None or new is None:
        return True
    if isinstance(old, datetime) and isinstance(new, datetime):
        return _as_utc(old) != _as_utc(new)
    if isinstance(old, bool) or isinstance(new, bool):
        # True == 1 in Python; a flag flipping to a number is still a change.
        return type(old) is not type(new) or old != new
    # Structured values and decimals compare by their serialized form.
    return serialize_value(old) != serialize_value(new)


def diff_for_create(new_fields: Mapping[str, Any]) -> Changes:
    return {
        key: {"old": None, "new": serialize_value(value)}
        for key, value in new_fields.items()
        if key not in SYSTEM_FIELDS
    }


def diff_for_update(old_fields: Mapping[str, Any], new_fields: Mapping[str, Any]) -> Changes:
    """Return only the fields whose values differ; empty means nothing to record.

    Keys present on one side only are compared against an absent value, so
    removing a field is reported the same way as clearing it.
    """
    changes: Changes = {}
    keys = list(new_fields.keys()) + [key for key in old_fields if key not in new_fields]
    for key in keys:
        if key in UPDATE_EXCLUDED_FIELDS:
            continue
        old_value = old_fields.get(key)
        new_value = new_fields.get(key)
        if values_differ(old_value, new_value):
            changes[key] = {"old": serialize_value(old_value), "new": serialize_value(new_value)}
    return changes


def diff_for_delete(old_fields: Mapping[str, Any]) -> Changes:
    return {
        key: {"old": serialize_value(value), "new": None}
        for key, value in old_fields.items()
        if key not in SYSTEM_FIELDS
    }
