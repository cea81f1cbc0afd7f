"""Conversion of ORM rows into JSON-ready dictionaries."""
from datetime import datetime
from typing import Any, Dict, Iterable

from sqlalchemy import inspect

from app.utils.time_helpers import to_iso


def model_to_dict(instance: Any, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    """
    Return the column attributes of an ORM instance as a plain dict.

    Datetimes are rendered as ISO-8601 strings with a trailing Z.
    Relationships are not followed.
    """
    skipped = set(exclude)
    data: Dict[str, Any] = {}
    for attr in inspect(instance).mapper.column_attrs:
        if attr.key in skipped:
            continue
        value = getattr(instance, attr.key)
        data[attr.key] = to_iso(value) if isinstance(value, datetime) else value
    return data
