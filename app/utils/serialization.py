import json
from typing import Any
from decimal import Decimal
from datetime import datetime, date


def make_json_safe(value: Any) -> Any:
    """
    Convert Python objects into JSON-serialisable structures, preserving
    as much fidelity as possible.
    """
    if isinstance(value, dict):
        return {str(key): make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise convert to string to avoid precision loss
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    return str(value)


def dump_json(value: Any) -> str:
    return json.dumps(make_json_safe(value))


def load_json(raw: Any, default: Any = None) -> Any:
    """Decode a JSON text column; drivers that already decoded it pass through."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, (dict, list)):
        return raw
    return json.loads(raw)


def to_iso(value: Any) -> Any:
    """Render timestamp/date columns as ISO strings regardless of the driver's return type."""
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)
