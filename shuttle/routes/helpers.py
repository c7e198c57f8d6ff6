"""Request parsing helpers shared by the blueprints."""
from datetime import datetime

from flask import request


def _json_payload():
    """Request body as a dict, or None when it is not a JSON object."""
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return None
    return data


def _coerce_bool(raw_value):
    if isinstance(raw_value, bool):
        return raw_value
    if isinstance(raw_value, (int, float)):
        return raw_value == 1
    if raw_value is None:
        return False
    return str(raw_value).strip().lower() in {'1', 'true', 'yes', 'on'}


def _parse_positive_int(raw_value):
    if isinstance(raw_value, bool):
        return None
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _parse_non_negative_int(raw_value, default=0):
    if raw_value is None or raw_value == '':
        return default
    if isinstance(raw_value, bool):
        return None
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        return None
    return value if value >= 0 else None


def _parse_iso_datetime(raw_value):
    """(value, ok). Empty input is ok and yields None."""
    raw_text = str(raw_value or '').strip()
    if not raw_text:
        return None, True
    try:
        parsed = datetime.fromisoformat(raw_text.replace('Z', '+00:00'))
    except ValueError:
        return None, False
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed, True


def _pagination_args(default_limit=20, max_limit=100):
    limit = _parse_positive_int(request.args.get('limit')) or default_limit
    offset = _parse_non_negative_int(request.args.get('offset'), default=0) or 0
    return min(limit, max_limit), offset
