from __future__ import annotations

from typing import Any

from flask import request

from app.portal.errors import ApiError, ErrorCode


def json_body() -> dict[str, Any]:
    """Parsed JSON object body; anything else is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        if request.get_data(cache=True):
            raise ApiError("Invalid JSON body", ErrorCode.INVALID_INPUT, 400)
        return {}
    if not isinstance(data, dict):
        raise ApiError("Request body must be a JSON object", ErrorCode.INVALID_INPUT, 400)
    return data


def int_arg(name: str, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
    raw = (request.args.get(name) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    if minimum is not None:
        value = max(value, minimum)
    if maximum is not None:
        value = min(value, maximum)
    return value


def bool_arg(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in ("1", "true", "yes")


def required_int_arg(name: str) -> int:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        raise ApiError(f"{name} is required", ErrorCode.MISSING_FIELD, 400, {"field": name})
    try:
        value = int(raw)
    except ValueError:
        raise ApiError(f"{name} must be an integer", ErrorCode.INVALID_INPUT, 400, {"field": name}) from None
    if not 1 <= value <= 2**31 - 1:
        raise ApiError(f"{name} is out of range", ErrorCode.INVALID_INPUT, 400, {"field": name})
    return value
