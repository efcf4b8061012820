"""
Small composable payload validators.

A validator is a callable taking the raw value and returning a Result. Schemas are
plain dicts of field name -> validator; `parse()` runs one against a JSON payload and
raises a VALIDATION_ERROR ApiError listing every failing field.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from app.portal.errors import ApiError, ErrorCode


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str
    code: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message, "code": self.code}


@dataclass
class Result:
    success: bool
    data: Any = None
    errors: list[FieldError] = field(default_factory=list)


Validator = Callable[[Any], Result]

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)


def _fail(message: str, code: str) -> Result:
    return Result(False, errors=[FieldError("", message, code)])


def _blank(value: Any) -> bool:
    return value is MISSING or value is None or value == ""


def string(
    *,
    min_length: int | None = None,
    max_length: int | None = None,
    pattern: re.Pattern[str] | None = None,
    trim: bool = True,
    required: bool = True,
) -> Validator:
    def validate(value: Any) -> Result:
        if _blank(value):
            if required:
                return _fail("Value is required", "REQUIRED")
            return Result(True, "")
        if not isinstance(value, str):
            return _fail("Must be a string", "INVALID_TYPE")
        s = value.strip() if trim else value
        if min_length and len(s) < min_length:
            return _fail(f"Must be at least {min_length} characters", "TOO_SHORT")
        if max_length and len(s) > max_length:
            return _fail(f"Must be at most {max_length} characters", "TOO_LONG")
        if pattern is not None and not pattern.search(s):
            return _fail("Invalid format", "INVALID_FORMAT")
        return Result(True, s)

    return validate


def email(*, required: bool = True) -> Validator:
    inner = string(pattern=EMAIL_RE, max_length=255, required=required)

    def validate(value: Any) -> Result:
        res = inner(value)
        if res.success and res.data:
            res.data = res.data.lower()
        return res

    return validate


def url(*, required: bool = True, max_length: int = 2000) -> Validator:
    def validate(value: Any) -> Result:
        if _blank(value):
            if required:
                return _fail("URL is required", "REQUIRED")
            return Result(True, "")
        if not isinstance(value, str):
            return _fail("Must be a string", "INVALID_TYPE")
        s = value.strip()
        if len(s) > max_length:
            return _fail(f"Must be at most {max_length} characters", "TOO_LONG")
        parsed = urlparse(s)
        if not parsed.scheme or not parsed.netloc:
            return _fail("Invalid URL", "INVALID_URL")
        return Result(True, s)

    return validate


def number(
    *,
    min_value: float | None = None,
    max_value: float | None = None,
    integer: bool = False,
    required: bool = True,
) -> Validator:
    def validate(value: Any) -> Result:
        if _blank(value):
            if required:
                return _fail("Value is required", "REQUIRED")
            return Result(True, 0)
        if isinstance(value, bool):
            return _fail("Must be a number", "INVALID_TYPE")
        num: Any = value
        if isinstance(value, str):
            try:
                num = float(value.strip())
            except ValueError:
                return _fail("Must be a number", "INVALID_TYPE")
        if not isinstance(num, (int, float)) or num != num:
            return _fail("Must be a number", "INVALID_TYPE")
        if integer:
            if isinstance(num, float) and not num.is_integer():
                return _fail("Must be an integer", "NOT_INTEGER")
            num = int(num)
        if min_value is not None and num < min_value:
            return _fail(f"Must be at least {min_value}", "TOO_SMALL")
        if max_value is not None and num > max_value:
            return _fail(f"Must be at most {max_value}", "TOO_LARGE")
        return Result(True, num)

    return validate


def boolean(*, required: bool = True) -> Validator:
    def validate(value: Any) -> Result:
        if value is MISSING or value is None:
            if required:
                return _fail("Value is required", "REQUIRED")
            return Result(True, False)
        if isinstance(value, bool):
            return Result(True, value)
        if value in ("true", "1"):
            return Result(True, True)
        if value in ("false", "0"):
            return Result(True, False)
        return _fail("Must be a boolean", "INVALID_TYPE")

    return validate


def one_of(values: Iterable[Any], *, required: bool = True) -> Validator:
    choices = tuple(values)

    def validate(value: Any) -> Result:
        if _blank(value):
            if required:
                return _fail("Value is required", "REQUIRED")
            return Result(True, choices[0])
        if value not in choices:
            return _fail(f"Must be one of: {', '.join(str(c) for c in choices)}", "INVALID_VALUE")
        return Result(True, value)

    return validate


def uuid(*, required: bool = True) -> Validator:
    return string(pattern=UUID_RE, required=required)


def date_time(*, required: bool = True) -> Validator:
    """ISO-8601 date or datetime string; yields a naive UTC datetime."""

    def validate(value: Any) -> Result:
        if _blank(value):
            if required:
                return _fail("Date is required", "REQUIRED")
            return Result(True, None)
        if not isinstance(value, str):
            return _fail("Must be a string", "INVALID_TYPE")
        dt = parse_datetime(value)
        if dt is None:
            return _fail("Invalid date format", "INVALID_DATE")
        return Result(True, dt)

    return validate


def date_(*, required: bool = True) -> Validator:
    """ISO-8601 calendar date ("2026-01-31"); a full datetime is truncated to its date."""

    def validate(value: Any) -> Result:
        if _blank(value):
            if required:
                return _fail("Date is required", "REQUIRED")
            return Result(True, None)
        if not isinstance(value, str):
            return _fail("Must be a string", "INVALID_TYPE")
        dt = parse_datetime(value)
        if dt is None:
            return _fail("Invalid date format", "INVALID_DATE")
        return Result(True, dt.date())

    return validate


def optional(validator: Validator, default: Any = MISSING, *, nullable: bool = True) -> Validator:
    """
    Absent -> default (omitted when no default); null/"" -> None; else validator.
    With nullable=False an explicit null/"" is handed to the validator (and rejected there).
    """

    def validate(value: Any) -> Result:
        if value is MISSING:
            return Result(True, default)
        if nullable and (value is None or value == ""):
            return Result(True, None)
        return validator(value)

    return validate


def object_(schema: Mapping[str, Validator]) -> Validator:
    def validate(value: Any) -> Result:
        if not isinstance(value, Mapping):
            return _fail("Must be an object", "INVALID_TYPE")
        out: dict[str, Any] = {}
        errors: list[FieldError] = []
        for key, validator in schema.items():
            res = validator(value.get(key, MISSING))
            if not res.success:
                errors.extend(FieldError(f"{key}.{e.field}" if e.field else key, e.message, e.code) for e in res.errors)
            elif res.data is not MISSING:
                out[key] = res.data
        if errors:
            return Result(False, errors=errors)
        return Result(True, out)

    return validate


def array(
    item: Validator,
    *,
    min_items: int | None = None,
    max_items: int | None = None,
    required: bool = True,
) -> Validator:
    def validate(value: Any) -> Result:
        if value is MISSING or value is None:
            if required:
                return _fail("Value is required", "REQUIRED")
            return Result(True, [])
        if not isinstance(value, list):
            return _fail("Must be an array", "INVALID_TYPE")
        if min_items and len(value) < min_items:
            return _fail(f"Must have at least {min_items} items", "TOO_FEW")
        if max_items and len(value) > max_items:
            return _fail(f"Must have at most {max_items} items", "TOO_MANY")
        out: list[Any] = []
        errors: list[FieldError] = []
        for i, raw in enumerate(value):
            res = item(raw)
            if not res.success:
                errors.extend(FieldError(f"[{i}].{e.field}" if e.field else f"[{i}]", e.message, e.code) for e in res.errors)
            elif res.data is not MISSING:
                out.append(res.data)
        if errors:
            return Result(False, errors=errors)
        return Result(True, out)

    return validate


def mapping(*, required: bool = True) -> Validator:
    """Free-form JSON object (metadata, workflow config)."""

    def validate(value: Any) -> Result:
        if value is MISSING or value is None:
            if required:
                return _fail("Value is required", "REQUIRED")
            return Result(True, {})
        if not isinstance(value, Mapping):
            return _fail("Must be an object", "INVALID_TYPE")
        return Result(True, dict(value))

    return validate


def parse_datetime(raw: str) -> datetime | None:
    s = raw.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def validate(schema: Mapping[str, Validator], payload: Any) -> Result:
    return object_(schema)(payload if payload is not None else {})


def parse(schema: Mapping[str, Validator], payload: Any) -> dict[str, Any]:
    res = validate(schema, payload)
    if not res.success:
        raise ApiError(
            "Validation failed: " + ", ".join(f"{e.field}: {e.message}" for e in res.errors),
            ErrorCode.VALIDATION_ERROR,
            400,
            [e.to_dict() for e in res.errors],
        )
    return res.data


# ---------- files ----------

@dataclass(frozen=True)
class FileRules:
    max_size: int
    allowed_types: tuple[str, ...] = ()
    allowed_extensions: tuple[str, ...] = ()


FILE_VALIDATION: dict[str, FileRules] = {
    "default": FileRules(
        max_size=10 * 1024 * 1024,
        allowed_types=("image/*", "application/pdf", "video/*", "application/zip"),
    ),
    "image": FileRules(
        max_size=5 * 1024 * 1024,
        allowed_types=("image/jpeg", "image/png", "image/gif", "image/webp", "image/svg+xml"),
        allowed_extensions=(".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg"),
    ),
    "document": FileRules(
        max_size=20 * 1024 * 1024,
        allowed_types=(
            "application/pdf",
            "application/msword",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "application/vnd.ms-excel",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "text/plain",
            "text/csv",
        ),
        allowed_extensions=(".pdf", ".doc", ".docx", ".xls", ".xlsx", ".txt", ".csv"),
    ),
    "video": FileRules(
        max_size=100 * 1024 * 1024,
        allowed_types=("video/mp4", "video/webm", "video/quicktime"),
        allowed_extensions=(".mp4", ".webm", ".mov"),
    ),
}


def _type_allowed(mime_type: str, allowed: Iterable[str]) -> bool:
    for a in allowed:
        if a.endswith("/*"):
            if mime_type.startswith(a[:-1]):
                return True
        elif mime_type == a:
            return True
    return False


def validate_file(file_name: str, file_size: int, mime_type: str, rules: FileRules | None = None) -> list[FieldError]:
    rules = rules or FILE_VALIDATION["default"]
    errors: list[FieldError] = []
    if file_size > rules.max_size:
        max_mb = round(rules.max_size / 1024 / 1024)
        errors.append(FieldError("file_size", f"File size exceeds maximum of {max_mb}MB", "FILE_TOO_LARGE"))
    if rules.allowed_types and not _type_allowed(mime_type, rules.allowed_types):
        errors.append(FieldError("mime_type", f"File type {mime_type} is not allowed", "INVALID_FILE_TYPE"))
    if rules.allowed_extensions:
        ext = "." + file_name.rsplit(".", 1)[-1].lower()
        if ext not in rules.allowed_extensions:
            errors.append(FieldError("file_name", f"File extension {ext} is not allowed", "INVALID_EXTENSION"))
    if ".." in file_name or "/" in file_name or "\\" in file_name:
        errors.append(FieldError("file_name", "Invalid file name", "INVALID_FILENAME"))
    return errors


def rules_for_mime(mime_type: str) -> FileRules:
    if mime_type.startswith("image/"):
        return FILE_VALIDATION["image"]
    if mime_type.startswith("video/"):
        return FILE_VALIDATION["video"]
    if _type_allowed(mime_type, FILE_VALIDATION["document"].allowed_types):
        return FILE_VALIDATION["document"]
    return FILE_VALIDATION["default"]
