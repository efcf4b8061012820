"""
In-memory fixed-window rate limiter.

State is process-local: each gunicorn worker keeps its own counters, so limits are
per worker rather than global. Good enough to blunt brute force and runaway clients.
"""
from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import Request, current_app, g, request

from app.portal.errors import ApiError, ErrorCode


@dataclass(frozen=True)
class RateLimitConfig:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: float  # epoch seconds when the window resets


RATE_LIMIT_PRESETS: dict[str, RateLimitConfig] = {
    "webhook": RateLimitConfig(limit=100, window_seconds=60),
    "analytics": RateLimitConfig(limit=10, window_seconds=60),
    "mutation": RateLimitConfig(limit=60, window_seconds=60),
    "read": RateLimitConfig(limit=120, window_seconds=60),
    "strict": RateLimitConfig(limit=5, window_seconds=60),
    "default": RateLimitConfig(limit=60, window_seconds=60),
    "auth": RateLimitConfig(limit=5, window_seconds=15 * 60),
    "write": RateLimitConfig(limit=30, window_seconds=60),
}

# key -> (count, reset_at)
_entries: dict[str, tuple[int, float]] = {}
_last_sweep = 0.0
_SWEEP_INTERVAL = 60.0


class RateLimitExceeded(ApiError):
    def __init__(self, result: RateLimitResult):
        retry_after = max(1, math.ceil(result.reset - time.time()))
        super().__init__(
            "Too many requests",
            ErrorCode.RATE_LIMIT_EXCEEDED,
            429,
            {"retryAfter": retry_after},
            headers=_headers(result, retry_after=retry_after),
        )
        self.result = result


def _headers(result: RateLimitResult, retry_after: int | None = None) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(math.ceil(result.reset))),
    }
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return headers


def _sweep(now: float) -> None:
    global _last_sweep
    if now - _last_sweep < _SWEEP_INTERVAL:
        return
    _last_sweep = now
    for key in [k for k, (_, reset_at) in _entries.items() if reset_at <= now]:
        _entries.pop(key, None)


def check_rate_limit(identifier: str, config: RateLimitConfig | str) -> RateLimitResult:
    if isinstance(config, str):
        config = RATE_LIMIT_PRESETS[config]
    now = time.time()
    _sweep(now)

    key = f"{identifier}:{config.window_seconds}:{config.limit}"
    entry = _entries.get(key)
    if entry is None or entry[1] <= now:
        reset_at = now + config.window_seconds
        _entries[key] = (1, reset_at)
        return RateLimitResult(success=True, limit=config.limit, remaining=config.limit - 1, reset=reset_at)

    count, reset_at = entry
    count += 1
    _entries[key] = (count, reset_at)
    if count > config.limit:
        return RateLimitResult(success=False, limit=config.limit, remaining=0, reset=reset_at)
    return RateLimitResult(success=True, limit=config.limit, remaining=config.limit - count, reset=reset_at)


def reset_rate_limits() -> None:
    global _last_sweep
    _entries.clear()
    _last_sweep = 0.0


def get_client_identifier(req: Request) -> str:
    cf_ip = (req.headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip
    real_ip = (req.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    forwarded = (req.headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip()
    return req.remote_addr or "unknown"


def user_identifier(user_id: int | str) -> str:
    return f"user:{user_id}"


def enforce_rate_limit(preset: str, identifier: str | None = None) -> RateLimitResult | None:
    """Raise RateLimitExceeded when over the limit; no-op when limiting is disabled."""
    if not current_app.config.get("RATE_LIMIT_ENABLED", True):
        return None
    config = RATE_LIMIT_PRESETS[preset]
    ident = identifier or get_client_identifier(request)
    result = check_rate_limit(f"{preset}:{ident}", config)
    if not result.success:
        current_app.logger.warning(
            "Rate limit exceeded preset=%s identifier=%s request_id=%s", preset, ident, getattr(g, "request_id", None)
        )
        raise RateLimitExceeded(result)
    g.rate_limit_result = result
    return result


def rate_limit(preset: str = "default", *, per_user: bool = False) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            identifier = None
            user = getattr(g, "current_user", None)
            if per_user and user is not None:
                identifier = user_identifier(user.id)
            enforce_rate_limit(preset, identifier)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def apply_rate_limit_headers(response):
    result: RateLimitResult | None = getattr(g, "rate_limit_result", None)
    if result is not None:
        for k, v in _headers(result).items():
            response.headers.setdefault(k, v)
    return response
