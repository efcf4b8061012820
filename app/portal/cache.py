"""
Process-local TTL cache.

Advisory only: entries may vanish at any time (restart, another worker), so callers
must always be able to recompute. Expiry is checked lazily on read.
"""
from __future__ import annotations

import fnmatch
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

T = TypeVar("T")


@dataclass
class _Entry:
    value: Any
    expires_at: float


class TTLCache:
    def __init__(self, default_ttl: int = 300):
        self.default_ttl = default_ttl
        self._store: dict[str, _Entry] = {}

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        seconds = self.default_ttl if ttl is None else ttl
        self._store[key] = _Entry(value=value, expires_at=time.time() + seconds)

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at <= time.time():
            self._store.pop(key, None)
            return None
        return entry.value

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern ("requests:*"). Returns the number removed."""
        doomed = [k for k in self._store if fnmatch.fnmatchcase(k, pattern)]
        for k in doomed:
            del self._store[k]
        return len(doomed)

    def clear(self) -> None:
        self._store.clear()

    def size(self) -> int:
        return len(self._store)

    def get_or_set(self, key: str, factory: Callable[[], T], ttl: int | None = None) -> T:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = factory()
        self.set(key, value, ttl)
        return value


cache = TTLCache()


class cache_ttl:
    SHORT = 30
    MEDIUM = 300
    LONG = 900
    HOUR = 3600


class cache_keys:
    @staticmethod
    def analytics(period: str | int = "all") -> str:
        return f"analytics:{period}"

    @staticmethod
    def company(company_id: int | str) -> str:
        return f"company:{company_id}"

    @staticmethod
    def requests(company_id: int | str, filters: str = "") -> str:
        return f"requests:{company_id}:{filters}"

    @staticmethod
    def team_members() -> str:
        return "team-members:list"

    @staticmethod
    def mrr() -> str:
        return "mrr:total"


def invalidate_cache(keys: Iterable[str]) -> int:
    removed = 0
    for key in keys:
        if any(ch in key for ch in "*?["):
            removed += cache.delete_pattern(key)
        elif cache.delete(key):
            removed += 1
    return removed


def generate_cache_control(
    *,
    max_age: int = 0,
    swr: int = 0,
    public: bool = False,
    no_store: bool = False,
    must_revalidate: bool = False,
) -> str:
    if no_store:
        return "no-store, no-cache, must-revalidate"
    directives = ["public" if public else "private"]
    if max_age > 0:
        directives.append(f"max-age={max_age}")
    if swr > 0:
        directives.append(f"stale-while-revalidate={swr}")
    if must_revalidate:
        directives.append("must-revalidate")
    return ", ".join(directives)


CACHE_PRESETS = {
    "none": {"no_store": True},
    "user_private": {"max_age": cache_ttl.SHORT, "swr": 60},
    "list_data": {"max_age": cache_ttl.SHORT, "swr": 60},
    "analytics": {"max_age": cache_ttl.MEDIUM, "swr": cache_ttl.MEDIUM},
    "reference": {"max_age": cache_ttl.MEDIUM, "swr": cache_ttl.MEDIUM},
}


def with_cache_headers(response, preset: str):
    response.headers["Cache-Control"] = generate_cache_control(**CACHE_PRESETS[preset])
    return response
