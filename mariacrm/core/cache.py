from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from starlette.requests import Request

from mariacrm.core.config import get_settings
from mariacrm.metrics import observe_context_cache


T = TypeVar("T")
CacheKey = tuple[str, str, str]


@dataclass
class _Entry(Generic[T]):
    value: T
    expires_at: float


class UserContextCache(Generic[T]):
    """Time-boxed read cache for resolved (user, tenant, organization) context.

    Entries are keyed by ``(user_id, tenant_id, organization_id)``. Eviction is
    lazy on read; ``invalidate_user`` drops every entry of a user and is called
    on logout and organization switch. Any entry may be evicted at any time.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[CacheKey, _Entry[T]] = {}

    def get(self, key: CacheKey) -> T | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at <= self._clock():
                del self._entries[key]
                entry = None
        observe_context_cache(hit=entry is not None)
        return entry.value if entry is not None else None

    def set(self, key: CacheKey, value: T) -> None:
        if self._ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + self._ttl_seconds)

    def invalidate_user(self, user_id: str) -> int:
        with self._lock:
            stale = [key for key in self._entries if key[0] == user_id]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def build_context_cache() -> UserContextCache:
    return UserContextCache(ttl_seconds=get_settings().user_context_cache_ttl_seconds)


def get_context_cache(request: Request) -> UserContextCache:
    cache = getattr(request.app.state, "context_cache", None)
    if cache is None:
        cache = build_context_cache()
        request.app.state.context_cache = cache
    return cache
