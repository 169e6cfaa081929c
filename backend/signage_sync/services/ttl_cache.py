from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CachedValue(Generic[T]):
    value: T
    expires_at: float


class TtlCache(Generic[T]):
    """Single-value cache with an explicit expiry. `clock` is injectable for tests."""

    def __init__(self, ttl_sec: float, *, clock: Callable[[], float] = time.monotonic):
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._entry: CachedValue[T] | None = None

    def get(self) -> T | None:
        if self._entry is None:
            return None
        if self._clock() >= self._entry.expires_at:
            self._entry = None
            return None
        return self._entry.value

    def set(self, value: T) -> CachedValue[T]:
        self._entry = CachedValue(value=value, expires_at=self._clock() + self.ttl_sec)
        return self._entry

    def invalidate(self) -> None:
        self._entry = None

    @property
    def entry(self) -> CachedValue[T] | None:
        return self._entry
