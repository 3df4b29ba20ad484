"""Async TTL cache for slowly-changing lookups (phone categories, shift data)."""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class TTLCache(Generic[T]):
    """
    Holds one loaded value for ``ttl_s`` seconds.

    Concurrent callers during a reload share a single loader call.
    ``invalidate()`` forces the next ``get()`` to reload.
    """

    def __init__(self, loader: Callable[[], Awaitable[T]], ttl_s: float = 300,
                 clock: Callable[[], float] = time.monotonic):
        self._loader = loader
        self._ttl = ttl_s
        self._clock = clock
        self._value: Optional[T] = None
        self._loaded_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def is_fresh(self) -> bool:
        return (
            self._loaded_at is not None
            and self._clock() - self._loaded_at < self._ttl
        )

    async def get(self) -> T:
        if self.is_fresh:
            return self._value
        async with self._lock:
            if not self.is_fresh:
                self._value = await self._loader()
                self._loaded_at = self._clock()
        return self._value

    def invalidate(self) -> None:
        self._loaded_at = None

    def peek(self) -> Any:
        return self._value
