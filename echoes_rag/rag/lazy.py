"""
Lazily-initialized handles for heavy resources (models, connections).

A LazyResource starts Uninitialized and becomes Ready exactly once, on the
first ``get()``. Concurrent first callers share the same in-flight load
instead of each loading their own copy; a failed load leaves the handle
Uninitialized so the next caller retries.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Generic, TypeVar

LOG = logging.getLogger("rag.lazy")

T = TypeVar("T")


class LazyResource(Generic[T]):
    """Single-flight holder for a resource built by ``loader``.

    ``loader`` is either a coroutine function or a plain (blocking) callable;
    blocking loaders run in a worker thread so the event loop stays free.
    """

    def __init__(self, name: str, loader: Callable[[], T] | Callable[[], Awaitable[T]]) -> None:
        self._name = name
        self._loader = loader
        self._value: T | None = None
        self._ready = False
        self._lock: asyncio.Lock | None = None

    @property
    def ready(self) -> bool:
        return self._ready

    def peek(self) -> T | None:
        """Return the resource if already loaded, without triggering a load."""
        return self._value

    async def get(self) -> T:
        if self._ready:
            return self._value  # type: ignore[return-value]
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if not self._ready:
                LOG.debug("Initializing %s", self._name)
                if inspect.iscoroutinefunction(self._loader):
                    value = await self._loader()
                else:
                    value = await asyncio.to_thread(self._loader)
                self._value = value
                self._ready = True
        return self._value  # type: ignore[return-value]
