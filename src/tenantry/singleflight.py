"""Single-flight coordination for concurrent identical calls."""

from __future__ import annotations

import asyncio
import threading
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")


class SingleFlight(Generic[K, T]):
    """Share one in-flight call per key between all concurrent callers.

    The first caller for ``key`` starts ``factory()`` as a task; later callers
    await that same task. The entry is removed as soon as the task settles,
    successfully or not, so the next call after settlement starts afresh.
    Waiters are shielded: cancelling one caller does not cancel the shared task.

    Calls are only shared within one event loop. A caller on another loop
    (another thread, say) gets a flight of its own, since a task cannot be
    awaited outside the loop that runs it. The lock guards the table across
    those threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inflight: dict[tuple[asyncio.AbstractEventLoop, K], asyncio.Task[T]] = {}

    async def do(self, key: K, factory: Callable[[], Awaitable[T]]) -> T:
        slot = (asyncio.get_running_loop(), key)
        with self._lock:
            task = self._inflight.get(slot)
            if task is None:
                task = asyncio.ensure_future(factory())
                self._inflight[slot] = task
                task.add_done_callback(lambda done, slot=slot: self._forget(slot, done))
        return await asyncio.shield(task)

    def inflight(self, key: K) -> bool:
        with self._lock:
            return any(pending == key for _, pending in self._inflight)

    def __len__(self) -> int:
        with self._lock:
            return len(self._inflight)

    def _forget(self, slot: tuple[asyncio.AbstractEventLoop, K], task: asyncio.Task[T]) -> None:
        with self._lock:
            if self._inflight.get(slot) is task:
                del self._inflight[slot]
        if not task.cancelled():
            task.exception()  # callers observe failures through the shield


__all__ = ["SingleFlight"]
