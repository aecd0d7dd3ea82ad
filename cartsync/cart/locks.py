"""Per-key serialization for cart and wishlist writes.

Writes to different keys never wait on each other; writes to the same key
run one at a time in arrival order.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable, Optional


class KeyedLocks:
    """FIFO asyncio locks created on demand per key and dropped when idle."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def is_busy(self, key: Hashable) -> bool:
        return key in self._users


@dataclass
class _Batch:
    value: Any
    future: asyncio.Future


@dataclass
class _Slot:
    task: Optional[asyncio.Task] = None
    queued: Optional[_Batch] = None
    in_flight: Optional[_Batch] = None


class LatestValueWriter:
    """
    Collapses same-key writes down to the most recent requested value.

    submit(key, value) resolves with the outcome of the write that carried
    the caller's request. A request that arrives while another request for
    the key is still queued replaces the queued value and shares its
    outcome; only one write per key is in flight at a time. Requests for
    the same key issued back-to-back, before the event loop gets a chance
    to start the first write, therefore produce a single write of the last
    value.

    The write callable must not raise; if it does, every caller sharing
    that write gets the exception.
    """

    def __init__(self, write: Callable[[Hashable, Any], Awaitable[Any]]):
        self._write = write
        self._slots: dict[Hashable, _Slot] = {}

    def is_pending(self, key: Hashable) -> bool:
        return key in self._slots

    async def submit(self, key: Hashable, value: Any) -> Any:
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot()

        if slot.queued is not None:
            slot.queued.value = value
            batch = slot.queued
        else:
            batch = slot.queued = _Batch(value, asyncio.get_running_loop().create_future())

        if slot.task is None:
            slot.task = asyncio.create_task(self._drain(key, slot))

        # Shielded: a caller that goes away must not cancel the shared write
        return await asyncio.shield(batch.future)

    async def _drain(self, key: Hashable, slot: _Slot) -> None:
        try:
            while slot.queued is not None:
                batch, slot.queued = slot.queued, None
                slot.in_flight = batch
                try:
                    outcome = await self._write(key, batch.value)
                except Exception as e:
                    batch.future.set_exception(e)
                else:
                    batch.future.set_result(outcome)
                slot.in_flight = None
        finally:
            for leftover in (slot.in_flight, slot.queued):
                if leftover is not None and not leftover.future.done():
                    leftover.future.cancel()
            del self._slots[key]
