"""
Exactly-once completion for racing result sources.

Address resolution and external tool runs both race a natural completion
against a timer. Whichever settles first wins; every later settle() is a
no-op. The settled flag is checked-and-set under a lock so the guard also
holds when a zeroconf thread races the event loop.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class SingleCompletion(Generic[T]):
    """A result slot that can be settled exactly once."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future[T] = self._loop.create_future()
        self._lock = threading.Lock()
        self._settled = False

    @property
    def settled(self) -> bool:
        return self._settled

    def settle(self, value: T) -> bool:
        """
        Deliver a result.

        Returns True for the call that won the race, False for every
        later call.
        """
        with self._lock:
            if self._settled:
                return False
            self._settled = True

        if self._on_loop_thread():
            self._deliver(value)
        else:
            self._loop.call_soon_threadsafe(self._deliver, value)
        return True

    async def wait(self) -> T:
        """Wait for the winning result."""
        return await asyncio.shield(self._future)

    def _deliver(self, value: T) -> None:
        if not self._future.done():
            self._future.set_result(value)

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False
