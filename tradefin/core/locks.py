"""
Per-key asyncio locks.

All state-changing work on one invoice must be mutually exclusive, while
work on different invoices runs fully in parallel.  :class:`KeyedLock`
hands out one :class:`asyncio.Lock` per key, created on first use and
dropped again once nobody holds or waits for it, so the registry does not
grow with the number of invoices ever touched.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Dict, Hashable

logger = logging.getLogger(__name__)


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    """Registry of reference-counted locks keyed by an arbitrary hashable."""

    def __init__(self) -> None:
        self._slots: Dict[Hashable, _Slot] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the ``async with`` block."""
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._slots[key]

    def locked(self, key: Hashable) -> bool:
        """True while some task holds the lock for ``key``."""
        slot = self._slots.get(key)
        return slot is not None and slot.lock.locked()

    def __len__(self) -> int:
        return len(self._slots)


# Process-wide registry for invoice ids.
invoice_locks = KeyedLock()
