"""Run-scoped registry of generation-service file handles."""
from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .generation import FileHandle

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


class FileHandleRegistry:
    """Hands out unexpired file handles keyed by prepared image key.

    Expiry is checked against the clock before every use. An expired or
    missing handle is replaced by calling ``upload`` once under a per-key
    lock, so concurrent placements of the same product share the new handle.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock
        self._handles: Dict[str, FileHandle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.refreshed: Dict[str, FileHandle] = {}

    def seed(self, key: str, handle: Optional[FileHandle]) -> None:
        if handle is not None and key not in self._handles:
            self._handles[key] = handle

    def current(self, key: str) -> Optional[FileHandle]:
        handle = self._handles.get(key)
        if handle is None or handle.is_expired(self.clock()):
            return None
        return handle

    async def ensure(
        self, key: str, upload: Callable[[], Awaitable[FileHandle]]
    ) -> Tuple[FileHandle, bool]:
        """Return a usable handle for ``key`` and whether this call uploaded it."""

        handle = self.current(key)
        if handle is not None:
            return handle, False
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            handle = self.current(key)
            if handle is not None:
                return handle, False
            handle = await upload()
            self._handles[key] = handle
            self.refreshed[key] = handle
            return handle, True
