"""Per-deal asyncio locks for serialising party and admin actions inside one process"""

import asyncio
import weakref


class DealLockRegistry:
    """Hands out one asyncio.Lock per deal code; unused locks are garbage collected"""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, code: str) -> asyncio.Lock:
        lock = self._locks.get(code)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[code] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)
