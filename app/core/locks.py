import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

log = logging.getLogger("locks")


class KeyedLock:
    """
    Per-entity mutual exclusion for coroutines in this process.

    One asyncio.Lock per key, created on first use and dropped once nobody holds
    or waits for it. Cross-process safety comes from the version-guarded
    conditional updates in app.core.db; these locks keep same-process requests
    from even attempting a conflicting write.
    """

    def __init__(self, namespace: str):
        self.namespace = namespace
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def _key(self, entity_id) -> str:
        return f"{self.namespace}:{entity_id}:lock"

    @asynccontextmanager
    async def hold(self, entity_id):
        if entity_id is None:
            # Nothing to serialize on (e.g. order without a courier).
            yield
            return
        key = self._key(entity_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                log.debug(f"Acquired {key}")
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, entity_id) -> bool:
        lock = self._locks.get(self._key(entity_id))
        return bool(lock and lock.locked())


# Acquisition order is always order -> agent -> restaurant.
order_locks = KeyedLock("order")
agent_locks = KeyedLock("agent")
restaurant_locks = KeyedLock("restaurant")
