import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List

from services.store import KeyTreeStore, Listener, join_path, split_path

logger = logging.getLogger("ecowaste.store")


class SubscriptionHub:
    """
    Process-wide subscription cache.

    - One store subscription per path, however many consumers watch it.
    - The latest snapshot of every watched path is kept for cheap reads.
    - Each change is fanned out to every consumer of that path.
    """

    def __init__(self, store: KeyTreeStore) -> None:
        self.store = store
        self._cache: Dict[str, Any] = {}
        self._consumers: Dict[str, List[Listener]] = {}
        self._unsubscribe: Dict[str, Callable[[], None]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def is_watched(self, path: str) -> bool:
        return join_path(*split_path(path)) in self._consumers

    async def watch(self, path: str, listener: Listener) -> Callable[[], None]:
        """Register `listener`, deliver the current value to it, and return a detach callable."""
        key = join_path(*split_path(path))
        async with self._locks.setdefault(key, asyncio.Lock()):
            if key not in self._consumers:
                unsubscribe = self.store.subscribe(key, self._fan_out)
                try:
                    value = await self.store.get(key)
                except Exception:
                    unsubscribe()
                    self._cache.pop(key, None)
                    raise
                # A change published while reading is newer than the read.
                self._cache.setdefault(key, value)
                self._unsubscribe[key] = unsubscribe
                self._consumers[key] = []
            self._consumers[key].append(listener)
            current = copy.deepcopy(self._cache[key])
        await listener(key, current)

        def detach() -> None:
            self._detach(key, listener)

        return detach

    async def snapshot(self, path: str) -> Any:
        key = join_path(*split_path(path))
        if key in self._cache:
            return copy.deepcopy(self._cache[key])
        return await self.store.get(key)

    def close(self) -> None:
        for unsubscribe in self._unsubscribe.values():
            unsubscribe()
        self._unsubscribe.clear()
        self._consumers.clear()
        self._cache.clear()
        self._locks.clear()

    def _detach(self, key: str, listener: Listener) -> None:
        consumers = self._consumers.get(key)
        if not consumers or listener not in consumers:
            return
        consumers.remove(listener)
        if not consumers:
            self._unsubscribe.pop(key)()
            del self._consumers[key]
            self._cache.pop(key, None)

    async def _fan_out(self, key: str, value: Any) -> None:
        self._cache[key] = value
        for listener in list(self._consumers.get(key, [])):
            try:
                await listener(key, copy.deepcopy(value))
            except Exception:
                logger.exception("Consumer of %s failed", key)
