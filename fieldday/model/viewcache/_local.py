# process-local view cache
from __future__ import annotations
import time
from typing import Any, Dict, Optional, Tuple


class LocalBackend:
    def __init__(self) -> None:
        self._items: Dict[str, Tuple[float, Any]] = {}

    async def get(self, key: str) -> Optional[Any]:
        hit = self._items.get(key)
        if hit is None:
            return None
        expires_at, value = hit
        if expires_at < time.monotonic():
            self._items.pop(key, None)
            return None
        return value

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._items[key] = (time.monotonic() + ttl_seconds, value)

    async def drop(self, *keys: str) -> None:
        for k in keys:
            self._items.pop(k, None)
