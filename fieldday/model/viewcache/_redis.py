# redis-backed view cache
from __future__ import annotations
import json
from typing import Any, Optional
import redis.asyncio as redis


def k_view(name: str) -> str: return f"view:{name}"


class RedisBackend:
    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.r.get(k_view(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.r.set(
            k_view(key), json.dumps(value, separators=(",", ":")),
            ex=ttl_seconds,
        )

    async def drop(self, *keys: str) -> None:
        if keys:
            await self.r.delete(*(k_view(k) for k in keys))
