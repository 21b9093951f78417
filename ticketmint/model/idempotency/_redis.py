from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


# ---- keys
def k_seen(namespace: str, key: str) -> str: return f"seen:{namespace}:{key}"


class IdempotencyStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def mark_seen(self, namespace: str, key: Optional[str]) -> bool:
        """True if ``key`` is new in ``namespace``, False if seen before."""
        if not key:
            return True
        ok = await self.r.set(k_seen(namespace, key), "1", nx=True,
                              ex=self.ttl)
        return bool(ok)

    async def forget(self, namespace: str, key: str) -> None:
        await self.r.delete(k_seen(namespace, key))
