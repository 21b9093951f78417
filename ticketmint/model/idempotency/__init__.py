# model/idempotency/__init__.py
from typing import Optional, Union
import redis.asyncio as redis

from ...infra.sql import Database
from ._sql import IdempotencyStore as SqlIdempotencyStore
from ._redis import IdempotencyStore as RedisIdempotencyStore

BACKENDS = ("sql", "redis")

IdempotencyStore = Union[SqlIdempotencyStore, RedisIdempotencyStore]


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, backend: str,
              db: Optional[Database] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 24 * 3600) -> IdempotencyStore:
    if backend == "sql":
        if db is None:
            raise RuntimeError("IdempotencyStore(sql) requires db=Database")
        return SqlIdempotencyStore(db=db, ttl_seconds=ttl_seconds)
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "IdempotencyStore(redis) requires r=redis.Redis"
            )
        return RedisIdempotencyStore(r=r, ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown idempotency backend: {backend!r}")


__all__ = [
    "IdempotencyStore", "SqlIdempotencyStore", "RedisIdempotencyStore",
    "new_store", "BACKENDS",
]
