from __future__ import annotations
from typing import Optional

from sqlalchemy import text

from ...helpers import now_ts
from ...infra.sql import Database


SQL_CREATE_SEEN_KEYS = r"""
CREATE TABLE IF NOT EXISTS seen_keys (
  namespace  TEXT NOT NULL,
  key        TEXT NOT NULL,
  created_at DOUBLE PRECISION NOT NULL,
  PRIMARY KEY (namespace, key)
);
"""


class IdempotencyStore:
    def __init__(self, *, db: Database, ttl_seconds: int) -> None:
        self.db = db
        self.ttl = ttl_seconds

    async def create_schema(self) -> None:
        async with self.db.engine.begin() as conn:
            await conn.execute(text(SQL_CREATE_SEEN_KEYS))

    async def mark_seen(self, namespace: str, key: Optional[str]) -> bool:
        """True if ``key`` is new in ``namespace``, False if seen before."""
        if not key:
            return True
        now = now_ts()
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    # lazy expiry; the row is the gate
                    await session.execute(text("""
                      DELETE FROM seen_keys
                       WHERE namespace = :ns AND key = :k
                         AND created_at < :cutoff
                    """), {"ns": namespace, "k": key,
                           "cutoff": now - self.ttl})
                    row = (await session.execute(text("""
                      INSERT INTO seen_keys(namespace, key, created_at)
                      VALUES (:ns, :k, :now)
                      ON CONFLICT (namespace, key) DO NOTHING
                      RETURNING key
                    """), {"ns": namespace, "k": key, "now": now})).first()
        return row is not None

    async def forget(self, namespace: str, key: str) -> None:
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    await session.execute(text(
                        "DELETE FROM seen_keys "
                        "WHERE namespace = :ns AND key = :k"
                    ), {"ns": namespace, "k": key})
