"""
Ticket Store: relational persistence of events, tickets and transactions.

Every public method is one short DB transaction behind the DB gate. Callers
never get a transaction spanning more than one call, so anything that must
hold across rows is expressed as a single conditional statement here:

- the unique asset id on ``tickets`` is the deduplication key,
- ``decrement_available`` is an atomic decrement with a floor at zero,
- ``consume_ticket`` only flips a ticket that is not used yet.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from ..infra.sql import Database
from .orm import (
    Base, Event, Ticket, Transaction,
    T_TRANSFERRED, T_USED,
    TX_PENDING, TX_SUCCESSFUL, TX_FAILED, TX_EXPIRED,
)


class DuplicateAsset(Exception):
    """A ticket row for this asset id was written by someone else first."""

    def __init__(self, asset_id: str) -> None:
        self.asset_id = asset_id
        super().__init__(asset_id)


async def create_schema(db: Database) -> None:
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


EVENT_COLUMNS = """
    id, name, description, date, time, venue, total_tickets,
    available_tickets, price_lamports, price_usd_cents, collection_id,
    issuance_machine_id, is_active, created_at
"""

TICKET_COLUMNS = """
    id, event_id, asset_id, owner, seat_label, status, is_used,
    original_purchaser, original_purchase_at, mint_signature, qr_code_data,
    created_at, last_transfer_at, used_at
"""

TRANSACTION_COLUMNS = """
    id, event_id, buyer_wallet, payment_method, quantity, amount, currency,
    status, ticket_id, signature, payment_session_id, created_at, updated_at
"""


def _row(row) -> Optional[Dict[str, Any]]:
    return dict(row) if row else None


class TicketStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    # ----------------------------
    # internal
    # ----------------------------
    async def _fetch_one(
        self, sql: str, params: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    row = (await session.execute(
                        text(sql), params
                    )).mappings().first()
        return _row(row)

    async def _fetch_all(
        self, sql: str, params: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    rows = (await session.execute(
                        text(sql), params
                    )).mappings().all()
        return [dict(r) for r in rows]

    async def _execute(self, sql: str, params: Dict[str, Any]) -> int:
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    result = await session.execute(text(sql), params)
        return int(result.rowcount or 0)

    async def _add(self, obj) -> None:
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    session.add(obj)

    # ----------------------------
    # Events
    # ----------------------------
    async def insert_event(self, mapping: Dict[str, Any]) -> Dict[str, Any]:
        await self._add(Event(**mapping))
        return await self.get_event(mapping["id"])

    async def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one(
            f"SELECT {EVENT_COLUMNS} FROM events WHERE id = :id",
            {"id": event_id},
        )

    async def list_events(
        self, issuance_machine_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[Dict[str, Any]]:
        where = []
        params: Dict[str, Any] = {}
        if active_only:
            where.append("is_active = :active")
            params["active"] = True
        if issuance_machine_id:
            where.append("issuance_machine_id = :mid")
            params["mid"] = issuance_machine_id
        clause = ("WHERE " + " AND ".join(where)) if where else ""
        return await self._fetch_all(
            f"SELECT {EVENT_COLUMNS} FROM events {clause} "
            f"ORDER BY date ASC, created_at ASC",
            params,
        )

    async def set_event_active(
        self, event_id: str, active: bool
    ) -> Optional[Dict[str, Any]]:
        await self._execute(
            "UPDATE events SET is_active = :active WHERE id = :id",
            {"id": event_id, "active": active},
        )
        return await self.get_event(event_id)

    async def decrement_available(self, event_id: str) -> Optional[int]:
        """
        Atomically take one ticket off the counter.

        Returns the new ``available_tickets`` or None when the counter was
        already at zero (or the event does not exist). Concurrent callers are
        serialized by the row update, so each one observes a distinct value.
        """
        row = await self._fetch_one("""
            UPDATE events
               SET available_tickets = available_tickets - 1
             WHERE id = :id AND available_tickets > 0
            RETURNING available_tickets
        """, {"id": event_id})
        return None if row is None else int(row["available_tickets"])

    # ----------------------------
    # Tickets
    # ----------------------------
    async def insert_ticket(self, mapping: Dict[str, Any]) -> Dict[str, Any]:
        try:
            await self._add(Ticket(**mapping))
        except IntegrityError:
            # unique asset id (or a missing event) -> caller decides
            raise DuplicateAsset(mapping["asset_id"])
        return await self.get_ticket(mapping["id"])

    async def get_ticket(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one(
            f"SELECT {TICKET_COLUMNS} FROM tickets WHERE id = :id",
            {"id": ticket_id},
        )

    async def get_ticket_by_asset(
        self, asset_id: str
    ) -> Optional[Dict[str, Any]]:
        return await self._fetch_one(
            f"SELECT {TICKET_COLUMNS} FROM tickets WHERE asset_id = :a",
            {"a": asset_id},
        )

    async def count_tickets(self, event_id: str) -> int:
        row = await self._fetch_one(
            "SELECT COUNT(*) AS n FROM tickets WHERE event_id = :e",
            {"e": event_id},
        )
        return int(row["n"]) if row else 0

    async def set_seat_label(self, ticket_id: str, label: str) -> None:
        await self._execute(
            "UPDATE tickets SET seat_label = :label WHERE id = :id",
            {"id": ticket_id, "label": label},
        )

    async def update_owner(
        self, ticket_id: str, new_owner: str, at: float
    ) -> bool:
        """Returns False when the stored owner already is ``new_owner``."""
        n = await self._execute("""
            UPDATE tickets
               SET owner = :owner,
                   status = CASE WHEN is_used = :used
                                 THEN status ELSE :transferred END,
                   last_transfer_at = :at
             WHERE id = :id AND owner <> :owner
        """, {
            "id": ticket_id, "owner": new_owner, "at": at,
            "used": True, "transferred": T_TRANSFERRED,
        })
        return n == 1

    async def consume_ticket(self, ticket_id: str, at: float) -> bool:
        """One-way latch. Only the first caller gets True."""
        n = await self._execute("""
            UPDATE tickets
               SET is_used = :used, status = :status, used_at = :at
             WHERE id = :id AND is_used = :not_used
        """, {
            "id": ticket_id, "used": True, "not_used": False,
            "status": T_USED, "at": at,
        })
        return n == 1

    # ----------------------------
    # Transactions
    # ----------------------------
    async def insert_transaction(
        self, mapping: Dict[str, Any]
    ) -> Dict[str, Any]:
        await self._add(Transaction(**mapping))
        return await self.get_transaction(mapping["id"])

    async def get_transaction(
        self, transaction_id: str
    ) -> Optional[Dict[str, Any]]:
        return await self._fetch_one(
            f"SELECT {TRANSACTION_COLUMNS} FROM transactions WHERE id = :id",
            {"id": transaction_id},
        )

    async def get_transaction_by_payment_session(
        self, payment_session_id: str
    ) -> Optional[Dict[str, Any]]:
        return await self._fetch_one(
            f"SELECT {TRANSACTION_COLUMNS} FROM transactions "
            f"WHERE payment_session_id = :ps",
            {"ps": payment_session_id},
        )

    async def mark_transaction_successful(
        self, transaction_id: str, ticket_id: str,
        signature: Optional[str], at: float,
    ) -> bool:
        # a late mint still wins over an expiry; a linked tx stays linked
        n = await self._execute("""
            UPDATE transactions
               SET status = :ok, ticket_id = :ticket_id,
                   signature = :sig, updated_at = :at
             WHERE id = :id AND ticket_id IS NULL
        """, {
            "id": transaction_id, "ok": TX_SUCCESSFUL,
            "ticket_id": ticket_id, "sig": signature, "at": at,
        })
        return n == 1

    async def mark_transaction_failed(
        self, transaction_id: str, at: float
    ) -> bool:
        n = await self._execute("""
            UPDATE transactions SET status = :failed, updated_at = :at
             WHERE id = :id AND status = :pending
        """, {
            "id": transaction_id, "failed": TX_FAILED,
            "pending": TX_PENDING, "at": at,
        })
        return n == 1

    async def expire_pending_transactions(
        self, created_before: float, at: float
    ) -> int:
        return await self._execute("""
            UPDATE transactions SET status = :expired, updated_at = :at
             WHERE status = :pending AND created_at < :cutoff
        """, {
            "expired": TX_EXPIRED, "pending": TX_PENDING,
            "cutoff": created_before, "at": at,
        })
