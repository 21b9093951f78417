from __future__ import annotations
from typing import Any, Dict, Optional, Protocol

from loguru import logger

from .errors import Conflict, Forbidden, NotFound
from .helpers import now_ts
from .infra.timings import Timings
from .model.store import TicketStore


class OwnerLookup(Protocol):
    async def current_owner(self, asset_id: str) -> Optional[str]: ...


class VerificationGate:
    """Entry check: stored status plus live on-chain ownership.

    ``used`` is a latch. Nothing in this codebase clears it.
    """

    def __init__(self, store: TicketStore, ledger: OwnerLookup,
                 timings: Optional[Timings] = None) -> None:
        self.store = store
        self.ledger = ledger
        self.timings = timings or Timings()

    async def verify_and_consume(
        self, asset_id: str, asserted_owner: Optional[str] = None
    ) -> Dict[str, Any]:
        ticket = await self.store.get_ticket_by_asset(asset_id)
        if ticket is None:
            raise NotFound("Ticket not found in our records.")
        if ticket["is_used"]:
            raise Conflict("Ticket has already been used.")

        expected = asserted_owner or ticket["owner"]
        async with self.timings.timeit("ledger.current_owner"):
            live_owner = await self.ledger.current_owner(asset_id)
        if live_owner is None or live_owner != expected:
            logger.warning(f"ownership mismatch for {asset_id}: expected "
                           f"{expected}, on-chain {live_owner}")
            raise Forbidden(
                "Ticket ownership verification failed on-chain. "
                "This ticket is not held by the expected wallet."
            )

        # conditional latch: a concurrent verify may have won meanwhile
        if not await self.store.consume_ticket(ticket["id"], now_ts()):
            raise Conflict("Ticket has already been used.")
        logger.info(f"ticket {ticket['id']} ({asset_id}) admitted, "
                    f"holder {live_owner}")
        return {"ticket_id": ticket["id"], "owner": live_owner}
