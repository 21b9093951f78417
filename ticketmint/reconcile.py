"""
Reconciliation Engine.

Turns mint-observed facts (from the chain watcher or a client-reported
mint-success), transfer notices and purchase requests into rows, while
tolerating duplicate and out-of-order delivery. Each step is its own store
call; ordering is chosen so that a crash between steps leaves
"ticket exists, counter or transaction linkage lags" and never
"counter decremented, no ticket".
"""
from __future__ import annotations
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from .errors import Internal, InvalidInput, NotFound
from .helpers import (
    collection_symbol, is_valid_address, now_ts, seat_label, sol_to_lamports,
    usd_to_cents, lamports_to_sol,
)
from .infra.timings import Timings
from .ledger.provisioner import Provisioner
from .model.orm import T_PURCHASED, TX_PENDING
from .model.store import DuplicateAsset, TicketStore
from .payments import FIAT_METHODS, PAYMENT_METHODS, PaymentAdapter


PLACEHOLDER_COLLECTION_IMAGE = (
    "https://placehold.co/500x500/000000/FFFFFF?text=Event+Collection"
)


@dataclass
class MintResult:
    ticket: Dict[str, Any]
    created: bool


@dataclass
class TransferResult:
    ticket: Dict[str, Any]
    changed: bool


@dataclass
class PurchaseResult:
    transaction: Dict[str, Any]
    issuance_machine_id: str
    price_lamports: int
    price_usd_cents: Optional[int]
    payment_session: Optional[Dict[str, str]] = None


class ReconciliationEngine:
    def __init__(
        self, store: TicketStore, provisioner: Provisioner,
        payments: PaymentAdapter, timings: Optional[Timings] = None,
    ) -> None:
        self.store = store
        self.provisioner = provisioner
        self.payments = payments
        self.timings = timings or Timings()

    # ----------------------------
    # Mints
    # ----------------------------
    async def record_mint(
        self, event_id: str, asset_id: str, owner: str, signature: str,
        transaction_id: Optional[str] = None,
    ) -> MintResult:
        # 1. duplicate delivery: watcher and client race for the same mint
        existing = await self.store.get_ticket_by_asset(asset_id)
        if existing is not None:
            logger.info(f"mint {asset_id} already recorded as ticket "
                        f"{existing['id']}; skipping")
            # the other reporter may not have known the purchase
            await self._link_transaction(transaction_id, existing, signature)
            return MintResult(existing, created=False)

        # 2.
        event = await self.store.get_event(event_id)
        if event is None:
            raise NotFound("Event not found for ticket processing.")

        # 3. sequential numbering from the counter at read time
        seat_no = event["total_tickets"] - event["available_tickets"] + 1

        # 4.
        now = now_ts()
        try:
            async with self.timings.timeit("store.insert_ticket"):
                ticket = await self.store.insert_ticket({
                    "id": uuid.uuid4().hex,
                    "event_id": event_id,
                    "asset_id": asset_id,
                    "owner": owner,
                    "seat_label": seat_label(seat_no),
                    "status": T_PURCHASED,
                    "is_used": False,
                    "original_purchaser": owner,
                    "original_purchase_at": now,
                    "mint_signature": signature,
                    "qr_code_data": asset_id,
                    "created_at": now,
                })
        except DuplicateAsset:
            # lost the insert race; the winner's row is the answer
            existing = await self.store.get_ticket_by_asset(asset_id)
            if existing is None:
                raise Internal(f"Failed to record ticket for {asset_id}.")
            logger.info(f"mint {asset_id} recorded concurrently as ticket "
                        f"{existing['id']}")
            await self._link_transaction(transaction_id, existing, signature)
            return MintResult(existing, created=False)

        # 5. atomic decrement, floor at zero
        try:
            remaining = await self.store.decrement_available(event_id)
        except SQLAlchemyError as e:
            logger.error(f"event {event_id}: counter not decremented "
                         f"for ticket {ticket['id']}: {e}")
        else:
            if remaining is None:
                logger.warning(f"event {event_id}: available_tickets already "
                               f"0 while recording {asset_id}")
            else:
                # a concurrent mint may have taken our number
                assigned = event["total_tickets"] - remaining
                if assigned != seat_no:
                    ticket["seat_label"] = seat_label(assigned)
                    await self.store.set_seat_label(
                        ticket["id"], ticket["seat_label"]
                    )

        # 6. bookkeeping only; never rolls back the ticket
        await self._link_transaction(transaction_id, ticket, signature)

        logger.info(f"recorded ticket {ticket['id']} ({ticket['seat_label']})"
                    f" for {asset_id} -> {owner}")
        return MintResult(ticket, created=True)

    async def _link_transaction(
        self, transaction_id: Optional[str], ticket: Dict[str, Any],
        signature: str,
    ) -> None:
        if not transaction_id:
            return
        try:
            linked = await self.store.mark_transaction_successful(
                transaction_id, ticket["id"], signature, now_ts()
            )
        except SQLAlchemyError as e:
            logger.error(f"transaction {transaction_id}: "
                         f"status update failed: {e}")
            return
        if not linked:
            logger.warning(f"transaction {transaction_id} missing or already "
                           f"linked; ticket {ticket['id']}")

    # ----------------------------
    # Transfers
    # ----------------------------
    async def record_transfer(
        self, asset_id: str, new_owner: str, signature: str
    ) -> TransferResult:
        ticket = await self.store.get_ticket_by_asset(asset_id)
        if ticket is None:
            raise NotFound("Ticket not found in our records.")
        if ticket["owner"] == new_owner:
            logger.info(f"owner for {asset_id} is already {new_owner}")
            return TransferResult(ticket, changed=False)

        changed = await self.store.update_owner(
            ticket["id"], new_owner, now_ts()
        )
        ticket = await self.store.get_ticket(ticket["id"])
        logger.info(f"ticket {ticket['id']} transferred to {new_owner} "
                    f"(sig {signature})")
        return TransferResult(ticket, changed=changed)

    # ----------------------------
    # Purchases
    # ----------------------------
    async def initiate_purchase(
        self, event_id: str, wallet: str, quantity: int = 1,
        payment_method: str = "SOL",
    ) -> PurchaseResult:
        if not is_valid_address(wallet):
            raise InvalidInput("User wallet address is required.")
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise InvalidInput("Quantity must be an integer.")
        if quantity < 1:
            raise InvalidInput("Quantity must be at least 1.")
        method = (payment_method or "SOL").upper()
        if method not in PAYMENT_METHODS:
            raise InvalidInput(f"Unsupported payment method: {method}.")

        event = await self.store.get_event(event_id)
        if event is None:
            raise NotFound("Event not found.")
        if not event["is_active"]:
            raise InvalidInput("Event is not on sale.")
        if not event["issuance_machine_id"]:
            raise Internal("Issuance machine not configured for this event.")

        # advisory only: nothing is reserved, the machine caps supply
        if event["available_tickets"] < quantity:
            raise InvalidInput(
                "Not enough tickets available. "
                f"Only {event['available_tickets']} left."
            )

        payment_session = None
        if method in FIAT_METHODS:
            if event["price_usd_cents"] is None:
                raise InvalidInput("Event has no fiat price.")
            amount, currency = event["price_usd_cents"] * quantity, "usd"
            payment_session = self.payments.create_intent(
                amount, currency, f"{quantity} x {event['name']}"
            )
        else:
            amount, currency = event["price_lamports"] * quantity, "SOL"

        transaction = await self.store.insert_transaction({
            "id": uuid.uuid4().hex,
            "event_id": event_id,
            "buyer_wallet": wallet.strip(),
            "payment_method": method,
            "quantity": quantity,
            "amount": amount,
            "currency": currency,
            "status": TX_PENDING,
            "payment_session_id": (
                payment_session["payment_session_id"]
                if payment_session else None
            ),
            "created_at": now_ts(),
        })
        return PurchaseResult(
            transaction=transaction,
            issuance_machine_id=event["issuance_machine_id"],
            price_lamports=event["price_lamports"],
            price_usd_cents=event["price_usd_cents"],
            payment_session=payment_session,
        )

    async def apply_payment_event(
        self, payment_session_id: str, kind: str
    ) -> Dict[str, Any]:
        """Fiat gateway outcome. Success is acknowledged only: a transaction
        turns successful through ``record_mint``."""
        tx = await self.store.get_transaction_by_payment_session(
            payment_session_id
        )
        if tx is None:
            raise NotFound("payment session not found")
        if kind in ("failed", "canceled"):
            logger.info(f"transaction {tx['id']}: payment {kind}")
            tx = await self.fail_transaction(tx["id"])
        elif kind != "succeeded":
            raise InvalidInput(f"unknown payment event kind: {kind}")
        return tx

    async def fail_transaction(self, transaction_id: str) -> Dict[str, Any]:
        """A pending transaction turns failed; others come back unchanged."""
        tx = await self.store.get_transaction(transaction_id)
        if tx is None:
            raise NotFound("Transaction not found.")
        await self.store.mark_transaction_failed(transaction_id, now_ts())
        return await self.store.get_transaction(transaction_id)

    async def expire_stale_transactions(self, ttl_seconds: int) -> int:
        now = now_ts()
        n = await self.store.expire_pending_transactions(
            created_before=now - ttl_seconds, at=now
        )
        if n:
            logger.info(f"expired {n} pending transaction(s) older than "
                        f"{ttl_seconds}s")
        return n

    # ----------------------------
    # Event administration
    # ----------------------------
    async def create_event(
        self, *, name: str, date: str, venue: str, total_tickets: int,
        price_sol: float, description: Optional[str] = None,
        time: Optional[str] = None, price_usd: Optional[float] = None,
    ) -> Dict[str, Any]:
        if not name or not date or not venue:
            raise InvalidInput("Missing required event fields.")
        if (isinstance(total_tickets, bool)
                or not isinstance(total_tickets, int) or total_tickets < 1):
            raise InvalidInput("totalTickets must be a positive integer.")
        try:
            price_lamports = sol_to_lamports(price_sol)
            price_usd_cents = (
                None if price_usd is None else usd_to_cents(price_usd)
            )
        except (TypeError, ValueError, OverflowError):
            raise InvalidInput("Prices must be finite numbers.")
        if price_lamports <= 0:
            raise InvalidInput("priceSol must be positive.")

        symbol = collection_symbol(name)
        async with self.timings.timeit("provision.upload_metadata"):
            metadata_uri = await self.provisioner.upload_metadata({
                "name": f"{name} Collection",
                "symbol": symbol,
                "description": f"Official NFT collection for the event: "
                               f"{name}.",
                "image": PLACEHOLDER_COLLECTION_IMAGE,
                "attributes": [
                    {"trait_type": "Type", "value": "Event Collection"},
                    {"trait_type": "Event Name", "value": name},
                ],
            })
        async with self.timings.timeit("provision.create_collection"):
            collection_id = await self.provisioner.create_collection(
                name, symbol, metadata_uri
            )
        async with self.timings.timeit("provision.deploy_machine"):
            machine_id = await self.provisioner.deploy_issuance_machine(
                collection_id, price_lamports, total_tickets
            )

        event = await self.store.insert_event({
            "id": uuid.uuid4().hex,
            "name": name,
            "description": description,
            "date": date,
            "time": time,
            "venue": venue,
            "total_tickets": total_tickets,
            "available_tickets": total_tickets,
            "price_lamports": price_lamports,
            "price_usd_cents": price_usd_cents,
            "collection_id": collection_id,
            "issuance_machine_id": machine_id,
            "is_active": True,
            "created_at": now_ts(),
        })
        logger.info(f"event {event['id']} {name!r}: {total_tickets} tickets "
                    f"at {lamports_to_sol(price_lamports)} SOL, "
                    f"machine {machine_id}")
        return event

    async def deactivate_event(self, event_id: str) -> Dict[str, Any]:
        event = await self.store.set_event_active(event_id, False)
        if event is None:
            raise NotFound("Event not found.")
        return event
