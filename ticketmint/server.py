from __future__ import annotations
import asyncio
import contextlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, Request
from fastapi.responses import ORJSONResponse
from loguru import logger
from starlette.middleware.sessions import SessionMiddleware

from .config import Config
from .errors import (
    InvalidInput, NotFound, Unauthorized, register_error_handlers,
)
from .helpers import ct_equal, is_valid_address, lamports_to_sol, to_iso
from .infra.sql import Database, make_database
from .infra.timings import Timings
from .ledger.client import LedgerClient
from .ledger.instructions import InstructionDecoder, build_layouts
from .ledger.provisioner import HttpProvisioner, MockProvisioner, Provisioner
from .logs import configure_logging
from .model.idempotency import IdempotencyStore, SqlIdempotencyStore, new_store
from .model.store import TicketStore, create_schema
from .payments import MockPay, PaymentAdapter, verify_signature
from .reconcile import ReconciliationEngine
from .verify import OwnerLookup, VerificationGate
from .watcher import ChainWatcher, ReconnectPolicy


NOTIFIER_SIGNATURE_HEADER = "x-ticketmint-signature"
PAYMENT_EVENT_NAMESPACE = "payment-event"


# ----------------------------
# Service handles (explicitly constructed, no module singletons)
# ----------------------------
@dataclass
class Services:
    config: Config
    db: Database
    store: TicketStore
    ledger: OwnerLookup
    provisioner: Provisioner
    payments: PaymentAdapter
    engine: ReconciliationEngine
    gate: VerificationGate
    seen: IdempotencyStore
    timings: Timings
    http: Optional[httpx.AsyncClient] = None
    redis: Optional[redis.Redis] = None
    watcher: Optional[ChainWatcher] = None


def build_services(
    config: Config, *,
    db: Optional[Database] = None,
    ledger: Optional[OwnerLookup] = None,
    provisioner: Optional[Provisioner] = None,
    payments: Optional[PaymentAdapter] = None,
) -> Services:
    timings = Timings()
    db = db or make_database(
        config.database_url,
        pool_size=config.db_pool_size,
        max_overflow=config.db_max_overflow,
        pool_timeout=config.db_pool_timeout,
        gate_limit=config.db_gate_limit,
    )
    http = httpx.AsyncClient(
        timeout=config.ledger_timeout,
        limits=httpx.Limits(max_connections=64,
                            max_keepalive_connections=64),
    )

    if ledger is None:
        ledger = LedgerClient(http, config.solana_rpc_url,
                              commitment=config.ledger_commitment,
                              timings=timings)
    if provisioner is None:
        if config.provisioner_backend == "http":
            provisioner = HttpProvisioner(http, config.provisioner_url,
                                          config.metadata_upload_url)
        else:
            provisioner = MockProvisioner()
    payments = payments or MockPay(config.mock_secret)

    r = None
    if config.idempotency_backend == "redis":
        r = redis.from_url(
            config.redis_url,
            decode_responses=True,
            max_connections=config.redis_max_conn,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    seen = new_store(backend=config.idempotency_backend, db=db, r=r)

    store = TicketStore(db)
    engine = ReconciliationEngine(store, provisioner, payments, timings)
    gate = VerificationGate(store, ledger, timings)

    watcher = None
    if config.watcher_enabled and isinstance(ledger, LedgerClient):
        watcher = ChainWatcher(
            ws_url=config.solana_ws_url,
            program_id=config.issuance_program_id,
            ledger=ledger, store=store, engine=engine, seen=seen,
            decoder=InstructionDecoder(
                build_layouts(config.issuance_program_id)
            ),
            policy=ReconnectPolicy(
                delay=config.watcher_reconnect_delay,
                backoff=config.watcher_reconnect_backoff,
                max_attempts=config.watcher_max_attempts,
            ),
            commitment=config.ledger_commitment,
        )

    return Services(
        config=config, db=db, store=store, ledger=ledger,
        provisioner=provisioner, payments=payments, engine=engine,
        gate=gate, seen=seen, timings=timings, http=http, redis=r,
        watcher=watcher,
    )


# ----------------------------
# Projections
# ----------------------------
def event_out(e: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": e["id"],
        "name": e["name"],
        "description": e["description"],
        "date": e["date"],
        "time": e["time"],
        "venue": e["venue"],
        "totalTickets": e["total_tickets"],
        "availableTickets": e["available_tickets"],
        "priceSol": lamports_to_sol(e["price_lamports"]),
        "priceLamports": e["price_lamports"],
        "priceUsd": (None if e["price_usd_cents"] is None
                     else e["price_usd_cents"] / 100),
        "collectionId": e["collection_id"],
        "issuanceMachineId": e["issuance_machine_id"],
        "isActive": bool(e["is_active"]),
        "createdAt": to_iso(e["created_at"]),
    }


def ticket_out(t: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": t["id"],
        "eventId": t["event_id"],
        "assetId": t["asset_id"],
        "owner": t["owner"],
        "seatLabel": t["seat_label"],
        "status": t["status"],
        "isUsed": bool(t["is_used"]),
        "originalPurchaser": t["original_purchaser"],
        "originalPurchaseAt": to_iso(t["original_purchase_at"]),
        "mintSignature": t["mint_signature"],
        "qrCodeData": t["qr_code_data"],
        "createdAt": to_iso(t["created_at"]),
        "lastTransferAt": to_iso(t["last_transfer_at"]),
        "usedAt": to_iso(t["used_at"]),
    }


def transaction_out(tx: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": tx["id"],
        "eventId": tx["event_id"],
        "buyerWallet": tx["buyer_wallet"],
        "paymentMethod": tx["payment_method"],
        "quantity": tx["quantity"],
        "amount": tx["amount"],
        "currency": tx["currency"],
        "status": tx["status"],
        "ticketId": tx["ticket_id"],
        "signature": tx["signature"],
        "createdAt": to_iso(tx["created_at"]),
    }


def _required(payload: Dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields
               if not isinstance(payload.get(f), str)
               or not payload.get(f).strip()]
    if missing:
        raise InvalidInput(f"Missing required fields: {', '.join(missing)}.")


def _json_body(raw: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw.decode() or "{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidInput("Invalid JSON")
    if not isinstance(payload, dict):
        raise InvalidInput("Expected a JSON object")
    return payload


# ----------------------------
# App factory
# ----------------------------
def create_app(config: Optional[Config] = None,
               services: Optional[Services] = None) -> FastAPI:
    config = config or (services.config if services else Config.from_env())
    services = services or build_services(config)

    app = FastAPI(
        title="ticketmint",
        default_response_class=ORJSONResponse,
    )
    app.state.services = services
    app.add_middleware(SessionMiddleware, secret_key=config.session_secret)
    register_error_handlers(app)

    def get_services(request: Request) -> Services:
        return request.app.state.services

    def require_admin(request: Request) -> None:
        if not request.session.get("admin_user"):
            raise Unauthorized("admin login required")

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        configure_logging(config.log_level)
        logger.info("ticketmint is starting up...")
        logger.info(f"   - Ledger RPC: {config.solana_rpc_url}")
        logger.info(f"   - Issuance program: {config.issuance_program_id}")
        logger.info(f"   - Provisioner: {config.provisioner_backend}")
        logger.info(f"   - Idempotency backend: {config.idempotency_backend}")

    @app.on_event("startup")
    async def _db_init():
        await create_schema(services.db)
        if isinstance(services.seen, SqlIdempotencyStore):
            await services.seen.create_schema()

    @app.on_event("startup")
    async def _watcher_start():
        if services.watcher is not None:
            app.state.watcher_task = asyncio.create_task(
                services.watcher.run()
            )

    @app.on_event("shutdown")
    async def _watcher_stop():
        task = getattr(app.state, "watcher_task", None)
        if task is not None:
            services.watcher.stop()
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            app.state.watcher_task = None

    @app.on_event("shutdown")
    async def _clients_stop():
        if services.http is not None:
            await services.http.aclose()
        if services.redis is not None:
            await services.redis.close()
        await services.db.dispose()

    # ----------------------------
    # Events
    # ----------------------------
    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/events")
    async def list_events(issuanceMachineId: Optional[str] = None,
                          s: Services = Depends(get_services)):
        rows = await s.store.list_events(issuance_machine_id=issuanceMachineId)
        return [event_out(e) for e in rows]

    @app.get("/events/{event_id}")
    async def get_event(event_id: str, s: Services = Depends(get_services)):
        event = await s.store.get_event(event_id)
        if event is None:
            raise NotFound("Event not found.")
        return event_out(event)

    @app.post("/events", status_code=201)
    async def create_event(payload: dict,
                           _: None = Depends(require_admin),
                           s: Services = Depends(get_services)):
        total = payload.get("totalTickets")
        price_sol = payload.get("priceSol")
        if total is None or price_sol is None:
            raise InvalidInput("Missing required event fields.")
        event = await s.engine.create_event(
            name=(payload.get("name") or "").strip(),
            description=payload.get("description"),
            date=(payload.get("date") or "").strip(),
            time=payload.get("time"),
            venue=(payload.get("venue") or "").strip(),
            total_tickets=total,
            price_sol=price_sol,
            price_usd=payload.get("priceUsd"),
        )
        return {
            "message": "Event created successfully!",
            "event": event_out(event),
            "collectionId": event["collection_id"],
            "issuanceMachineId": event["issuance_machine_id"],
        }

    @app.post("/events/{event_id}/purchase-initiate")
    async def purchase_initiate(event_id: str, payload: dict,
                                s: Services = Depends(get_services)):
        result = await s.engine.initiate_purchase(
            event_id,
            payload.get("wallet") or "",
            quantity=payload.get("quantity", 1),
            payment_method=payload.get("paymentMethod") or "SOL",
        )
        tx = result.transaction
        out = {
            "message": "Purchase initiated. Please complete the minting "
                       "process from your wallet.",
            "issuanceMachineId": result.issuance_machine_id,
            "price": lamports_to_sol(result.price_lamports),
            "priceLamports": result.price_lamports,
            "quantity": tx["quantity"],
            "amount": tx["amount"],
            "currency": tx["currency"],
            "transactionId": tx["id"],
        }
        if result.payment_session is not None:
            out["paymentSession"] = {
                "paymentSessionId":
                    result.payment_session["payment_session_id"],
                "clientSecret": result.payment_session["client_secret"],
            }
        return out

    # ----------------------------
    # Tickets
    # ----------------------------
    @app.post("/tickets/mint-success")
    async def mint_success(payload: dict,
                           s: Services = Depends(get_services)):
        _required(payload, "eventId", "assetId", "owner", "signature")
        if not is_valid_address(payload["owner"]):
            raise InvalidInput("owner is not a valid address.")
        result = await s.engine.record_mint(
            payload["eventId"], payload["assetId"].strip(),
            payload["owner"].strip(), payload["signature"].strip(),
            payload.get("transactionId") or None,
        )
        if not result.created:
            return {"ok": True, "idempotent": True,
                    "message": "Ticket already processed.",
                    "ticket": ticket_out(result.ticket)}
        return {"ok": True,
                "message": "Ticket successfully recorded and event updated.",
                "ticket": ticket_out(result.ticket)}

    @app.post("/tickets/transfer-update")
    async def transfer_update(request: Request,
                              s: Services = Depends(get_services)):
        raw = await request.body()
        secret = s.config.notifier_secret
        if secret and not verify_signature(
                secret, raw,
                request.headers.get(NOTIFIER_SIGNATURE_HEADER)):
            raise Unauthorized("Invalid notifier signature")
        payload = _json_body(raw)
        _required(payload, "assetId", "newOwner", "signature")
        if not is_valid_address(payload["newOwner"]):
            raise InvalidInput("newOwner is not a valid address.")
        result = await s.engine.record_transfer(
            payload["assetId"].strip(), payload["newOwner"].strip(),
            payload["signature"].strip(),
        )
        if not result.changed:
            return {"ok": True, "idempotent": True,
                    "message": "Ticket owner already up-to-date.",
                    "ticketId": result.ticket["id"]}
        return {"ok": True, "message": "Ticket owner updated successfully.",
                "ticketId": result.ticket["id"]}

    @app.post("/tickets/verify")
    async def verify_ticket(payload: dict,
                            s: Services = Depends(get_services)):
        _required(payload, "assetId")
        asserted = payload.get("assertedOwner") or None
        if asserted is not None and not is_valid_address(asserted):
            raise InvalidInput("assertedOwner is not a valid address.")
        out = await s.gate.verify_and_consume(
            payload["assetId"].strip(), asserted
        )
        return {"ok": True,
                "message": "Ticket successfully verified and marked as used.",
                "ticketId": out["ticket_id"]}

    @app.get("/tickets/{asset_id}")
    async def get_ticket(asset_id: str, s: Services = Depends(get_services)):
        ticket = await s.store.get_ticket_by_asset(asset_id)
        if ticket is None:
            raise NotFound("Ticket not found in our records.")
        return ticket_out(ticket)

    # ----------------------------
    # Webhook endpoint (fiat gateway)
    # ----------------------------
    @app.post("/payments/webhook")
    async def payments_webhook(request: Request,
                               s: Services = Depends(get_services)):
        payload = await request.body()
        event = s.payments.verify_webhook(payload, dict(request.headers))
        kind = s.payments.event_kind(event)
        psid, idem = s.payments.event_ids(event)
        if not psid:
            raise InvalidInput("missing payment_session_id")
        if not await s.seen.mark_seen(PAYMENT_EVENT_NAMESPACE, idem):
            return {"ok": True, "idempotent": True}
        try:
            tx = await s.engine.apply_payment_event(psid, kind)
        except Exception:
            # the gateway retries; let that retry through
            if idem:
                await s.seen.forget(PAYMENT_EVENT_NAMESPACE, idem)
            raise
        return {"ok": True, "transaction": transaction_out(tx)}

    # ----------------------------
    # Admin
    # ----------------------------
    @app.post("/admin/login")
    async def admin_login(request: Request,
                          username: str = Form(...),
                          password: str = Form(...)):
        ok_user = ct_equal(username.strip(), config.admin_username)
        ok_pass = ct_equal(password, config.admin_password)
        if not (ok_user and ok_pass):
            raise Unauthorized("Invalid credentials.")
        request.session["admin_user"] = username.strip()
        return {"ok": True}

    @app.get("/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return {"ok": True}

    @app.post("/admin/events/{event_id}/deactivate")
    async def deactivate_event(event_id: str,
                               _: None = Depends(require_admin),
                               s: Services = Depends(get_services)):
        return event_out(await s.engine.deactivate_event(event_id))

    @app.post("/admin/transactions/expire")
    async def expire_transactions(_: None = Depends(require_admin),
                                  s: Services = Depends(get_services)):
        n = await s.engine.expire_stale_transactions(
            s.config.pending_tx_ttl_seconds
        )
        return {"expired": n}

    @app.get("/admin/timings")
    async def admin_timings(_: None = Depends(require_admin),
                            s: Services = Depends(get_services)):
        return {"items": s.timings.aggregates()}

    return app


def asgi_app() -> FastAPI:
    """uvicorn --factory ticketmint.server:asgi_app"""
    return create_app(Config.from_env())
