"""
Chain Watcher.

Listens to the issuance program's logs and hands every committed mint to
``ReconciliationEngine.record_mint``. Best effort: a dropped notification is
recovered through the verification gate's live owner check or a manual
mint-success call; nothing here is on the correctness path.
"""
from __future__ import annotations
import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from loguru import logger
from websockets.exceptions import WebSocketException

from .ledger.client import LedgerClient
from .ledger.instructions import (
    InstructionDecoder, Recognized, has_mint_marker,
)
from .model.idempotency import IdempotencyStore
from .model.store import TicketStore
from .reconcile import MintResult, ReconciliationEngine


SEEN_NAMESPACE = "mint-sig"


def _member(obj: Any, key: str) -> Any:
    return obj.get(key) if isinstance(obj, dict) else None


@dataclass
class ReconnectPolicy:
    """Delay before resubscribing after the n-th consecutive failure.

    backoff == 1.0 gives a fixed delay; max_attempts None retries forever.
    """
    delay: float = 5.0
    backoff: float = 1.0
    max_delay: float = 300.0
    max_attempts: Optional[int] = None

    def next_delay(self, attempt: int) -> Optional[float]:
        if self.max_attempts is not None and attempt > self.max_attempts:
            return None
        return min(self.delay * self.backoff ** max(0, attempt - 1),
                   self.max_delay)


class ChainWatcher:
    def __init__(
        self, *, ws_url: str, program_id: str,
        ledger: LedgerClient, store: TicketStore,
        engine: ReconciliationEngine, seen: IdempotencyStore,
        decoder: Optional[InstructionDecoder] = None,
        policy: Optional[ReconnectPolicy] = None,
        commitment: str = "finalized",
        connect: Callable[[str], Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.ws_url = ws_url
        self.program_id = program_id
        self.ledger = ledger
        self.store = store
        self.engine = engine
        self.seen = seen
        self.decoder = decoder or InstructionDecoder()
        self.policy = policy or ReconnectPolicy()
        self.commitment = commitment
        self.connect = connect
        self.sleep = sleep
        self.subscription_id: Optional[int] = None
        self._stopping = False
        self._received = False

    def subscribe_message(self) -> str:
        return json.dumps({
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [
                {"mentions": [self.program_id]},
                {"commitment": self.commitment},
            ],
        })

    def stop(self) -> None:
        self._stopping = True

    # ----------------------------
    # connection loop
    # ----------------------------
    async def run(self) -> None:
        failures = 0
        while not self._stopping:
            self._received = False
            try:
                await self._session()
                reason = "closed by server"
            except (WebSocketException, OSError) as e:
                reason = f"{type(e).__name__}: {e}"
            if self._stopping:
                break
            if self._received:
                failures = 0
            failures += 1
            delay = self.policy.next_delay(failures)
            if delay is None:
                logger.error(f"chain watcher giving up after {failures - 1} "
                             f"reconnect attempt(s): {reason}")
                return
            logger.warning(f"chain watcher connection lost ({reason}); "
                           f"resubscribing in {delay:.1f}s")
            await self.sleep(delay)
        logger.info("chain watcher stopped")

    async def _session(self) -> None:
        async with self.connect(self.ws_url) as ws:
            await ws.send(self.subscribe_message())
            logger.info(f"chain watcher subscribed to {self.program_id} "
                        f"at {self.ws_url}")
            async for raw in ws:
                self._received = True
                await self.handle_message(raw)
                if self._stopping:
                    return

    # ----------------------------
    # per notification
    # ----------------------------
    async def handle_message(self, raw: Any) -> Optional[MintResult]:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("chain watcher: non-JSON frame dropped")
            return None

        if not isinstance(msg, dict):
            logger.warning("chain watcher: non-object frame dropped")
            return None
        if msg.get("id") == 1 and "result" in msg:
            self.subscription_id = msg["result"]
            logger.info(f"chain watcher subscription id "
                        f"{self.subscription_id}")
            return None
        if msg.get("error"):
            logger.error(f"chain watcher subscription error: {msg['error']}")
            return None
        if msg.get("method") != "logsNotification":
            return None

        value = _member(_member(_member(msg, "params"), "result"), "value")
        if not isinstance(value, dict) or not value:
            logger.warning("chain watcher: malformed logsNotification "
                           "dropped")
            return None
        try:
            return await self.process_logs(value)
        except Exception:
            # one bad transaction must not tear down the subscription
            logger.exception(f"chain watcher: dropping "
                             f"{value.get('signature')}")
            return None

    async def process_logs(
        self, value: Dict[str, Any]
    ) -> Optional[MintResult]:
        if value.get("err") is not None:
            return None
        if not has_mint_marker(value.get("logs") or []):
            return None
        signature = value.get("signature")
        if not signature:
            return None
        logger.info(f"mint instruction seen in {signature}")

        if not await self.seen.mark_seen(SEEN_NAMESPACE, signature):
            logger.info(f"{signature} already handled; skipping")
            return None

        try:
            return await self._record(signature)
        except Exception:
            # let a later delivery of the same signature retry
            await self.seen.forget(SEEN_NAMESPACE, signature)
            raise

    async def _record(self, signature: str) -> Optional[MintResult]:
        tx = await self.ledger.resolve_transaction(signature)
        if tx is None:
            logger.warning(f"{signature}: transaction not found; dropped")
            return None
        if not tx.committed:
            logger.warning(f"{signature}: failed on-chain ({tx.error}); "
                           f"dropped")
            return None

        decoded = self.decoder.find_mint(tx.instructions)
        if not isinstance(decoded, Recognized):
            logger.warning(f"{signature}: {decoded.reason}; dropped")
            return None
        args = decoded.args

        events = await self.store.list_events(
            issuance_machine_id=args.machine_id, active_only=False
        )
        if not events:
            logger.warning(f"{signature}: no event for issuance machine "
                           f"{args.machine_id}; dropped")
            return None

        logger.info(f"minted {args.asset_id} to {args.owner} from "
                    f"{args.machine_id}")
        return await self.engine.record_mint(
            events[0]["id"], args.asset_id, args.owner, signature
        )
