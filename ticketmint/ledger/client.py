from __future__ import annotations
import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import base58
import httpx
from loguru import logger

from ..errors import UpstreamUnavailable
from ..infra.timings import Timings
from .instructions import Instruction


# JSON-RPC "invalid params": unknown account, not a mint, bad pubkey
RPC_INVALID_PARAMS = -32602


class RpcError(Exception):
    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"rpc error {code}: {message}")


@dataclass
class ResolvedTransaction:
    signature: str
    committed: bool
    instructions: List[Instruction] = field(default_factory=list)
    slot: Optional[int] = None
    error: Any = None


def _instruction(raw: Dict[str, Any], keys: List[str]) -> Instruction:
    return Instruction(
        program_id=keys[raw["programIdIndex"]],
        accounts=tuple(keys[i] for i in raw.get("accounts", [])),
        data=base58.b58decode(raw.get("data", "")),
    )


def parse_transaction(signature: str,
                      result: Dict[str, Any]) -> ResolvedTransaction:
    """Flatten a ``getTransaction`` (encoding=json) result.

    Inner instructions are placed right after their parent so a mint made
    through a CPI (guard -> machine) is found in program order.
    """
    meta = result.get("meta") or {}
    message = (result.get("transaction") or {}).get("message") or {}

    keys = list(message.get("accountKeys") or [])
    loaded = meta.get("loadedAddresses") or {}
    keys += list(loaded.get("writable") or [])
    keys += list(loaded.get("readonly") or [])

    inner: Dict[int, List[Dict[str, Any]]] = {}
    for group in meta.get("innerInstructions") or []:
        inner[group["index"]] = group.get("instructions") or []

    instructions: List[Instruction] = []
    for i, raw in enumerate(message.get("instructions") or []):
        instructions.append(_instruction(raw, keys))
        for raw_inner in inner.get(i, []):
            instructions.append(_instruction(raw_inner, keys))

    err = meta.get("err")
    return ResolvedTransaction(
        signature=signature,
        committed=err is None,
        instructions=instructions,
        slot=result.get("slot"),
        error=err,
    )


class LedgerClient:
    """JSON-RPC adapter for the ledger. No business logic."""

    def __init__(
        self, http: httpx.AsyncClient, rpc_url: str,
        commitment: str = "finalized",
        timings: Optional[Timings] = None,
    ) -> None:
        self.http = http
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.timings = timings or Timings()
        self._ids = itertools.count(1)

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        body = {
            "jsonrpc": "2.0", "id": next(self._ids),
            "method": method, "params": params,
        }
        try:
            async with self.timings.timeit(f"ledger.{method}"):
                r = await self.http.post(self.rpc_url, json=body)
                r.raise_for_status()
                payload = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(f"ledger {method} failed: {e}")
        if payload.get("error"):
            err = payload["error"]
            raise RpcError(int(err.get("code", 0)),
                           str(err.get("message", "")))
        return payload.get("result")

    async def resolve_transaction(
        self, signature: str
    ) -> Optional[ResolvedTransaction]:
        try:
            result = await self._rpc("getTransaction", [signature, {
                "encoding": "json",
                "commitment": self.commitment,
                "maxSupportedTransactionVersion": 0,
            }])
        except RpcError as e:
            raise UpstreamUnavailable(f"getTransaction {signature}: {e}")
        if result is None:
            return None
        return parse_transaction(signature, result)

    async def current_owner(self, asset_id: str) -> Optional[str]:
        """Wallet holding the single token of ``asset_id`` right now."""
        try:
            largest = await self._rpc("getTokenLargestAccounts", [
                asset_id, {"commitment": self.commitment},
            ])
        except RpcError as e:
            if e.code == RPC_INVALID_PARAMS:
                logger.info(f"owner lookup: {asset_id} is not a mint: {e}")
                return None
            raise UpstreamUnavailable(f"getTokenLargestAccounts: {e}")

        holders = [
            a for a in ((largest or {}).get("value") or [])
            if str(a.get("amount")) == "1"
        ]
        if not holders:
            return None

        try:
            info = await self._rpc("getAccountInfo", [
                holders[0]["address"],
                {"encoding": "jsonParsed", "commitment": self.commitment},
            ])
        except RpcError as e:
            raise UpstreamUnavailable(f"getAccountInfo: {e}")
        value = (info or {}).get("value") or {}
        parsed = (value.get("data") or {}).get("parsed") or {}
        return (parsed.get("info") or {}).get("owner")
