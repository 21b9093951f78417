import json

import base58
import httpx
import pytest

from ticketmint.config import DEFAULT_ISSUANCE_PROGRAM_ID
from ticketmint.errors import UpstreamUnavailable
from ticketmint.ledger.client import LedgerClient, parse_transaction
from ticketmint.ledger.instructions import (
    CANDY_GUARD_PROGRAM_ID, InstructionDecoder, Recognized,
    anchor_discriminator,
)

from .conftest import new_address


RPC_URL = "http://rpc.test"


def rpc_client(handler) -> LedgerClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LedgerClient(http, RPC_URL)


def reply(request: httpx.Request, result=None, error=None) -> httpx.Response:
    body = json.loads(request.content)
    payload = {"jsonrpc": "2.0", "id": body["id"]}
    if error is not None:
        payload["error"] = error
    else:
        payload["result"] = result
    return httpx.Response(200, json=payload)


def test_parse_transaction_flattens_inner_instructions():
    guard, machine, minter, asset = (new_address() for _ in range(4))
    payer, table_key = new_address(), new_address()
    keys = [payer, minter, CANDY_GUARD_PROGRAM_ID, guard,
            DEFAULT_ISSUANCE_PROGRAM_ID, machine, asset]
    data = base58.b58encode(anchor_discriminator("mint_v2")).decode()
    result = {
        "slot": 42,
        "transaction": {"message": {
            "accountKeys": keys,
            "instructions": [
                {"programIdIndex": 2,
                 "accounts": [3, 4, 5, 0, 0, 1, 6], "data": data},
            ],
        }},
        "meta": {
            "err": None,
            "loadedAddresses": {"writable": [table_key], "readonly": []},
            "innerInstructions": [{"index": 0, "instructions": [
                {"programIdIndex": 4,
                 "accounts": [5, 0, 0, 0, 1, 6, 7], "data": data},
            ]}],
        },
    }
    tx = parse_transaction("sig", result)
    assert tx.committed and tx.slot == 42
    assert [ix.program_id for ix in tx.instructions] == [
        CANDY_GUARD_PROGRAM_ID, DEFAULT_ISSUANCE_PROGRAM_ID,
    ]
    # address-table keys follow the static keys
    assert tx.instructions[1].accounts[-1] == table_key

    decoded = InstructionDecoder().find_mint(tx.instructions)
    assert isinstance(decoded, Recognized)
    assert decoded.args.machine_id == machine
    assert decoded.args.owner == minter
    assert decoded.args.asset_id == asset


def test_parse_failed_transaction():
    tx = parse_transaction("sig", {
        "transaction": {"message": {"accountKeys": [], "instructions": []}},
        "meta": {"err": {"InstructionError": [0, "Custom"]}},
    })
    assert not tx.committed
    assert tx.error == {"InstructionError": [0, "Custom"]}


async def test_resolve_transaction_requests_finalized_json():
    seen = []

    def handler(request):
        body = json.loads(request.content)
        seen.append(body)
        return reply(request, None)

    assert await rpc_client(handler).resolve_transaction("sig") is None
    assert seen[0]["method"] == "getTransaction"
    assert seen[0]["params"][1] == {
        "encoding": "json",
        "commitment": "finalized",
        "maxSupportedTransactionVersion": 0,
    }


async def test_current_owner():
    asset, token_account, wallet = new_address(), new_address(), new_address()

    def handler(request):
        body = json.loads(request.content)
        if body["method"] == "getTokenLargestAccounts":
            assert body["params"][0] == asset
            return reply(request, {"value": [
                {"address": new_address(), "amount": "0"},
                {"address": token_account, "amount": "1"},
            ]})
        assert body["method"] == "getAccountInfo"
        assert body["params"][0] == token_account
        return reply(request, {"value": {"data": {"parsed": {
            "info": {"owner": wallet, "mint": asset},
        }}}})

    assert await rpc_client(handler).current_owner(asset) == wallet


async def test_current_owner_without_holder():
    def handler(request):
        return reply(request, {"value": [{"address": "x", "amount": "0"}]})

    assert await rpc_client(handler).current_owner(new_address()) is None


async def test_current_owner_of_non_mint_is_none():
    def handler(request):
        return reply(request, error={
            "code": -32602, "message": "Invalid param: not a Token mint",
        })

    assert await rpc_client(handler).current_owner(new_address()) is None


async def test_unreachable_ledger_raises_upstream_unavailable():
    def handler(request):
        return httpx.Response(503, text="overloaded")

    with pytest.raises(UpstreamUnavailable):
        await rpc_client(handler).current_owner(new_address())


async def test_other_rpc_errors_raise_upstream_unavailable():
    def handler(request):
        return reply(request, error={"code": -32005, "message": "behind"})

    with pytest.raises(UpstreamUnavailable):
        await rpc_client(handler).resolve_transaction("sig")
