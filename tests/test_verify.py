import asyncio

import pytest

from ticketmint.errors import Conflict, Forbidden, NotFound

from .conftest import new_address


@pytest.fixture
async def minted(engine, ledger, event, wallet_x):
    asset = new_address()
    result = await engine.record_mint(event["id"], asset, wallet_x, "sig")
    ledger.owners[asset] = wallet_x
    return asset, result.ticket


async def test_verify_admits_once(gate, store, minted, wallet_x):
    asset, ticket = minted
    out = await gate.verify_and_consume(asset)
    assert out == {"ticket_id": ticket["id"], "owner": wallet_x}

    row = await store.get_ticket(ticket["id"])
    assert row["is_used"]
    assert row["status"] == "used"
    assert row["used_at"] is not None

    with pytest.raises(Conflict):
        await gate.verify_and_consume(asset)


async def test_verify_unknown_asset(gate):
    with pytest.raises(NotFound):
        await gate.verify_and_consume(new_address())


async def test_verify_after_transfer_with_stale_asserted_owner(
    engine, gate, ledger, store, minted, wallet_x, wallet_z
):
    asset, ticket = minted
    ledger.owners[asset] = wallet_z
    await engine.record_transfer(asset, wallet_z, "sig-transfer")

    with pytest.raises(Forbidden):
        await gate.verify_and_consume(asset, asserted_owner=wallet_x)
    assert not (await store.get_ticket(ticket["id"]))["is_used"]

    out = await gate.verify_and_consume(asset, asserted_owner=wallet_z)
    assert out["owner"] == wallet_z


async def test_verify_rejects_when_chain_disagrees_with_records(
    gate, ledger, store, minted, wallet_z
):
    asset, ticket = minted
    # transfer happened on-chain but was never reported
    ledger.owners[asset] = wallet_z
    with pytest.raises(Forbidden):
        await gate.verify_and_consume(asset)
    assert not (await store.get_ticket(ticket["id"]))["is_used"]


async def test_verify_rejects_when_no_holder(gate, ledger, minted):
    asset, _ = minted
    del ledger.owners[asset]
    with pytest.raises(Forbidden):
        await gate.verify_and_consume(asset)


async def test_concurrent_verifies_admit_exactly_once(gate, minted):
    asset, _ = minted
    results = await asyncio.gather(
        gate.verify_and_consume(asset),
        gate.verify_and_consume(asset),
        return_exceptions=True,
    )
    admitted = [r for r in results if isinstance(r, dict)]
    refused = [r for r in results if isinstance(r, Conflict)]
    assert len(admitted) == 1
    assert len(refused) == 1


async def test_used_ticket_keeps_latch_after_transfer(
    engine, gate, ledger, store, minted, wallet_z
):
    asset, ticket = minted
    await gate.verify_and_consume(asset)
    moved = await engine.record_transfer(asset, wallet_z, "sig-after-entry")
    assert moved.ticket["owner"] == wallet_z
    assert moved.ticket["is_used"]
    assert moved.ticket["status"] == "used"
    ledger.owners[asset] = wallet_z
    with pytest.raises(Conflict):
        await gate.verify_and_consume(asset)
