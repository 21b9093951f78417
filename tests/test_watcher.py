import json

import pytest

from ticketmint.config import DEFAULT_ISSUANCE_PROGRAM_ID
from ticketmint.ledger.client import ResolvedTransaction
from ticketmint.ledger.instructions import Instruction, anchor_discriminator
from ticketmint.watcher import ChainWatcher, ReconnectPolicy

from .conftest import new_address


MINT_LOGS = [
    f"Program {DEFAULT_ISSUANCE_PROGRAM_ID} invoke [1]",
    "Program log: Instruction: MintV2",
    f"Program {DEFAULT_ISSUANCE_PROGRAM_ID} success",
]


def mint_tx(signature, machine, owner, asset, committed=True):
    accounts = (machine, new_address(), new_address(), new_address(),
                owner, asset)
    return ResolvedTransaction(
        signature=signature,
        committed=committed,
        instructions=[Instruction(DEFAULT_ISSUANCE_PROGRAM_ID, accounts,
                                  anchor_discriminator("mint_v2"))],
        error=None if committed else {"InstructionError": [0, "Custom"]},
    )


def notification(signature, logs=MINT_LOGS, err=None) -> str:
    return json.dumps({
        "jsonrpc": "2.0",
        "method": "logsNotification",
        "params": {"subscription": 7, "result": {
            "context": {"slot": 1},
            "value": {"signature": signature, "err": err, "logs": logs},
        }},
    })


class FakeSocket:
    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, message):
        self.sent.append(message)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.frames:
            raise StopAsyncIteration
        return self.frames.pop(0)


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)


@pytest.fixture
def make_watcher(ledger, store, engine, seen):
    def make(**kw):
        kw.setdefault("policy", ReconnectPolicy(max_attempts=0))
        kw.setdefault("sleep", Sleeps())
        return ChainWatcher(
            ws_url="ws://ledger.test", program_id=DEFAULT_ISSUANCE_PROGRAM_ID,
            ledger=ledger, store=store, engine=engine, seen=seen, **kw,
        )
    return make


def test_reconnect_policy():
    fixed = ReconnectPolicy()
    assert [fixed.next_delay(n) for n in (1, 2, 10)] == [5.0, 5.0, 5.0]

    backoff = ReconnectPolicy(delay=1.0, backoff=2.0, max_delay=5.0,
                              max_attempts=4)
    assert [backoff.next_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0,
                                                             5.0]
    assert backoff.next_delay(5) is None


def test_subscribe_message(make_watcher):
    msg = json.loads(make_watcher().subscribe_message())
    assert msg["method"] == "logsSubscribe"
    assert msg["params"] == [
        {"mentions": [DEFAULT_ISSUANCE_PROGRAM_ID]},
        {"commitment": "finalized"},
    ]


async def test_notification_records_mint(make_watcher, ledger, store, event,
                                         wallet_x):
    asset = new_address()
    ledger.transactions["sig-1"] = mint_tx(
        "sig-1", event["issuance_machine_id"], wallet_x, asset)

    result = await make_watcher().handle_message(notification("sig-1"))
    assert result.created
    ticket = await store.get_ticket_by_asset(asset)
    assert ticket["owner"] == wallet_x
    assert ticket["mint_signature"] == "sig-1"
    assert (await store.get_event(event["id"]))["available_tickets"] == 2


async def test_duplicate_notification_is_ignored(make_watcher, ledger, store,
                                                 event, wallet_x):
    asset = new_address()
    ledger.transactions["sig-1"] = mint_tx(
        "sig-1", event["issuance_machine_id"], wallet_x, asset)
    watcher = make_watcher()

    await watcher.handle_message(notification("sig-1"))
    assert await watcher.handle_message(notification("sig-1")) is None
    assert ledger.resolved == ["sig-1"]
    assert await store.count_tickets(event["id"]) == 1


@pytest.mark.parametrize("frame", [
    "not json",
    json.dumps({"jsonrpc": "2.0", "id": 1, "result": 7}),
    json.dumps({"jsonrpc": "2.0", "id": 1, "error": {"code": -1}}),
    notification("sig-x", logs=["Program log: Instruction: Transfer"]),
    notification("sig-x", err={"InstructionError": [0, "Custom"]}),
])
async def test_irrelevant_frames_are_dropped(make_watcher, ledger, frame):
    assert await make_watcher().handle_message(frame) is None
    assert ledger.resolved == []


async def test_failed_or_foreign_mints_are_dropped(make_watcher, ledger, store,
                                                   event, wallet_x):
    watcher = make_watcher()
    ledger.transactions["failed"] = mint_tx(
        "failed", event["issuance_machine_id"], wallet_x, new_address(),
        committed=False)
    ledger.transactions["foreign"] = mint_tx(
        "foreign", new_address(), wallet_x, new_address())

    for sig in ("failed", "foreign", "missing"):
        assert await watcher.handle_message(notification(sig)) is None
    assert await store.count_tickets(event["id"]) == 0


async def test_processing_error_releases_signature(make_watcher, ledger,
                                                   store, event, wallet_x):
    asset = new_address()
    calls = []

    async def flaky(signature):
        calls.append(signature)
        if len(calls) == 1:
            raise RuntimeError("rpc hiccup")
        return mint_tx(signature, event["issuance_machine_id"], wallet_x,
                       asset)

    ledger.resolve_transaction = flaky
    watcher = make_watcher()
    assert await watcher.handle_message(notification("sig-1")) is None
    result = await watcher.handle_message(notification("sig-1"))
    assert result.created
    assert calls == ["sig-1", "sig-1"]


async def test_run_processes_stream_then_gives_up(make_watcher, ledger, store,
                                                  event, wallet_x):
    asset = new_address()
    ledger.transactions["sig-1"] = mint_tx(
        "sig-1", event["issuance_machine_id"], wallet_x, asset)
    socket = FakeSocket([
        json.dumps({"jsonrpc": "2.0", "id": 1, "result": 7}),
        notification("sig-1"),
    ])
    watcher = make_watcher(connect=lambda url: socket)

    await watcher.run()
    assert json.loads(socket.sent[0])["method"] == "logsSubscribe"
    assert watcher.subscription_id == 7
    assert (await store.get_ticket_by_asset(asset))["owner"] == wallet_x


async def test_run_reconnects_with_policy_delay(make_watcher):
    attempts = []

    def refuse(url):
        attempts.append(url)
        raise ConnectionRefusedError("no ledger")

    sleeps = Sleeps()
    watcher = make_watcher(
        connect=refuse, sleep=sleeps,
        policy=ReconnectPolicy(delay=2.0, max_attempts=2),
    )
    await watcher.run()
    assert len(attempts) == 3
    assert sleeps.calls == [2.0, 2.0]


async def test_stop_ends_run(make_watcher):
    watcher = make_watcher(policy=ReconnectPolicy())

    def connect(url):
        watcher.stop()
        raise OSError("closing")

    watcher.connect = connect
    await watcher.run()


async def test_malformed_frames_do_not_stop_the_stream(make_watcher, ledger,
                                                       store, event,
                                                       wallet_x):
    asset = new_address()
    ledger.transactions["sig-ok"] = mint_tx(
        "sig-ok", event["issuance_machine_id"], wallet_x, asset)
    socket = FakeSocket([
        "[]",
        "1",
        json.dumps({"method": "logsNotification", "params": []}),
        json.dumps({"method": "logsNotification",
                    "params": {"result": {"value": "oops"}}}),
        json.dumps({"method": "logsNotification",
                    "params": {"result": {"value": {
                        "signature": "sig-bad", "err": None, "logs": 5,
                    }}}}),
        notification("sig-ok"),
    ])
    watcher = make_watcher(connect=lambda url: socket)

    await watcher.run()
    assert (await store.get_ticket_by_asset(asset))["owner"] == wallet_x
