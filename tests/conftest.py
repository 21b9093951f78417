from typing import Dict, Optional

import pytest
from solders.keypair import Keypair

from ticketmint.infra.sql import make_database
from ticketmint.ledger.client import ResolvedTransaction
from ticketmint.ledger.provisioner import MockProvisioner
from ticketmint.model.idempotency import SqlIdempotencyStore
from ticketmint.model.store import TicketStore, create_schema
from ticketmint.payments import MockPay
from ticketmint.reconcile import ReconciliationEngine
from ticketmint.verify import VerificationGate


MOCK_SECRET = "test-secret"


def new_address() -> str:
    return str(Keypair().pubkey())


class FakeLedger:
    """Ledger boundary backed by dicts."""

    def __init__(self) -> None:
        self.owners: Dict[str, str] = {}
        self.transactions: Dict[str, ResolvedTransaction] = {}
        self.resolved: list = []

    async def current_owner(self, asset_id: str) -> Optional[str]:
        return self.owners.get(asset_id)

    async def resolve_transaction(
        self, signature: str
    ) -> Optional[ResolvedTransaction]:
        self.resolved.append(signature)
        return self.transactions.get(signature)


@pytest.fixture
async def db(tmp_path):
    database = make_database(f"sqlite:///{tmp_path}/ticketmint-test.db")
    await create_schema(database)
    yield database
    await database.dispose()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def store(db) -> TicketStore:
    return TicketStore(db)


@pytest.fixture
async def seen(db) -> SqlIdempotencyStore:
    s = SqlIdempotencyStore(db=db, ttl_seconds=3600)
    await s.create_schema()
    return s


@pytest.fixture
def provisioner() -> MockProvisioner:
    return MockProvisioner()


@pytest.fixture
def engine(store, provisioner) -> ReconciliationEngine:
    return ReconciliationEngine(store, provisioner, MockPay(MOCK_SECRET))


@pytest.fixture
def gate(store, ledger) -> VerificationGate:
    return VerificationGate(store, ledger)


@pytest.fixture
async def event(engine):
    return await engine.create_event(
        name="TigerConf 2026",
        description="A conference for people who love correct systems.",
        date="2026-12-03T09:00:00Z",
        time="9:00 AM CET",
        venue="Amsterdam",
        total_tickets=3,
        price_sol=0.5,
        price_usd=65.0,
    )


@pytest.fixture
def wallet_x() -> str:
    return new_address()


@pytest.fixture
def wallet_y() -> str:
    return new_address()


@pytest.fixture
def wallet_z() -> str:
    return new_address()
