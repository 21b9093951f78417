from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    BigInteger,
    Column,
    ForeignKey,
    Integer,
    String,
    Float,
    Boolean,
    CheckConstraint,
)


Base = declarative_base()


# Ticket status
T_PURCHASED = "purchased"
T_TRANSFERRED = "transferred"
T_USED = "used"

# Transaction status
TX_PENDING = "pending"
TX_SUCCESSFUL = "successful"
TX_FAILED = "failed"
TX_EXPIRED = "expired"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint(
            "available_tickets >= 0 AND available_tickets <= total_tickets",
            name="ck_events_available_bounds",
        ),
    )
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    date = Column(String, nullable=False)  # ISO-8601
    time = Column(String, nullable=True)   # free-form, e.g. "7:00 PM PST"
    venue = Column(String, nullable=False)
    total_tickets = Column(Integer, nullable=False)
    available_tickets = Column(Integer, nullable=False)
    price_lamports = Column(BigInteger, nullable=False)
    price_usd_cents = Column(Integer, nullable=True)
    collection_id = Column(String, nullable=True)
    issuance_machine_id = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    # natural key for deduplication
    asset_id = Column(String, nullable=False, unique=True)
    owner = Column(String, nullable=False)
    seat_label = Column(String, nullable=False)

    # purchased | transferred | used
    status = Column(String, nullable=False, default=T_PURCHASED)
    is_used = Column(Boolean, nullable=False, default=False)

    original_purchaser = Column(String, nullable=False)
    original_purchase_at = Column(Float, nullable=False)
    mint_signature = Column(String, nullable=True)
    qr_code_data = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    last_transfer_at = Column(Float, nullable=True)
    used_at = Column(Float, nullable=True)


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    buyer_wallet = Column(String, nullable=False)
    payment_method = Column(String, nullable=False, default="SOL")
    quantity = Column(Integer, nullable=False, default=1)
    amount = Column(BigInteger, nullable=False)  # lamports or cents
    currency = Column(String, nullable=False, default="SOL")

    # pending | successful | failed | expired
    status = Column(String, nullable=False, default=TX_PENDING)
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=True)
    signature = Column(String, nullable=True)

    # fiat only; unused for SOL
    payment_session_id = Column(String, nullable=True, unique=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)
