from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
)


Base = declarative_base()

# TicketTier.status
S_AVAILABLE = "available"
S_SOLD_OUT = "sold-out"
S_COMING_SOON = "coming-soon"
S_UNAVAILABLE = "unavailable"
TIER_STATUSES = (S_AVAILABLE, S_SOLD_OUT, S_COMING_SOON, S_UNAVAILABLE)

# PendingOrder.state
O_PENDING = "pending"
O_FULFILLED = "fulfilled"
O_FAILED = "failed"

# PendingOrder.delivery_status
D_PENDING = "pending"
D_SENT = "sent"
D_FAILED = "failed"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    logo_url = Column(String, nullable=True)
    background_url = Column(String, nullable=True)
    date = Column(Float, nullable=False)  # epoch seconds
    created_at = Column(Float, nullable=False)


class TicketTier(Base):
    __tablename__ = "ticket_tiers"
    id = Column(String, primary_key=True)
    event_id = Column(
        String, ForeignKey("events.id", ondelete="RESTRICT"), nullable=False
    )
    code = Column(String, nullable=False)  # ticket-code prefix
    name = Column(String, nullable=False)
    unit_price = Column(Integer, nullable=False)  # cents
    capacity = Column(Integer, nullable=False)
    # owned by the ledger: only reserve/release/update_tier write these
    sold_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=S_AVAILABLE)

    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_tier_capacity"),
        CheckConstraint(
            "sold_count >= 0 AND sold_count <= capacity",
            name="ck_tier_sold_within_capacity",
        ),
        CheckConstraint("unit_price >= 0", name="ck_tier_price"),
        CheckConstraint(
            "status IN ('available','sold-out','coming-soon','unavailable')",
            name="ck_tier_status",
        ),
        Index("ix_ticket_tiers_event", "event_id"),
    )


class PendingOrder(Base):
    __tablename__ = "pending_orders"
    payment_id = Column(String, primary_key=True)  # gateway-issued
    email = Column(String, nullable=False)
    event_id = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)  # cents, incl. tax
    currency = Column(String, nullable=False, default="EUR")

    # pending | fulfilled | failed
    state = Column(String, nullable=False, default=O_PENDING)
    failure_reason = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    fulfilled_at = Column(Float, nullable=True)

    # pending | sent | failed
    delivery_status = Column(String, nullable=False, default=D_PENDING)
    delivery_error = Column(String, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "state IN ('pending','fulfilled','failed')",
            name="ck_order_state",
        ),
        Index("ix_pending_orders_state_created", "state", "created_at"),
    )


class OrderLine(Base):
    __tablename__ = "order_lines"
    payment_id = Column(
        String, ForeignKey("pending_orders.payment_id", ondelete="CASCADE"),
        primary_key=True,
    )
    tier_id = Column(
        String, ForeignKey("ticket_tiers.id"), primary_key=True
    )
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)  # cents, at quote time

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_line_quantity"),
    )


class IssuedTicket(Base):
    __tablename__ = "issued_tickets"
    code = Column(String, primary_key=True)
    tier_id = Column(String, ForeignKey("ticket_tiers.id"), nullable=False)
    email = Column(String, nullable=False)
    payment_id = Column(String, nullable=False)
    issued_at = Column(Float, nullable=False)
    # owned by the redemption store: false -> true exactly once
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_issued_tickets_payment", "payment_id"),
    )


class CodeSequence(Base):
    __tablename__ = "code_sequences"
    prefix = Column(String, primary_key=True)
    counter = Column(Integer, nullable=False)


class ReconciliationRecord(Base):
    __tablename__ = "reconciliation_records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String, nullable=False)
    tier_id = Column(String, nullable=False)  # '*' = whole order
    requested = Column(Integer, nullable=False)
    granted = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("payment_id", "tier_id", name="uq_recon_payment_tier"),
    )


async def create_schema(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)
