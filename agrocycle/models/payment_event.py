"""Processed payment gateway events.

Each row is a marker that an event was handled. The unique ``event_key``
is what makes applying a payment idempotent across the client verification
path, the webhook path and concurrent workers.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from agrocycle.database import Base
from agrocycle.db_types import UUIDType, JSONType


class PaymentEventSource(str, Enum):
    CLIENT_VERIFICATION = "client_verification"
    WEBHOOK = "webhook"
    GATEWAY_SYNC = "gateway_sync"


class PaymentEventOutcome(str, Enum):
    APPLIED = "applied"      # Mutated business state
    RECORDED = "recorded"    # Kept for visibility only (failures, overpayments)


class PaymentEvent(Base):
    """Marker for a gateway event that has been processed."""
    __tablename__ = "payment_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    event_key: Mapped[str] = mapped_column(
        String(120),
        unique=True,
        nullable=False,
        comment="<event type>:<gateway entity id>"
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)

    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("buyer_orders.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<PaymentEvent(key='{self.event_key}', outcome='{self.outcome}')>"
