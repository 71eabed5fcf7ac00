import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from agrocycle.database import Base
from agrocycle.db_types import UUIDType


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Payout(Base):
    """
    Farmer payout created by the payout subsystem.
    This engine only settles it from RazorpayX payout webhooks.
    """
    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    farmer_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    hub_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("hubs.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    net_payable: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=PayoutStatus.PENDING.value,
        nullable=False,
        comment="pending, processing, completed, failed"
    )
    gateway_payout_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Payout(id='{self.id}', status='{self.status}')>"
