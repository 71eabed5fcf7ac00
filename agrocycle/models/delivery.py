"""Delivery models for partial shipments against a buyer order."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Text, Numeric, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agrocycle.database import Base
from agrocycle.db_types import UUIDType

if TYPE_CHECKING:
    from agrocycle.models.buyer_order import BuyerOrder


class DeliveryStatus(str, Enum):
    """Delivery status enumeration."""
    IN_TRANSIT = "in_transit"   # Left the hub
    DELIVERED = "delivered"     # Arrived at the buyer, awaiting inspection
    ACCEPTED = "accepted"       # Buyer accepted the load
    REJECTED = "rejected"       # Buyer rejected the load


# Deliveries the buyer still has to judge
PENDING_DELIVERY_STATUSES = (DeliveryStatus.IN_TRANSIT.value, DeliveryStatus.DELIVERED.value)


class RejectionReason(str, Enum):
    """Closed set of reasons a buyer may reject a load for."""
    HIGH_MOISTURE = "high_moisture"
    CONTAMINATION = "contamination"
    UNDER_WEIGHT = "under_weight"
    OTHER = "other"


class BaleType(str, Enum):
    MEDIUM = "medium"
    LARGE = "large"


class BuyerDelivery(Base):
    """
    A single truckload shipped against a buyer order.
    One order may be fulfilled by several deliveries.
    """
    __tablename__ = "buyer_deliveries"
    __table_args__ = (
        Index('ix_buyer_delivery_order_status', 'order_id', 'status'),
        Index('ix_buyer_delivery_buyer_status', 'buyer_id', 'status'),
        CheckConstraint('quantity_tonnes > 0', name='ck_buyer_delivery_quantity_positive'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Identification
    delivery_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment="Unique delivery number e.g., DEL-2026-00001"
    )

    # References
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("buyer_orders.id", ondelete="RESTRICT"),
        nullable=False
    )
    buyer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("buyers.id", ondelete="RESTRICT"),
        nullable=False
    )
    hub_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("hubs.id", ondelete="RESTRICT"),
        nullable=False
    )

    # Load
    quantity_tonnes: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False)
    delivery_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Vehicle
    vehicle_number: Mapped[str] = mapped_column(String(20), nullable=False)
    driver_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    driver_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Quality observations
    moisture_level: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    bale_type: Mapped[Optional[str]] = mapped_column(String(10), nullable=True, comment="medium, large")

    # Status
    status: Mapped[str] = mapped_column(
        String(20),
        default=DeliveryStatus.IN_TRANSIT.value,
        nullable=False,
        comment="in_transit, delivered, accepted, rejected"
    )
    arrived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
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

    # Relationships
    order: Mapped["BuyerOrder"] = relationship("BuyerOrder", back_populates="deliveries")

    @property
    def is_decided(self) -> bool:
        return self.status in (DeliveryStatus.ACCEPTED.value, DeliveryStatus.REJECTED.value)

    def __repr__(self) -> str:
        return f"<BuyerDelivery(number='{self.delivery_number}', status='{self.status}')>"
