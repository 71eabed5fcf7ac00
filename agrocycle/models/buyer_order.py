import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional, List
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, Numeric, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agrocycle.database import Base
from agrocycle.db_types import UUIDType, JSONType

if TYPE_CHECKING:
    from agrocycle.models.party import Buyer, Hub
    from agrocycle.models.delivery import BuyerDelivery


class OrderStatus(str, Enum):
    """Buyer order lifecycle."""
    PENDING = "pending"              # Created, awaiting payment
    CONFIRMED = "confirmed"          # Payment received, ready for the hub
    PROCESSING = "processing"        # Stock allocated at the hub
    DISPATCHED = "dispatched"        # Certified and shipped (possibly partially delivered)
    DELIVERED = "delivered"          # Accepted quantity covers the order
    CANCELLED = "cancelled"          # Cancelled by buyer before confirmation


class PaymentStatus(str, Enum):
    """Payment status, derived from paid vs total amount."""
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETED = "completed"


TERMINAL_ORDER_STATUSES = {OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value}

MONEY = Decimal("0.01")


def derive_payment_status(paid_amount: Decimal, total_amount: Decimal) -> str:
    """Payment status is a pure function of the paid and total amounts."""
    if paid_amount <= 0:
        return PaymentStatus.PENDING.value
    if paid_amount < total_amount:
        return PaymentStatus.PARTIAL.value
    return PaymentStatus.COMPLETED.value


def compute_total_amount(quantity_tonnes: Decimal, price_per_tonne: Decimal) -> Decimal:
    return (Decimal(quantity_tonnes) * Decimal(price_per_tonne)).quantize(MONEY)


class BuyerOrder(Base):
    """
    Purchase order placed by a buyer against a hub.
    Tracks the order from creation through payment, fulfillment and delivery.
    """
    __tablename__ = "buyer_orders"
    __table_args__ = (
        Index('ix_buyer_order_buyer_status', 'buyer_id', 'status'),
        Index('ix_buyer_order_hub_status', 'hub_id', 'status'),
        CheckConstraint('quantity_tonnes > 0', name='ck_buyer_order_quantity_positive'),
        CheckConstraint('paid_amount >= 0', name='ck_buyer_order_paid_non_negative'),
        CheckConstraint('paid_amount <= total_amount', name='ck_buyer_order_paid_within_total'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Order Identification
    order_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment="Human readable number e.g., ORD-2026-0001"
    )

    # Parties (immutable after creation)
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

    # Commercial terms
    quantity_tonnes: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False)
    price_per_tonne: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="quantity_tonnes x price_per_tonne"
    )

    # Status
    status: Mapped[str] = mapped_column(
        String(20),
        default=OrderStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="pending, confirmed, processing, dispatched, delivered, cancelled"
    )

    # Payment
    payment_status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
        comment="pending, partial, completed"
    )
    paid_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Razorpay correlation
    gateway_order_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        index=True,
        comment="Razorpay order ID (order_xxx)"
    )
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        index=True,
        comment="Razorpay payment ID (pay_xxx) of the last applied payment"
    )

    # Stock allocation
    allocated_quantity_tonnes: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 3), nullable=True)
    allocated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    prepared_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        nullable=True,
        comment="Hub staff member who allocated the stock"
    )

    # Quality certificate (calorific value, moisture, ash content, ...)
    quality_report: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Shipment details
    tracking_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shipping_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    shipment_vehicle_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    shipment_driver_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shipment_driver_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    estimated_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Running total of accepted delivery quantity
    accepted_quantity_tonnes: Mapped[Decimal] = mapped_column(
        Numeric(10, 3),
        default=Decimal("0"),
        nullable=False
    )

    # Scheduling
    requested_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    requested_date_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Optimistic concurrency
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    buyer: Mapped["Buyer"] = relationship("Buyer")
    hub: Mapped["Hub"] = relationship("Hub")
    deliveries: Mapped[List["BuyerDelivery"]] = relationship(
        "BuyerDelivery",
        back_populates="order",
        order_by="BuyerDelivery.created_at"
    )
    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.created_at"
    )

    @property
    def balance_due(self) -> Decimal:
        """Get remaining balance to be paid."""
        return self.total_amount - self.paid_amount

    @property
    def is_paid(self) -> bool:
        """Check if order is fully paid."""
        return self.payment_status == PaymentStatus.COMPLETED.value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    def __repr__(self) -> str:
        return f"<BuyerOrder(number='{self.order_number}', status='{self.status}')>"


class OrderStatusHistory(Base):
    """Order status change history."""
    __tablename__ = "buyer_order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("buyer_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)

    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        nullable=True,
        comment="Buyer or hub staff id; NULL for gateway driven changes"
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    order: Mapped["BuyerOrder"] = relationship("BuyerOrder", back_populates="status_history")

    def __repr__(self) -> str:
        return f"<OrderStatusHistory(from='{self.from_status}', to='{self.to_status}')>"
