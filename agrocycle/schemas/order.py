from pydantic import BaseModel, Field, computed_field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from decimal import Decimal
import uuid

from agrocycle.schemas.base import BaseResponseSchema, BaseCreateSchema, BaseUpdateSchema


# ==================== BUYER SCHEMAS ====================

class OrderCreate(BaseCreateSchema):
    """Order creation schema."""
    hub_id: uuid.UUID
    quantity_tonnes: Decimal = Field(..., gt=0, description="Ordered quantity in tonnes")
    price_per_tonne: Decimal = Field(..., ge=0, description="Agreed price per tonne (INR)")
    requested_date: datetime
    requested_date_end: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=2000)


class OrderUpdate(BaseUpdateSchema):
    """Fields a buyer may change while the order is pending."""
    quantity_tonnes: Optional[Decimal] = Field(None, gt=0)
    requested_date: Optional[datetime] = None
    requested_date_end: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=2000)


class OrderResponse(BaseResponseSchema):
    """Order response schema."""
    id: uuid.UUID
    order_number: str
    buyer_id: uuid.UUID
    hub_id: uuid.UUID

    quantity_tonnes: Decimal
    price_per_tonne: Decimal
    total_amount: Decimal

    status: str
    payment_status: str
    paid_amount: Decimal
    paid_at: Optional[datetime] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None

    allocated_quantity_tonnes: Optional[Decimal] = None
    allocated_at: Optional[datetime] = None
    prepared_by: Optional[uuid.UUID] = None
    quality_report: Optional[Dict[str, Any]] = None

    tracking_id: Optional[str] = None
    shipping_date: Optional[datetime] = None
    shipment_vehicle_number: Optional[str] = None
    shipment_driver_name: Optional[str] = None
    shipment_driver_phone: Optional[str] = None
    estimated_delivery: Optional[datetime] = None

    accepted_quantity_tonnes: Decimal

    requested_date: datetime
    requested_date_end: Optional[datetime] = None
    notes: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    confirmed_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @computed_field
    @property
    def balance_due(self) -> Decimal:
        return self.total_amount - self.paid_amount


class OrderListResponse(BaseModel):
    """Paginated order list."""
    items: List[OrderResponse]
    total: int
    page: int
    size: int
    pages: int


# ==================== HUB SCHEMAS ====================

class HubOrderStats(BaseModel):
    confirmed: int = 0
    processing: int = 0
    dispatched: int = 0
    delivered: int = 0
    total: int = 0


class HubOrderListResponse(BaseModel):
    items: List[OrderResponse]
    stats: HubOrderStats


class HubOrderUpdate(BaseUpdateSchema):
    """
    Hub-side changes to an order.

    Any combination may be sent in one request; they are applied in the
    order allocation, quality report, shipment details, then action.
    """
    allocated_quantity_tonnes: Optional[Decimal] = Field(None, description="Stock allocated from hub inventory")
    quality_report: Optional[Dict[str, Any]] = Field(None, description="Calorific value, moisture, ash content...")

    tracking_id: Optional[str] = Field(None, max_length=100)
    vehicle_number: Optional[str] = Field(None, max_length=20)
    driver_name: Optional[str] = Field(None, max_length=100)
    driver_phone: Optional[str] = Field(None, max_length=20)
    estimated_delivery: Optional[datetime] = None

    shipping_date: Optional[datetime] = None
    action: Optional[Literal["dispatch", "deliver"]] = None
    notes: Optional[str] = None

    @property
    def has_shipment_details(self) -> bool:
        return any(
            v is not None for v in (
                self.tracking_id, self.vehicle_number, self.driver_name,
                self.driver_phone, self.estimated_delivery,
            )
        )


# ==================== BUYER DASHBOARD ====================

class BuyerStats(BaseModel):
    total_ordered_tonnes: Decimal = Field(..., description="Excludes cancelled orders")
    total_received_tonnes: Decimal = Field(..., description="Sum of accepted deliveries")
    pending_deliveries: int = Field(..., description="Loads in transit or awaiting inspection")
    accepted_count: int
    rejected_count: int
    orders_by_status: Dict[str, int]


class BuyerStatsResponse(BaseModel):
    stats: BuyerStats
    recent_orders: List[OrderResponse]
