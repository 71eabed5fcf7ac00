from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from enum import Enum
import uuid

from agrocycle.models.delivery import BaleType, RejectionReason
from agrocycle.schemas.base import BaseResponseSchema, BaseCreateSchema, BaseUpdateSchema


class DeliveryAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class DeliveryCreate(BaseCreateSchema):
    """A load shipped from the hub against a dispatched order."""
    quantity_tonnes: Decimal = Field(..., gt=0)
    delivery_date: Optional[datetime] = None
    vehicle_number: str = Field(..., min_length=1, max_length=20)
    driver_name: Optional[str] = Field(None, max_length=100)
    driver_phone: Optional[str] = Field(None, max_length=20)
    moisture_level: Optional[Decimal] = Field(None, ge=0, le=100, description="Moisture %")
    bale_type: Optional[BaleType] = None
    notes: Optional[str] = None

    @field_validator("vehicle_number")
    @classmethod
    def normalize_vehicle_number(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("vehicle_number must not be blank")
        return v


class DeliveryDecision(BaseUpdateSchema):
    """Buyer's inspection result."""
    action: DeliveryAction
    rejection_reason: Optional[RejectionReason] = None
    notes: Optional[str] = None


class DeliveryResponse(BaseResponseSchema):
    id: uuid.UUID
    delivery_number: str
    order_id: uuid.UUID
    buyer_id: uuid.UUID
    hub_id: uuid.UUID
    quantity_tonnes: Decimal
    delivery_date: datetime
    vehicle_number: str
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    moisture_level: Optional[Decimal] = None
    bale_type: Optional[str] = None
    status: str
    arrived_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DeliveryListResponse(BaseModel):
    items: List[DeliveryResponse]
    total: int
    page: int
    size: int
    pages: int
