"""Payment schemas for Razorpay checkout and webhook responses."""
from pydantic import BaseModel, Field
from typing import Optional
from decimal import Decimal
import uuid

from agrocycle.schemas.order import OrderResponse


class PayOrderResponse(BaseModel):
    """Everything the frontend needs to open Razorpay checkout."""
    razorpay_order_id: str = Field(..., description="Razorpay order ID")
    razorpay_key_id: str = Field(..., description="Public key id for checkout")
    amount: Decimal = Field(..., description="Amount due in INR")
    currency: str = "INR"
    order_id: uuid.UUID = Field(..., description="Internal order ID")


class VerifyPaymentRequest(BaseModel):
    """API request to verify payment."""
    razorpay_order_id: str = Field(..., min_length=1, description="Razorpay order ID")
    razorpay_payment_id: str = Field(..., min_length=1, description="Razorpay payment ID")
    razorpay_signature: str = Field(..., min_length=1, description="Razorpay signature for verification")


class VerifyPaymentResponse(BaseModel):
    success: bool
    message: str
    order: OrderResponse


class WebhookResponse(BaseModel):
    status: str
    message: Optional[str] = None
