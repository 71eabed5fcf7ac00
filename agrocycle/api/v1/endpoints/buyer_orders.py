from typing import Optional
import uuid
from math import ceil

from fastapi import APIRouter, Query, status

from agrocycle.api.deps import DB, CurrentBuyer, Gateway
from agrocycle.models.buyer_order import OrderStatus
from agrocycle.schemas.order import (
    OrderCreate,
    OrderUpdate,
    OrderResponse,
    OrderListResponse,
)
from agrocycle.schemas.payment import (
    PayOrderResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from agrocycle.services.order_ledger_service import OrderLedgerService
from agrocycle.services.payment_reconciliation_service import PaymentReconciliationService


router = APIRouter(tags=["Buyer Orders"])


@router.get("", response_model=OrderListResponse)
async def list_orders(
    db: DB,
    buyer: CurrentBuyer,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = Query(None),
):
    """Get the buyer's orders, newest first."""
    service = OrderLedgerService(db)
    skip = (page - 1) * size

    orders, total = await service.get_orders_for_buyer(
        buyer.buyer_id,
        status=status.value if status else None,
        skip=skip,
        limit=size,
    )

    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        page=page,
        size=size,
        pages=ceil(total / size) if total > 0 else 1,
    )


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    data: OrderCreate,
    db: DB,
    buyer: CurrentBuyer,
):
    """Place a new order against a hub. The order starts pending payment."""
    service = OrderLedgerService(db)
    order = await service.create_order(buyer.buyer_id, data)
    return OrderResponse.model_validate(order)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: uuid.UUID,
    db: DB,
    buyer: CurrentBuyer,
):
    service = OrderLedgerService(db)
    order = await service.get_order(order_id, buyer)
    return OrderResponse.model_validate(order)


@router.put("/{order_id}", response_model=OrderResponse)
async def update_order(
    order_id: uuid.UUID,
    data: OrderUpdate,
    db: DB,
    buyer: CurrentBuyer,
):
    """Edit a pending order."""
    service = OrderLedgerService(db)
    order = await service.update_order(order_id, buyer.buyer_id, data)
    return OrderResponse.model_validate(order)


@router.delete("/{order_id}", response_model=OrderResponse)
async def cancel_order(
    order_id: uuid.UUID,
    db: DB,
    buyer: CurrentBuyer,
    reason: Optional[str] = Query(None, max_length=500),
):
    """Cancel a pending order."""
    service = OrderLedgerService(db)
    order = await service.cancel_order(order_id, buyer.buyer_id, reason=reason)
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/pay", response_model=PayOrderResponse)
async def pay_order(
    order_id: uuid.UUID,
    db: DB,
    buyer: CurrentBuyer,
    gateway: Gateway,
):
    """Create a Razorpay order for the amount due."""
    service = PaymentReconciliationService(db, gateway)
    intent = await service.create_payment_intent(order_id, buyer.buyer_id)
    return PayOrderResponse(**gateway.checkout_options(intent, order_id))


@router.post("/{order_id}/verify-payment", response_model=VerifyPaymentResponse)
async def verify_payment(
    order_id: uuid.UUID,
    data: VerifyPaymentRequest,
    db: DB,
    buyer: CurrentBuyer,
    gateway: Gateway,
):
    """
    Verify the checkout result and confirm the order.

    Safe to call again after a webhook already confirmed the payment: the
    second application is rejected with 409 and the order is unchanged.
    """
    service = PaymentReconciliationService(db, gateway)
    order = await service.verify_client_payment(
        order_id,
        buyer.buyer_id,
        gateway_order_id=data.razorpay_order_id,
        gateway_payment_id=data.razorpay_payment_id,
        signature=data.razorpay_signature,
    )
    return VerifyPaymentResponse(
        success=True,
        message="Payment verified successfully",
        order=OrderResponse.model_validate(order),
    )
