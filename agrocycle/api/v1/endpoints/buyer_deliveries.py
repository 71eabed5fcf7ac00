from typing import Optional
import uuid
from math import ceil

from fastapi import APIRouter, Query

from agrocycle.api.deps import DB, CurrentBuyer
from agrocycle.models.delivery import DeliveryStatus
from agrocycle.schemas.delivery import (
    DeliveryDecision,
    DeliveryResponse,
    DeliveryListResponse,
)
from agrocycle.services.delivery_service import DeliveryService


router = APIRouter(tags=["Buyer Deliveries"])


@router.get("", response_model=DeliveryListResponse)
async def list_deliveries(
    db: DB,
    buyer: CurrentBuyer,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status: Optional[DeliveryStatus] = Query(None),
    order_id: Optional[uuid.UUID] = Query(None),
):
    service = DeliveryService(db)
    deliveries, total = await service.list_for_buyer(
        buyer.buyer_id,
        status=status.value if status else None,
        order_id=order_id,
        skip=(page - 1) * size,
        limit=size,
    )
    return DeliveryListResponse(
        items=[DeliveryResponse.model_validate(d) for d in deliveries],
        total=total,
        page=page,
        size=size,
        pages=ceil(total / size) if total > 0 else 1,
    )


@router.get("/{delivery_id}", response_model=DeliveryResponse)
async def get_delivery(
    delivery_id: uuid.UUID,
    db: DB,
    buyer: CurrentBuyer,
):
    service = DeliveryService(db)
    delivery = await service.get(delivery_id, buyer.buyer_id)
    return DeliveryResponse.model_validate(delivery)


@router.put("/{delivery_id}", response_model=DeliveryResponse)
async def decide_delivery(
    delivery_id: uuid.UUID,
    data: DeliveryDecision,
    db: DB,
    buyer: CurrentBuyer,
):
    """Accept or reject a load that has arrived."""
    service = DeliveryService(db)
    delivery = await service.decide(delivery_id, buyer.buyer_id, data)
    return DeliveryResponse.model_validate(delivery)
