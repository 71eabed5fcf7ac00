from typing import Optional, List
import uuid

from fastapi import APIRouter, Query, status

from agrocycle.api.deps import DB, CurrentHub
from agrocycle.core.exceptions import ValidationError
from agrocycle.schemas.order import (
    OrderResponse,
    HubOrderListResponse,
    HubOrderStats,
    HubOrderUpdate,
)
from agrocycle.schemas.delivery import DeliveryCreate, DeliveryResponse
from agrocycle.services.order_ledger_service import OrderLedgerService
from agrocycle.services.fulfillment_service import FulfillmentService
from agrocycle.services.fulfillment_state_machine import (
    FulfillmentEvent,
    AllocateStock,
    AttachQualityReport,
    AttachShipmentDetails,
    ShipmentDetails,
    Dispatch,
    MarkDelivered,
)
from agrocycle.services.delivery_service import DeliveryService


router = APIRouter(tags=["Hub Orders"])
deliveries_router = APIRouter(tags=["Hub Deliveries"])


def _build_events(data: HubOrderUpdate, actor_id: uuid.UUID) -> List[FulfillmentEvent]:
    """Translate a PATCH body into fulfillment events, in application order."""
    events: List[FulfillmentEvent] = []

    if data.allocated_quantity_tonnes is not None:
        events.append(AllocateStock(quantity=data.allocated_quantity_tonnes, prepared_by=actor_id))

    if data.quality_report is not None:
        events.append(AttachQualityReport(report=data.quality_report))

    if data.has_shipment_details:
        events.append(AttachShipmentDetails(details=ShipmentDetails(
            tracking_id=data.tracking_id,
            vehicle_number=data.vehicle_number.strip().upper() if data.vehicle_number else None,
            driver_name=data.driver_name,
            driver_phone=data.driver_phone,
            estimated_delivery=data.estimated_delivery,
        )))

    if data.action == "dispatch":
        events.append(Dispatch(shipping_date=data.shipping_date))
    elif data.action == "deliver":
        events.append(MarkDelivered())

    return events


@router.get("", response_model=HubOrderListResponse)
async def list_orders(
    db: DB,
    hub: CurrentHub,
    status: Optional[str] = Query(None, description="Order status, or 'all'"),
):
    """Orders assigned to the hub, with per-status counts."""
    service = OrderLedgerService(db)
    orders = await service.get_orders_for_hub(hub.hub_id, status=status)
    stats = await service.get_hub_order_stats(hub.hub_id)

    return HubOrderListResponse(
        items=[OrderResponse.model_validate(o) for o in orders],
        stats=HubOrderStats(**stats),
    )


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: uuid.UUID,
    db: DB,
    hub: CurrentHub,
):
    service = OrderLedgerService(db)
    order = await service.get_order(order_id, hub)
    return OrderResponse.model_validate(order)


@router.patch("/{order_id}", response_model=OrderResponse)
async def update_order(
    order_id: uuid.UUID,
    data: HubOrderUpdate,
    db: DB,
    hub: CurrentHub,
):
    """
    Allocate stock, attach the quality report and shipment details, and
    dispatch or deliver.

    Everything in one request is applied together or not at all.
    """
    events = _build_events(data, hub.staff_id)
    if not events:
        raise ValidationError("No changes supplied")

    service = FulfillmentService(db)
    order = await service.apply(order_id, hub.hub_id, hub.staff_id, events, notes=data.notes)
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/deliveries",
    response_model=DeliveryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_delivery(
    order_id: uuid.UUID,
    data: DeliveryCreate,
    db: DB,
    hub: CurrentHub,
):
    """Record a load leaving the hub for a dispatched order."""
    service = DeliveryService(db)
    delivery = await service.ship(order_id, hub.hub_id, data)
    return DeliveryResponse.model_validate(delivery)


@router.get("/{order_id}/deliveries", response_model=List[DeliveryResponse])
async def list_deliveries(
    order_id: uuid.UUID,
    db: DB,
    hub: CurrentHub,
):
    service = DeliveryService(db)
    deliveries = await service.list_for_order(order_id, hub.hub_id)
    return [DeliveryResponse.model_validate(d) for d in deliveries]


@deliveries_router.post("/{delivery_id}/arrive", response_model=DeliveryResponse)
async def mark_delivery_arrived(
    delivery_id: uuid.UUID,
    db: DB,
    hub: CurrentHub,
):
    """Mark a load as arrived at the buyer; it then awaits inspection."""
    service = DeliveryService(db)
    delivery = await service.mark_arrived(delivery_id, hub.hub_id)
    return DeliveryResponse.model_validate(delivery)
