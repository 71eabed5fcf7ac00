from decimal import Decimal
import uuid

import pytest
from sqlalchemy import select, update

from agrocycle.core.exceptions import (
    OrderNotFoundError,
    PreconditionFailedError,
    ConcurrentUpdateError,
    ValidationError,
)
from agrocycle.models.buyer_order import BuyerOrder, OrderStatus, OrderStatusHistory
from agrocycle.services.fulfillment_service import FulfillmentService
from agrocycle.services.fulfillment_state_machine import (
    AllocateStock,
    AttachQualityReport,
    AttachShipmentDetails,
    ShipmentDetails,
    Dispatch,
    MarkDelivered,
)


REPORT = {"calorific_value": 3900, "moisture": 10.8}


class TestFulfillmentService:

    async def test_dispatch_waits_for_tracking_id(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.PROCESSING.value, quality_report=REPORT)
        staff = uuid.uuid4()
        service = FulfillmentService(db)

        with pytest.raises(PreconditionFailedError):
            await service.apply(order.id, hub.id, staff, [Dispatch()])

        await db.refresh(order)
        assert order.status == OrderStatus.PROCESSING.value
        assert order.dispatched_at is None

        await service.apply(order.id, hub.id, staff, [
            AttachShipmentDetails(ShipmentDetails(tracking_id="TRK-42", vehicle_number="PB10XY9876")),
        ])
        order = await service.apply(order.id, hub.id, staff, [Dispatch()])

        assert order.status == OrderStatus.DISPATCHED.value
        assert order.tracking_id == "TRK-42"
        assert order.dispatched_at is not None
        assert order.shipping_date is not None

    async def test_combined_request_is_all_or_nothing(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.CONFIRMED.value)

        with pytest.raises(PreconditionFailedError):
            await FulfillmentService(db).apply(order.id, hub.id, uuid.uuid4(), [
                AllocateStock(Decimal("10")),
                AttachQualityReport(REPORT),
                Dispatch(),
            ])

        await db.refresh(order)
        assert order.status == OrderStatus.CONFIRMED.value
        assert order.quality_report is None
        assert order.allocated_quantity_tonnes is None

    async def test_full_preparation_in_one_request(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.CONFIRMED.value)
        staff = uuid.uuid4()

        order = await FulfillmentService(db).apply(order.id, hub.id, staff, [
            AllocateStock(Decimal("10"), prepared_by=staff),
            AttachQualityReport(REPORT),
            AttachShipmentDetails(ShipmentDetails(tracking_id="TRK-1")),
            Dispatch(),
        ], notes="Loaded at bay 3")

        assert order.status == OrderStatus.DISPATCHED.value
        assert order.prepared_by == staff
        assert order.quality_report == REPORT

        history = (await db.execute(
            select(OrderStatusHistory).where(OrderStatusHistory.order_id == order.id)
        )).scalars().all()
        assert [(h.from_status, h.to_status, h.changed_by) for h in history] == [
            (OrderStatus.CONFIRMED.value, OrderStatus.DISPATCHED.value, staff)
        ]

    async def test_mark_delivered(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)
        order = await FulfillmentService(db).apply(order.id, hub.id, None, [MarkDelivered()])
        assert order.status == OrderStatus.DELIVERED.value
        assert order.delivered_at is not None

    async def test_other_hubs_cannot_touch_order(self, db, buyer, hub, other_hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.CONFIRMED.value)

        with pytest.raises(OrderNotFoundError):
            await FulfillmentService(db).apply(order.id, other_hub.id, None, [AllocateStock(Decimal("1"))])

    async def test_empty_request(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.CONFIRMED.value)
        with pytest.raises(ValidationError):
            await FulfillmentService(db).apply(order.id, hub.id, None, [])

    async def test_lost_race_is_reported(self, db, buyer, hub, order_factory, monkeypatch):
        """Another writer bumps the version between our read and our write."""
        order = await order_factory(
            buyer, hub, status=OrderStatus.PROCESSING.value,
            quality_report=REPORT, tracking_id="TRK-1",
        )
        original_execute = db.execute
        raced = []

        async def execute_with_race(statement, *args, **kwargs):
            if getattr(statement, "is_update", False) and not raced:
                raced.append(True)
                await original_execute(
                    update(BuyerOrder)
                    .where(BuyerOrder.id == order.id)
                    .values(tracking_id=None, version=BuyerOrder.version + 1)
                )
            return await original_execute(statement, *args, **kwargs)

        monkeypatch.setattr(db, "execute", execute_with_race)

        with pytest.raises(ConcurrentUpdateError):
            await FulfillmentService(db).apply(order.id, hub.id, None, [Dispatch()])

        status = (await original_execute(
            select(BuyerOrder.status).where(BuyerOrder.id == order.id)
        )).scalar_one()
        assert status == OrderStatus.PROCESSING.value
