from decimal import Decimal

import pytest

from agrocycle.core.exceptions import (
    ValidationError,
    InvalidStateError,
    DeliveryNotFoundError,
    OrderNotFoundError,
)
from agrocycle.models.buyer_order import OrderStatus
from agrocycle.models.delivery import DeliveryStatus, RejectionReason
from agrocycle.schemas.delivery import DeliveryCreate, DeliveryDecision, DeliveryAction
from agrocycle.services.delivery_service import DeliveryService


def load(quantity: str, vehicle: str = "hr 26 dk 4821 ") -> DeliveryCreate:
    return DeliveryCreate(quantity_tonnes=Decimal(quantity), vehicle_number=vehicle)


ACCEPT = DeliveryDecision(action=DeliveryAction.ACCEPT)


async def ship_and_arrive(service, order, hub, quantity):
    delivery = await service.ship(order.id, hub.id, load(quantity))
    return await service.mark_arrived(delivery.id, hub.id)


class TestShipping:

    async def test_ship_creates_in_transit_delivery(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)

        delivery = await DeliveryService(db).ship(order.id, hub.id, load("4"))

        assert delivery.status == DeliveryStatus.IN_TRANSIT.value
        assert delivery.buyer_id == buyer.id
        assert delivery.vehicle_number == "HR 26 DK 4821"
        assert delivery.delivery_number.startswith("DEL-")

    async def test_order_must_be_dispatched(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.PROCESSING.value)

        with pytest.raises(InvalidStateError):
            await DeliveryService(db).ship(order.id, hub.id, load("4"))

    async def test_cannot_ship_more_than_ordered(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value, quantity=Decimal("10"))
        service = DeliveryService(db)
        await service.ship(order.id, hub.id, load("7"))

        with pytest.raises(ValidationError):
            await service.ship(order.id, hub.id, load("4"))

    async def test_rejected_loads_free_up_quantity(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value, quantity=Decimal("10"))
        service = DeliveryService(db)
        first = await ship_and_arrive(service, order, hub, "7")
        await service.decide(first.id, buyer.id, DeliveryDecision(action=DeliveryAction.REJECT))

        second = await service.ship(order.id, hub.id, load("10"))
        assert second.status == DeliveryStatus.IN_TRANSIT.value

    async def test_other_hub_cannot_ship(self, db, buyer, hub, other_hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)

        with pytest.raises(OrderNotFoundError):
            await DeliveryService(db).ship(order.id, other_hub.id, load("1"))

    async def test_arrive_only_from_in_transit(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)
        service = DeliveryService(db)
        delivery = await ship_and_arrive(service, order, hub, "2")

        assert delivery.status == DeliveryStatus.DELIVERED.value
        assert delivery.arrived_at is not None
        with pytest.raises(InvalidStateError):
            await service.mark_arrived(delivery.id, hub.id)


class TestDecisions:

    async def test_order_delivered_once_all_loads_accepted(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value, quantity=Decimal("10"))
        service = DeliveryService(db)

        first = await ship_and_arrive(service, order, hub, "6")
        await service.decide(first.id, buyer.id, ACCEPT)

        await db.refresh(order)
        assert order.status == OrderStatus.DISPATCHED.value
        assert order.accepted_quantity_tonnes == Decimal("6")

        second = await ship_and_arrive(service, order, hub, "4")
        accepted = await service.decide(second.id, buyer.id, ACCEPT)

        assert accepted.status == DeliveryStatus.ACCEPTED.value
        assert accepted.accepted_at is not None
        await db.refresh(order)
        assert order.accepted_quantity_tonnes == Decimal("10")
        assert order.status == OrderStatus.DELIVERED.value
        assert order.delivered_at is not None

    async def test_pending_load_holds_back_delivery(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value, quantity=Decimal("10"))
        service = DeliveryService(db)

        first = await ship_and_arrive(service, order, hub, "5")
        second = await ship_and_arrive(service, order, hub, "5")
        await service.decide(first.id, buyer.id, ACCEPT)

        # Only 5 t accepted and the second load is still awaiting inspection
        await db.refresh(order)
        assert order.status == OrderStatus.DISPATCHED.value

        await service.decide(second.id, buyer.id, ACCEPT)
        await db.refresh(order)
        assert order.status == OrderStatus.DELIVERED.value

    async def test_reject_leaves_order_untouched(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)
        version = order.version
        service = DeliveryService(db)
        delivery = await ship_and_arrive(service, order, hub, "3")

        rejected = await service.decide(delivery.id, buyer.id, DeliveryDecision(
            action=DeliveryAction.REJECT,
            rejection_reason=RejectionReason.HIGH_MOISTURE,
            notes="Moisture 24%",
        ))

        assert rejected.status == DeliveryStatus.REJECTED.value
        assert rejected.rejection_reason == RejectionReason.HIGH_MOISTURE.value
        assert rejected.rejected_at is not None
        await db.refresh(order)
        assert order.accepted_quantity_tonnes == Decimal("0")
        assert order.version == version

    async def test_reject_reason_defaults_to_other(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)
        service = DeliveryService(db)
        delivery = await ship_and_arrive(service, order, hub, "3")

        rejected = await service.decide(delivery.id, buyer.id, DeliveryDecision(action=DeliveryAction.REJECT))
        assert rejected.rejection_reason == RejectionReason.OTHER.value

    async def test_cannot_decide_in_transit_load(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)
        service = DeliveryService(db)
        delivery = await service.ship(order.id, hub.id, load("3"))

        with pytest.raises(InvalidStateError):
            await service.decide(delivery.id, buyer.id, ACCEPT)

    async def test_decision_is_final(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)
        service = DeliveryService(db)
        delivery = await ship_and_arrive(service, order, hub, "3")
        await service.decide(delivery.id, buyer.id, ACCEPT)

        with pytest.raises(InvalidStateError):
            await service.decide(delivery.id, buyer.id, DeliveryDecision(action=DeliveryAction.REJECT))

    async def test_other_buyer_cannot_see_delivery(self, db, buyer, other_buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)
        service = DeliveryService(db)
        delivery = await ship_and_arrive(service, order, hub, "3")

        with pytest.raises(DeliveryNotFoundError):
            await service.decide(delivery.id, other_buyer.id, ACCEPT)
        with pytest.raises(DeliveryNotFoundError):
            await service.get(delivery.id, other_buyer.id)


class TestListing:

    async def test_list_for_buyer_filters(self, db, buyer, hub, order_factory):
        first_order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)
        second_order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)
        service = DeliveryService(db)
        await service.ship(first_order.id, hub.id, load("1"))
        await ship_and_arrive(service, second_order, hub, "2")

        everything, total = await service.list_for_buyer(buyer.id)
        assert total == 2

        arrived, total = await service.list_for_buyer(buyer.id, status=DeliveryStatus.DELIVERED.value)
        assert total == 1
        assert arrived[0].order_id == second_order.id

        for_first, _ = await service.list_for_buyer(buyer.id, order_id=first_order.id)
        assert [d.order_id for d in for_first] == [first_order.id]

        hub_view = await service.list_for_order(second_order.id, hub.id)
        assert len(hub_view) == 1

    async def test_buyer_stats(self, db, buyer, other_buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value, quantity=Decimal("10"))
        foreign = await order_factory(other_buyer, hub, status=OrderStatus.DISPATCHED.value)
        service = DeliveryService(db)

        accepted = await ship_and_arrive(service, order, hub, "6")
        await service.decide(accepted.id, buyer.id, ACCEPT)
        rejected = await ship_and_arrive(service, order, hub, "3")
        await service.decide(rejected.id, buyer.id, DeliveryDecision(action=DeliveryAction.REJECT))
        await service.ship(order.id, hub.id, load("1"))
        await ship_and_arrive(service, foreign, hub, "2")

        stats = await service.get_buyer_stats(buyer.id)

        assert stats["total_received_tonnes"] == Decimal("6")
        assert stats["pending_deliveries"] == 1
        assert stats["accepted_count"] == 1
        assert stats["rejected_count"] == 1
