from datetime import datetime, timedelta, timezone
from decimal import Decimal
import uuid

import pytest
from sqlalchemy import select

from agrocycle.core.exceptions import (
    ValidationError,
    OrderNotFoundError,
    InvalidStateError,
)
from agrocycle.core.security import BuyerIdentity, HubIdentity
from agrocycle.models.buyer_order import OrderStatus, OrderStatusHistory, PaymentStatus
from agrocycle.schemas.order import OrderCreate, OrderUpdate
from agrocycle.services.order_ledger_service import OrderLedgerService


def new_order(hub, quantity="10", price="100") -> OrderCreate:
    return OrderCreate(
        hub_id=hub.id,
        quantity_tonnes=Decimal(quantity),
        price_per_tonne=Decimal(price),
        requested_date=datetime.now(timezone.utc) + timedelta(days=5),
    )


class TestCreateAndUpdate:

    async def test_total_follows_quantity_while_pending(self, db, buyer, hub):
        service = OrderLedgerService(db)

        order = await service.create_order(buyer.id, new_order(hub, "10", "100"))
        assert order.total_amount == Decimal("1000.00")
        assert order.status == OrderStatus.PENDING.value
        assert order.payment_status == PaymentStatus.PENDING.value
        assert order.paid_amount == Decimal("0")

        order = await service.update_order(order.id, buyer.id, OrderUpdate(quantity_tonnes=Decimal("8")))
        assert order.quantity_tonnes == Decimal("8")
        assert order.total_amount == Decimal("800.00")
        assert order.version == 2

    async def test_order_number_format(self, db, buyer, hub):
        service = OrderLedgerService(db)
        first = await service.create_order(buyer.id, new_order(hub))
        second = await service.create_order(buyer.id, new_order(hub))

        year = datetime.now(timezone.utc).year
        assert first.order_number == f"ORD-{year}-0001"
        assert second.order_number == f"ORD-{year}-0002"

    async def test_creation_is_recorded_in_history(self, db, buyer, hub):
        order = await OrderLedgerService(db).create_order(buyer.id, new_order(hub))

        history = (await db.execute(
            select(OrderStatusHistory).where(OrderStatusHistory.order_id == order.id)
        )).scalars().all()
        assert [(h.from_status, h.to_status) for h in history] == [(None, OrderStatus.PENDING.value)]

    async def test_unknown_hub_is_rejected(self, db, buyer, hub):
        data = new_order(hub)
        data.hub_id = uuid.uuid4()
        with pytest.raises(ValidationError):
            await OrderLedgerService(db).create_order(buyer.id, data)

    async def test_inactive_hub_is_rejected(self, db, buyer, hub):
        hub.is_active = False
        await db.commit()
        with pytest.raises(ValidationError):
            await OrderLedgerService(db).create_order(buyer.id, new_order(hub))

    async def test_cannot_update_confirmed_order(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.CONFIRMED.value)

        with pytest.raises(InvalidStateError):
            await OrderLedgerService(db).update_order(order.id, buyer.id, OrderUpdate(notes="rush"))

    async def test_cannot_update_someone_elses_order(self, db, buyer, other_buyer, hub, order_factory):
        order = await order_factory(buyer, hub)

        with pytest.raises(OrderNotFoundError):
            await OrderLedgerService(db).update_order(order.id, other_buyer.id, OrderUpdate(notes="x"))


class TestCancel:

    async def test_cancel_pending_order(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub)

        order = await OrderLedgerService(db).cancel_order(order.id, buyer.id, reason="Changed plans")

        assert order.status == OrderStatus.CANCELLED.value
        assert order.cancelled_at is not None

    async def test_cancel_confirmed_order_fails_and_leaves_it_unchanged(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.CONFIRMED.value)
        version = order.version

        with pytest.raises(InvalidStateError):
            await OrderLedgerService(db).cancel_order(order.id, buyer.id)

        await db.refresh(order)
        assert order.status == OrderStatus.CONFIRMED.value
        assert order.version == version
        assert order.cancelled_at is None

    async def test_cancelled_is_terminal(self, db, buyer, hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.CANCELLED.value)

        with pytest.raises(InvalidStateError):
            await OrderLedgerService(db).cancel_order(order.id, buyer.id)


class TestReads:

    async def test_buyer_and_hub_scoping(self, db, buyer, other_buyer, hub, other_hub, order_factory):
        order = await order_factory(buyer, hub, status=OrderStatus.CONFIRMED.value)
        service = OrderLedgerService(db)

        assert (await service.get_order(order.id, BuyerIdentity(buyer.id))).id == order.id
        assert (await service.get_order(order.id, HubIdentity(uuid.uuid4(), hub.id))).id == order.id

        with pytest.raises(OrderNotFoundError):
            await service.get_order(order.id, BuyerIdentity(other_buyer.id))
        with pytest.raises(OrderNotFoundError):
            await service.get_order(order.id, HubIdentity(uuid.uuid4(), other_hub.id))

    async def test_hub_list_hides_unpaid_orders_by_default(self, db, buyer, hub, order_factory):
        pending = await order_factory(buyer, hub)
        confirmed = await order_factory(buyer, hub, status=OrderStatus.CONFIRMED.value)
        dispatched = await order_factory(buyer, hub, status=OrderStatus.DISPATCHED.value)
        service = OrderLedgerService(db)

        listed = {o.id for o in await service.get_orders_for_hub(hub.id)}
        assert listed == {confirmed.id, dispatched.id}

        only_pending = await service.get_orders_for_hub(hub.id, status=OrderStatus.PENDING.value)
        assert [o.id for o in only_pending] == [pending.id]

        stats = await service.get_hub_order_stats(hub.id)
        assert stats["confirmed"] == 1
        assert stats["dispatched"] == 1
        assert stats["total"] == 3

    async def test_buyer_list_is_paginated(self, db, buyer, other_buyer, hub, order_factory):
        for _ in range(3):
            await order_factory(buyer, hub)
        await order_factory(other_buyer, hub)

        orders, total = await OrderLedgerService(db).get_orders_for_buyer(buyer.id, skip=0, limit=2)

        assert total == 3
        assert len(orders) == 2
        assert all(o.buyer_id == buyer.id for o in orders)

    async def test_buyer_stats_skip_cancelled_tonnage(self, db, buyer, other_buyer, hub, order_factory):
        await order_factory(buyer, hub, quantity=Decimal("10"))
        await order_factory(buyer, hub, status=OrderStatus.CONFIRMED.value, quantity=Decimal("5"))
        await order_factory(buyer, hub, status=OrderStatus.CANCELLED.value, quantity=Decimal("7"))
        await order_factory(other_buyer, hub, quantity=Decimal("100"))

        stats = await OrderLedgerService(db).get_buyer_stats(buyer.id)

        assert stats["total_ordered_tonnes"] == Decimal("15")
        assert stats["orders_by_status"] == {
            OrderStatus.PENDING.value: 1,
            OrderStatus.CONFIRMED.value: 1,
            OrderStatus.CANCELLED.value: 1,
        }

    async def test_buyer_stats_without_orders(self, db, buyer):
        stats = await OrderLedgerService(db).get_buyer_stats(buyer.id)
        assert stats["total_ordered_tonnes"] == Decimal("0")
        assert stats["orders_by_status"] == {}
