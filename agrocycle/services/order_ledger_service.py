from typing import List, Optional, Tuple, Dict, Any
from datetime import datetime, timezone
from decimal import Decimal
import uuid
import logging

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from agrocycle.core.exceptions import (
    ValidationError,
    OrderNotFoundError,
    InvalidStateError,
    ConcurrentUpdateError,
)
from agrocycle.core.security import BuyerIdentity, HubIdentity
from agrocycle.models.party import Hub
from agrocycle.models.buyer_order import (
    BuyerOrder,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
    compute_total_amount,
    derive_payment_status,
)
from agrocycle.schemas.order import OrderCreate, OrderUpdate

logger = logging.getLogger(__name__)


# Statuses a hub works with when no explicit filter is given
HUB_VISIBLE_STATUSES = [
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.DISPATCHED.value,
    OrderStatus.DELIVERED.value,
]


# ==================== SHARED ORDER STORE HELPERS ====================

async def load_order_for_update(
    db: AsyncSession,
    order_id: uuid.UUID,
    buyer_id: Optional[uuid.UUID] = None,
    hub_id: Optional[uuid.UUID] = None,
) -> BuyerOrder:
    """
    Load an order row under a row lock, scoped to a buyer or hub.

    populate_existing makes sure a stale copy in the identity map is
    overwritten with what is in the database right now.
    """
    stmt = (
        select(BuyerOrder)
        .where(BuyerOrder.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if buyer_id is not None:
        stmt = stmt.where(BuyerOrder.buyer_id == buyer_id)
    if hub_id is not None:
        stmt = stmt.where(BuyerOrder.hub_id == hub_id)

    order = (await db.execute(stmt)).scalar_one_or_none()
    if order is None:
        raise OrderNotFoundError("Order not found", {"order_id": str(order_id)})
    return order


async def compare_and_set_order(
    db: AsyncSession,
    order: BuyerOrder,
    values: Dict[str, Any],
    *conditions,
) -> bool:
    """
    Conditionally update an order.

    The write only lands if the row still has the version we read (and any
    extra guard conditions hold). Returns False when another writer got
    there first; the caller decides how to report it.
    """
    stmt = (
        update(BuyerOrder)
        .where(
            BuyerOrder.id == order.id,
            BuyerOrder.version == order.version,
            *conditions,
        )
        .values(version=order.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        return False

    await db.refresh(order)
    return True


def record_status_change(
    db: AsyncSession,
    order_id: uuid.UUID,
    from_status: Optional[str],
    to_status: str,
    changed_by: Optional[uuid.UUID] = None,
    notes: Optional[str] = None,
) -> None:
    """Append an entry to the order's status history."""
    if from_status == to_status:
        return
    db.add(OrderStatusHistory(
        order_id=order_id,
        from_status=from_status,
        to_status=to_status,
        changed_by=changed_by,
        notes=notes,
    ))


class OrderLedgerService:
    """Owns buyer orders: creation, pre-confirmation edits, cancellation and scoped reads."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== ORDER NUMBER GENERATION ====================

    async def generate_order_number(self) -> str:
        """Generate order number: ORD-YYYY-XXXX"""
        year = datetime.now(timezone.utc).year
        prefix = f"ORD-{year}-"

        stmt = select(func.count(BuyerOrder.id)).where(
            BuyerOrder.order_number.like(f"{prefix}%")
        )
        count = (await self.db.execute(stmt)).scalar() or 0

        return f"{prefix}{(count + 1):04d}"

    # ==================== WRITES ====================

    async def create_order(self, buyer_id: uuid.UUID, data: OrderCreate) -> BuyerOrder:
        """
        Create a pending order for a buyer.

        Raises:
            ValidationError: quantity is not positive or the hub is unknown/inactive
        """
        if data.quantity_tonnes <= 0:
            raise ValidationError("Quantity must be greater than zero")

        hub = (await self.db.execute(
            select(Hub).where(Hub.id == data.hub_id)
        )).scalar_one_or_none()
        if hub is None or not hub.is_active:
            raise ValidationError("Invalid hub selected", {"hub_id": str(data.hub_id)})

        price = data.price_per_tonne
        if price < 0:
            raise ValidationError("Price per tonne cannot be negative")
        total_amount = compute_total_amount(data.quantity_tonnes, price)

        order = BuyerOrder(
            order_number=await self.generate_order_number(),
            buyer_id=buyer_id,
            hub_id=hub.id,
            quantity_tonnes=data.quantity_tonnes,
            price_per_tonne=price,
            total_amount=total_amount,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            paid_amount=Decimal("0.00"),
            accepted_quantity_tonnes=Decimal("0"),
            requested_date=data.requested_date,
            requested_date_end=data.requested_date_end,
            notes=data.notes,
        )
        self.db.add(order)

        try:
            await self.db.flush()
        except IntegrityError as e:
            # Two buyers raced for the same order number
            await self.db.rollback()
            raise ConcurrentUpdateError("Could not allocate an order number, please retry") from e

        record_status_change(
            self.db, order.id, None, OrderStatus.PENDING.value,
            changed_by=buyer_id, notes="Order created",
        )
        await self.db.commit()
        await self.db.refresh(order)

        logger.info(
            f"Order {order.order_number} created by buyer {buyer_id}: "
            f"{order.quantity_tonnes} t x {order.price_per_tonne} = {order.total_amount}"
        )
        return order

    async def update_order(
        self,
        order_id: uuid.UUID,
        buyer_id: uuid.UUID,
        data: OrderUpdate,
    ) -> BuyerOrder:
        """
        Edit a pending order. Total amount follows quantity.

        Raises:
            OrderNotFoundError: not the buyer's order
            InvalidStateError: order is no longer pending
        """
        order = await load_order_for_update(self.db, order_id, buyer_id=buyer_id)
        self._ensure_pending(order, "update")

        values: Dict[str, Any] = {}
        if data.quantity_tonnes is not None:
            if data.quantity_tonnes <= 0:
                raise ValidationError("Quantity must be greater than zero")
            total_amount = compute_total_amount(data.quantity_tonnes, order.price_per_tonne)
            values["quantity_tonnes"] = data.quantity_tonnes
            values["total_amount"] = total_amount
            values["payment_status"] = derive_payment_status(order.paid_amount, total_amount)
        if data.requested_date is not None:
            values["requested_date"] = data.requested_date
        if data.requested_date_end is not None:
            values["requested_date_end"] = data.requested_date_end
        if data.notes is not None:
            values["notes"] = data.notes

        if not values:
            return order

        applied = await compare_and_set_order(
            self.db, order, values,
            BuyerOrder.status == OrderStatus.PENDING.value,
        )
        if not applied:
            await self._raise_lost_race(order_id, "update")

        await self.db.commit()
        logger.info(f"Order {order.order_number} updated by buyer {buyer_id}: {sorted(values)}")
        return order

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        buyer_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> BuyerOrder:
        """
        Cancel a pending order. Cancelled is terminal.

        The write is conditional on the order still being pending, so a
        payment that confirms the order first makes the cancel fail.
        """
        order = await load_order_for_update(self.db, order_id, buyer_id=buyer_id)
        self._ensure_pending(order, "cancel")

        applied = await compare_and_set_order(
            self.db, order,
            {
                "status": OrderStatus.CANCELLED.value,
                "cancelled_at": datetime.now(timezone.utc),
            },
            BuyerOrder.status == OrderStatus.PENDING.value,
        )
        if not applied:
            await self._raise_lost_race(order_id, "cancel")

        record_status_change(
            self.db, order.id, OrderStatus.PENDING.value, OrderStatus.CANCELLED.value,
            changed_by=buyer_id, notes=reason or "Cancelled by buyer",
        )
        await self.db.commit()
        logger.info(f"Order {order.order_number} cancelled by buyer {buyer_id}")
        return order

    # ==================== READS ====================

    async def get_order(
        self,
        order_id: uuid.UUID,
        requester: BuyerIdentity | HubIdentity,
    ) -> BuyerOrder:
        """Get an order as seen by a buyer (own orders) or a hub (assigned orders)."""
        stmt = select(BuyerOrder).where(BuyerOrder.id == order_id)
        if isinstance(requester, BuyerIdentity):
            stmt = stmt.where(BuyerOrder.buyer_id == requester.buyer_id)
        else:
            stmt = stmt.where(BuyerOrder.hub_id == requester.hub_id)

        order = (await self.db.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError("Order not found", {"order_id": str(order_id)})
        return order

    async def get_orders_for_buyer(
        self,
        buyer_id: uuid.UUID,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[BuyerOrder], int]:
        """Get paginated orders for a buyer, newest first."""
        filters = [BuyerOrder.buyer_id == buyer_id]
        if status:
            filters.append(BuyerOrder.status == status)

        count_stmt = select(func.count(BuyerOrder.id)).where(and_(*filters))
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(BuyerOrder)
            .where(and_(*filters))
            .order_by(BuyerOrder.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        orders = (await self.db.execute(stmt)).scalars().all()
        return list(orders), total

    async def get_orders_for_hub(
        self,
        hub_id: uuid.UUID,
        status: Optional[str] = None,
    ) -> List[BuyerOrder]:
        """Orders assigned to a hub. Without a filter only post-payment orders are listed."""
        stmt = select(BuyerOrder).where(BuyerOrder.hub_id == hub_id)
        if status and status != "all":
            stmt = stmt.where(BuyerOrder.status == status)
        else:
            stmt = stmt.where(BuyerOrder.status.in_(HUB_VISIBLE_STATUSES))

        stmt = stmt.order_by(BuyerOrder.created_at.desc())
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_hub_order_stats(self, hub_id: uuid.UUID) -> Dict[str, int]:
        """Per-status order counts for a hub."""
        stmt = (
            select(BuyerOrder.status, func.count(BuyerOrder.id))
            .where(BuyerOrder.hub_id == hub_id)
            .group_by(BuyerOrder.status)
        )
        rows = (await self.db.execute(stmt)).all()
        counts = {status: count for status, count in rows}

        stats = {s: counts.get(s, 0) for s in HUB_VISIBLE_STATUSES}
        stats["total"] = sum(counts.values())
        return stats

    async def get_buyer_stats(self, buyer_id: uuid.UUID) -> Dict[str, Any]:
        """
        Order side of the buyer dashboard: tonnes ordered (cancelled orders
        excluded) and order counts per status.
        """
        ordered = (await self.db.execute(
            select(func.coalesce(func.sum(BuyerOrder.quantity_tonnes), 0)).where(
                BuyerOrder.buyer_id == buyer_id,
                BuyerOrder.status != OrderStatus.CANCELLED.value,
            )
        )).scalar()

        rows = (await self.db.execute(
            select(BuyerOrder.status, func.count(BuyerOrder.id))
            .where(BuyerOrder.buyer_id == buyer_id)
            .group_by(BuyerOrder.status)
        )).all()

        return {
            "total_ordered_tonnes": Decimal(str(ordered or 0)),
            "orders_by_status": {status: count for status, count in rows},
        }

    # ==================== HELPERS ====================

    @staticmethod
    def _ensure_pending(order: BuyerOrder, action: str) -> None:
        if order.status != OrderStatus.PENDING.value:
            raise InvalidStateError(
                f"Cannot {action} order that is already processed",
                {"order_id": str(order.id), "status": order.status},
            )

    async def _raise_lost_race(self, order_id: uuid.UUID, action: str) -> None:
        current = (await self.db.execute(
            select(BuyerOrder.status).where(BuyerOrder.id == order_id)
        )).scalar_one_or_none()
        if current != OrderStatus.PENDING.value:
            raise InvalidStateError(
                f"Cannot {action} order that is already processed",
                {"order_id": str(order_id), "status": current},
            )
        raise ConcurrentUpdateError(
            "Order was modified concurrently, please retry",
            {"order_id": str(order_id)},
        )
