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
    DeliveryNotFoundError,
    InvalidStateError,
    ConcurrentUpdateError,
)
from agrocycle.models.buyer_order import BuyerOrder, OrderStatus
from agrocycle.models.delivery import (
    BuyerDelivery,
    DeliveryStatus,
    PENDING_DELIVERY_STATUSES,
    RejectionReason,
)
from agrocycle.schemas.delivery import DeliveryCreate, DeliveryDecision, DeliveryAction
from agrocycle.services.order_ledger_service import (
    load_order_for_update,
    compare_and_set_order,
    record_status_change,
)

logger = logging.getLogger(__name__)


class DeliveryService:
    """
    Physical deliveries against dispatched orders.

    An order may be shipped in several loads. The buyer accepts or rejects
    each load; once accepted quantity covers the order and no load is still
    on the road or awaiting inspection, the order becomes delivered.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def generate_delivery_number(self) -> str:
        """Generate delivery number: DEL-YYYY-XXXXX"""
        year = datetime.now(timezone.utc).year
        prefix = f"DEL-{year}-"

        stmt = select(func.count(BuyerDelivery.id)).where(
            BuyerDelivery.delivery_number.like(f"{prefix}%")
        )
        count = (await self.db.execute(stmt)).scalar() or 0

        return f"{prefix}{(count + 1):05d}"

    # ==================== HUB ====================

    async def ship(
        self,
        order_id: uuid.UUID,
        hub_id: uuid.UUID,
        data: DeliveryCreate,
    ) -> BuyerDelivery:
        """
        Record a load leaving the hub.

        Raises:
            OrderNotFoundError: order not assigned to this hub
            InvalidStateError: order has not been dispatched
            ValidationError: bad quantity, or shipped total would exceed the order
        """
        order = await load_order_for_update(self.db, order_id, hub_id=hub_id)

        if order.status != OrderStatus.DISPATCHED.value:
            raise InvalidStateError(
                "Deliveries can only be created for dispatched orders",
                {"order_id": str(order.id), "status": order.status},
            )
        if data.quantity_tonnes <= 0:
            raise ValidationError("Delivery quantity must be greater than zero")

        shipped = (await self.db.execute(
            select(func.coalesce(func.sum(BuyerDelivery.quantity_tonnes), 0)).where(
                BuyerDelivery.order_id == order.id,
                BuyerDelivery.status != DeliveryStatus.REJECTED.value,
            )
        )).scalar()
        shipped = Decimal(str(shipped or 0))

        if shipped + data.quantity_tonnes > order.quantity_tonnes:
            raise ValidationError(
                "Delivery quantity exceeds the remaining order quantity",
                {
                    "ordered": str(order.quantity_tonnes),
                    "already_shipped": str(shipped),
                    "requested": str(data.quantity_tonnes),
                },
            )

        delivery = BuyerDelivery(
            delivery_number=await self.generate_delivery_number(),
            order_id=order.id,
            buyer_id=order.buyer_id,
            hub_id=order.hub_id,
            quantity_tonnes=data.quantity_tonnes,
            delivery_date=data.delivery_date or datetime.now(timezone.utc),
            vehicle_number=data.vehicle_number,
            driver_name=data.driver_name,
            driver_phone=data.driver_phone,
            moisture_level=data.moisture_level,
            bale_type=data.bale_type.value if data.bale_type else None,
            status=DeliveryStatus.IN_TRANSIT.value,
            notes=data.notes,
        )
        self.db.add(delivery)

        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConcurrentUpdateError("Could not allocate a delivery number, please retry") from e

        await self.db.commit()
        await self.db.refresh(delivery)

        logger.info(
            f"Delivery {delivery.delivery_number} shipped for order {order.order_number}: "
            f"{delivery.quantity_tonnes} t"
        )
        return delivery

    async def mark_arrived(self, delivery_id: uuid.UUID, hub_id: uuid.UUID) -> BuyerDelivery:
        """in_transit -> delivered (arrived at the buyer, awaiting inspection)."""
        delivery = await self._get_scoped(delivery_id, hub_id=hub_id)
        if delivery.status != DeliveryStatus.IN_TRANSIT.value:
            raise InvalidStateError(
                "Only deliveries in transit can be marked as arrived",
                {"delivery_id": str(delivery.id), "status": delivery.status},
            )

        await self._transition(
            delivery,
            DeliveryStatus.IN_TRANSIT.value,
            {"status": DeliveryStatus.DELIVERED.value, "arrived_at": datetime.now(timezone.utc)},
        )
        await self.db.commit()

        logger.info(f"Delivery {delivery.delivery_number} arrived")
        return delivery

    async def list_for_order(self, order_id: uuid.UUID, hub_id: uuid.UUID) -> List[BuyerDelivery]:
        stmt = (
            select(BuyerDelivery)
            .where(BuyerDelivery.order_id == order_id, BuyerDelivery.hub_id == hub_id)
            .order_by(BuyerDelivery.created_at)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    # ==================== BUYER ====================

    async def decide(
        self,
        delivery_id: uuid.UUID,
        buyer_id: uuid.UUID,
        decision: DeliveryDecision,
    ) -> BuyerDelivery:
        """
        Accept or reject a delivered load.

        Accepting adds the load to the order's accepted quantity in the same
        transaction, under a lock on the order row. Rejection leaves the
        order untouched.

        Raises:
            DeliveryNotFoundError: not the buyer's delivery
            InvalidStateError: delivery is not awaiting inspection
            ConcurrentUpdateError: the delivery or order changed underneath us
        """
        delivery = await self._get_scoped(delivery_id, buyer_id=buyer_id)
        self._ensure_awaiting_decision(delivery)

        # Serialise decisions on the same order
        order = await load_order_for_update(self.db, delivery.order_id, buyer_id=buyer_id)

        now = datetime.now(timezone.utc)

        if decision.action == DeliveryAction.REJECT:
            reason = decision.rejection_reason or RejectionReason.OTHER
            await self._transition(
                delivery,
                DeliveryStatus.DELIVERED.value,
                {
                    "status": DeliveryStatus.REJECTED.value,
                    "rejected_at": now,
                    "rejection_reason": reason.value,
                    "notes": decision.notes or delivery.notes,
                },
            )
            await self.db.commit()
            logger.info(f"Delivery {delivery.delivery_number} rejected: {reason.value}")
            return delivery

        await self._transition(
            delivery,
            DeliveryStatus.DELIVERED.value,
            {
                "status": DeliveryStatus.ACCEPTED.value,
                "accepted_at": now,
                "notes": decision.notes or delivery.notes,
            },
        )

        accepted_total = order.accepted_quantity_tonnes + delivery.quantity_tonnes

        pending = (await self.db.execute(
            select(func.count(BuyerDelivery.id)).where(
                BuyerDelivery.order_id == order.id,
                BuyerDelivery.status.in_(PENDING_DELIVERY_STATUSES),
            )
        )).scalar() or 0

        values = {"accepted_quantity_tonnes": accepted_total}
        fully_delivered = (
            order.status == OrderStatus.DISPATCHED.value
            and accepted_total >= order.quantity_tonnes
            and pending == 0
        )
        if fully_delivered:
            values["status"] = OrderStatus.DELIVERED.value
            values["delivered_at"] = now

        from_status = order.status
        applied = await compare_and_set_order(self.db, order, values)
        if not applied:
            raise ConcurrentUpdateError(
                "Order was modified concurrently, please retry",
                {"order_id": str(order.id)},
            )

        if fully_delivered:
            record_status_change(
                self.db, order.id, from_status, OrderStatus.DELIVERED.value,
                changed_by=buyer_id, notes=f"All deliveries accepted ({accepted_total} t)",
            )

        await self.db.commit()

        logger.info(
            f"Delivery {delivery.delivery_number} accepted; order {order.order_number} "
            f"accepted {accepted_total}/{order.quantity_tonnes} t, {pending} pending"
        )
        return delivery

    async def get(self, delivery_id: uuid.UUID, buyer_id: uuid.UUID) -> BuyerDelivery:
        return await self._get_scoped(delivery_id, buyer_id=buyer_id)

    async def list_for_buyer(
        self,
        buyer_id: uuid.UUID,
        status: Optional[str] = None,
        order_id: Optional[uuid.UUID] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[BuyerDelivery], int]:
        """Get paginated deliveries for a buyer, newest first."""
        filters = [BuyerDelivery.buyer_id == buyer_id]
        if status:
            filters.append(BuyerDelivery.status == status)
        if order_id:
            filters.append(BuyerDelivery.order_id == order_id)

        total = (await self.db.execute(
            select(func.count(BuyerDelivery.id)).where(and_(*filters))
        )).scalar() or 0

        stmt = (
            select(BuyerDelivery)
            .where(and_(*filters))
            .order_by(BuyerDelivery.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        deliveries = (await self.db.execute(stmt)).scalars().all()
        return list(deliveries), total

    async def get_buyer_stats(self, buyer_id: uuid.UUID) -> Dict[str, Any]:
        """Delivery side of the buyer dashboard: tonnes received and loads by outcome."""
        received = (await self.db.execute(
            select(func.coalesce(func.sum(BuyerDelivery.quantity_tonnes), 0)).where(
                BuyerDelivery.buyer_id == buyer_id,
                BuyerDelivery.status == DeliveryStatus.ACCEPTED.value,
            )
        )).scalar()

        rows = (await self.db.execute(
            select(BuyerDelivery.status, func.count(BuyerDelivery.id))
            .where(BuyerDelivery.buyer_id == buyer_id)
            .group_by(BuyerDelivery.status)
        )).all()
        counts = {status: count for status, count in rows}

        return {
            "total_received_tonnes": Decimal(str(received or 0)),
            "pending_deliveries": sum(counts.get(s, 0) for s in PENDING_DELIVERY_STATUSES),
            "accepted_count": counts.get(DeliveryStatus.ACCEPTED.value, 0),
            "rejected_count": counts.get(DeliveryStatus.REJECTED.value, 0),
        }

    # ==================== HELPERS ====================

    async def _get_scoped(
        self,
        delivery_id: uuid.UUID,
        buyer_id: Optional[uuid.UUID] = None,
        hub_id: Optional[uuid.UUID] = None,
    ) -> BuyerDelivery:
        stmt = select(BuyerDelivery).where(BuyerDelivery.id == delivery_id)
        if buyer_id is not None:
            stmt = stmt.where(BuyerDelivery.buyer_id == buyer_id)
        if hub_id is not None:
            stmt = stmt.where(BuyerDelivery.hub_id == hub_id)

        delivery = (await self.db.execute(stmt)).scalar_one_or_none()
        if delivery is None:
            raise DeliveryNotFoundError("Delivery not found", {"delivery_id": str(delivery_id)})
        return delivery

    @staticmethod
    def _ensure_awaiting_decision(delivery: BuyerDelivery) -> None:
        if delivery.status != DeliveryStatus.DELIVERED.value:
            raise InvalidStateError(
                "Only delivered loads can be accepted or rejected",
                {"delivery_id": str(delivery.id), "status": delivery.status},
            )

    async def _transition(self, delivery: BuyerDelivery, expected_status: str, values: dict) -> None:
        """Conditional status change; fails if someone else moved the delivery first."""
        result = await self.db.execute(
            update(BuyerDelivery)
            .where(BuyerDelivery.id == delivery.id, BuyerDelivery.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(
                "Delivery was modified concurrently, please retry",
                {"delivery_id": str(delivery.id)},
            )
        await self.db.refresh(delivery)
