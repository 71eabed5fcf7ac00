from typing import List, Optional
import uuid
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from agrocycle.core.exceptions import ValidationError, ConcurrentUpdateError
from agrocycle.models.buyer_order import BuyerOrder, OrderStatus
from agrocycle.services.fulfillment_state_machine import (
    FulfillmentState,
    FulfillmentEvent,
    apply_fulfillment_events,
)
from agrocycle.services.order_ledger_service import (
    load_order_for_update,
    compare_and_set_order,
    record_status_change,
)

logger = logging.getLogger(__name__)


class FulfillmentService:
    """Hub side of the order lifecycle: allocation, certification, dispatch."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def apply(
        self,
        order_id: uuid.UUID,
        hub_id: uuid.UUID,
        actor_id: Optional[uuid.UUID],
        events: List[FulfillmentEvent],
        notes: Optional[str] = None,
    ) -> BuyerOrder:
        """
        Apply a batch of fulfillment events to a hub's order.

        The events are evaluated in order against a locked snapshot; if any
        of them is rejected nothing is written. The write itself is
        conditional on the version read, and for dispatch on the quality
        report and tracking id still being on file.

        Raises:
            OrderNotFoundError: order is not assigned to this hub
            ValidationError / InvalidStateError / PreconditionFailedError: from the gate
            ConcurrentUpdateError: another writer changed the order first
        """
        if not events:
            raise ValidationError("No fulfillment changes supplied")

        order = await load_order_for_update(self.db, order_id, hub_id=hub_id)
        state = FulfillmentState.from_order(order)

        result = apply_fulfillment_events(state, events)
        if not result.changes:
            return order

        guards = [BuyerOrder.status == state.status]
        if result.new_status == OrderStatus.DISPATCHED.value and state.status != result.new_status:
            # Re-check what was already on file; values set in this batch are written together
            if "quality_report" not in result.changes:
                guards.append(BuyerOrder.quality_report.isnot(None))
            if "tracking_id" not in result.changes:
                guards.append(BuyerOrder.tracking_id.isnot(None))

        applied = await compare_and_set_order(self.db, order, result.changes, *guards)
        if not applied:
            logger.warning(f"Lost update race on order {order_id} (hub {hub_id})")
            raise ConcurrentUpdateError(
                "Order was modified concurrently, please retry",
                {"order_id": str(order_id)},
            )

        if result.status_changed:
            record_status_change(
                self.db, order.id, state.status, result.new_status,
                changed_by=actor_id, notes=notes,
            )

        await self.db.commit()

        logger.info(
            f"Order {order.order_number}: {state.status} -> {result.new_status} "
            f"({', '.join(type(e).__name__ for e in events)}) by {actor_id}"
        )
        return order
