"""
Pull payments from Razorpay for orders that are still awaiting payment and
apply any that never arrived by webhook.

Usage:
    python scripts/reconcile_payments.py              # every pending/partial order with a gateway order
    python scripts/reconcile_payments.py <order id>   # a single order
"""
import asyncio
import sys
import uuid
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from agrocycle.core.exceptions import OrderEngineError
from agrocycle.database import async_session_factory
from agrocycle.models.buyer_order import BuyerOrder, PaymentStatus
from agrocycle.services.payment_reconciliation_service import (
    PaymentReconciliationService,
    ReconciliationStatus,
)


async def reconcile(order_ids=None):
    async with async_session_factory() as session:
        if order_ids is None:
            result = await session.execute(
                select(BuyerOrder.id, BuyerOrder.order_number).where(
                    BuyerOrder.gateway_order_id.isnot(None),
                    BuyerOrder.payment_status != PaymentStatus.COMPLETED.value,
                )
            )
            targets = result.all()
        else:
            targets = [(order_id, str(order_id)) for order_id in order_ids]

    print(f"Reconciling {len(targets)} order(s)...")

    applied = 0
    for order_id, label in targets:
        # One session per order so a failure does not poison the rest
        async with async_session_factory() as session:
            service = PaymentReconciliationService(session)
            try:
                outcomes = await service.sync_order_from_gateway(order_id)
            except OrderEngineError as e:
                await session.rollback()
                print(f"  {label}: FAILED - {e.message}")
                continue

        count = sum(1 for o in outcomes if o.status == ReconciliationStatus.APPLIED)
        applied += count
        print(f"  {label}: {len(outcomes)} captured payment(s), {count} applied")

    print(f"Done. {applied} payment(s) applied.")


if __name__ == "__main__":
    ids = [uuid.UUID(arg) for arg in sys.argv[1:]] or None
    asyncio.run(reconcile(ids))
