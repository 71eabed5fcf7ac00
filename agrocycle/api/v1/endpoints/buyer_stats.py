from fastapi import APIRouter

from agrocycle.api.deps import DB, CurrentBuyer
from agrocycle.schemas.order import BuyerStats, BuyerStatsResponse, OrderResponse
from agrocycle.services.order_ledger_service import OrderLedgerService
from agrocycle.services.delivery_service import DeliveryService


router = APIRouter(tags=["Buyer Dashboard"])

RECENT_ORDERS = 5


@router.get("", response_model=BuyerStatsResponse)
async def get_buyer_stats(
    db: DB,
    buyer: CurrentBuyer,
):
    """Dashboard summary: tonnes ordered and received, deliveries by outcome, recent orders."""
    ledger = OrderLedgerService(db)
    order_stats = await ledger.get_buyer_stats(buyer.buyer_id)
    delivery_stats = await DeliveryService(db).get_buyer_stats(buyer.buyer_id)
    recent, _ = await ledger.get_orders_for_buyer(buyer.buyer_id, skip=0, limit=RECENT_ORDERS)

    return BuyerStatsResponse(
        stats=BuyerStats(**order_stats, **delivery_stats),
        recent_orders=[OrderResponse.model_validate(o) for o in recent],
    )
