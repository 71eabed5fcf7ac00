from fastapi import APIRouter

from agrocycle.api.v1.endpoints import (
    # Buyer
    buyer_orders,
    buyer_deliveries,
    buyer_stats,
    # Hub
    hub_orders,
    # Gateway
    webhooks,
)


api_router = APIRouter(prefix="/api/v1")

api_router.include_router(
    buyer_orders.router,
    prefix="/buyer/orders",
    tags=["Buyer Orders"]
)

api_router.include_router(
    buyer_deliveries.router,
    prefix="/buyer/deliveries",
    tags=["Buyer Deliveries"]
)

api_router.include_router(
    buyer_stats.router,
    prefix="/buyer/stats",
    tags=["Buyer Dashboard"]
)

api_router.include_router(
    hub_orders.router,
    prefix="/hub/orders",
    tags=["Hub Orders"]
)

api_router.include_router(
    hub_orders.deliveries_router,
    prefix="/hub/deliveries",
    tags=["Hub Deliveries"]
)

api_router.include_router(
    webhooks.router,
    prefix="/webhooks",
    tags=["Webhooks"]
)
