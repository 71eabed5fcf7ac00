# Models module
from agrocycle.models.party import Buyer, Hub
from agrocycle.models.buyer_order import BuyerOrder, OrderStatusHistory
from agrocycle.models.delivery import BuyerDelivery
from agrocycle.models.payment_event import PaymentEvent
from agrocycle.models.payout import Payout

__all__ = [
    "Buyer",
    "Hub",
    "BuyerOrder",
    "OrderStatusHistory",
    "BuyerDelivery",
    "PaymentEvent",
    "Payout",
]
