"""
Payment Service - Razorpay Integration

Thin, stateless adapter around the Razorpay gateway:
- Create Razorpay orders (payment intents) for the amount due on an order
- Verify checkout signatures returned to the client
- Verify webhook signatures against the raw request body
- Fetch payments for a Razorpay order (gateway sync)

Nothing here touches the database.
"""

import logging
import hmac
import hashlib
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, List
import uuid

import razorpay
from razorpay.errors import BadRequestError, ServerError
from pydantic import BaseModel
from requests.exceptions import RequestException

from agrocycle.config import settings
from agrocycle.core.exceptions import AlreadyPaidError, GatewayError
from agrocycle.models.buyer_order import BuyerOrder, PaymentStatus

logger = logging.getLogger(__name__)


class PaymentIntent(BaseModel):
    """Razorpay order created for checkout."""
    gateway_order_id: str
    amount: Decimal  # In INR
    amount_in_paise: int
    currency: str
    receipt: str
    notes: Dict[str, str]


def to_paise(amount: Decimal) -> int:
    """Razorpay works in the smallest currency unit."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_paise(amount_in_paise: int) -> Decimal:
    return (Decimal(amount_in_paise) / 100).quantize(Decimal("0.01"))


def compute_signature(secret: str, message: bytes) -> str:
    """HMAC-SHA256 hex digest used by every Razorpay signature scheme."""
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def client_signature_payload(gateway_order_id: str, gateway_payment_id: str) -> bytes:
    """Canonical string Razorpay signs after checkout: "<order id>|<payment id>"."""
    return f"{gateway_order_id}|{gateway_payment_id}".encode()


class PaymentService:
    """
    Service for handling Razorpay payments.
    """

    def __init__(self, client: Optional[Any] = None):
        """Initialize Razorpay client."""
        self.client = client or razorpay.Client(
            auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)
        )
        self.key_id = settings.RAZORPAY_KEY_ID
        self.key_secret = settings.RAZORPAY_KEY_SECRET
        self.webhook_secret = settings.RAZORPAY_WEBHOOK_SECRET
        self.timeout = settings.RAZORPAY_TIMEOUT_SECONDS
        self.currency = settings.PAYMENT_CURRENCY

    def create_payment_intent(self, order: BuyerOrder, amount_due: Decimal) -> PaymentIntent:
        """
        Create a Razorpay order for the amount still due on an order.

        Args:
            order: The buyer order being paid
            amount_due: total_amount - paid_amount

        Returns:
            PaymentIntent with the Razorpay order id

        Raises:
            AlreadyPaidError: nothing is due or the order is fully paid
            GatewayError: Razorpay rejected the call or timed out
        """
        if order.payment_status == PaymentStatus.COMPLETED.value or amount_due <= 0:
            raise AlreadyPaidError(
                "Order is already paid",
                {"order_id": str(order.id), "amount_due": str(amount_due)}
            )

        amount_in_paise = to_paise(amount_due)
        receipt = f"order_{order.order_number}"
        notes = {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "buyer_id": str(order.buyer_id),
        }

        order_data = {
            "amount": amount_in_paise,
            "currency": self.currency,
            "receipt": receipt,
            "notes": notes,
        }

        try:
            razorpay_order = self.client.order.create(data=order_data, timeout=self.timeout)
        except (BadRequestError, ServerError, RequestException) as e:
            logger.error(f"Failed to create Razorpay order for {order.order_number}: {e}")
            raise GatewayError("Failed to create payment order", {"reason": str(e)}) from e

        logger.info(
            f"Created Razorpay order {razorpay_order['id']} "
            f"for order {order.order_number} ({amount_due} {self.currency})"
        )

        return PaymentIntent(
            gateway_order_id=razorpay_order["id"],
            amount=Decimal(amount_due),
            amount_in_paise=amount_in_paise,
            currency=self.currency,
            receipt=receipt,
            notes=razorpay_order.get("notes") or notes,
        )

    def verify_client_signature(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> bool:
        """
        Verify the signature handed to the client after checkout.

        Pure function of the key secret; no gateway call is made.
        """
        if not self.key_secret or not signature:
            return False

        expected_signature = compute_signature(
            self.key_secret,
            client_signature_payload(gateway_order_id, gateway_payment_id),
        )
        return hmac.compare_digest(expected_signature, signature)

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """
        Verify Razorpay webhook signature.

        Args:
            body: Raw request body bytes, exactly as received
            signature: X-Razorpay-Signature header value

        Returns:
            True if signature is valid, False otherwise
        """
        if not self.webhook_secret:
            logger.warning("Webhook secret not configured")
            return False

        if not signature:
            return False

        expected_signature = compute_signature(self.webhook_secret, body)
        return hmac.compare_digest(expected_signature, signature)

    def fetch_order_payments(self, gateway_order_id: str) -> List[Dict[str, Any]]:
        """
        Get all payments for a Razorpay order.

        Args:
            gateway_order_id: Razorpay order ID

        Returns:
            List of payment entities for the order
        """
        try:
            payments = self.client.order.payments(gateway_order_id, timeout=self.timeout)
        except (BadRequestError, ServerError, RequestException) as e:
            logger.error(f"Failed to fetch payments for {gateway_order_id}: {e}")
            raise GatewayError("Failed to fetch order payments", {"reason": str(e)}) from e
        return payments.get("items", [])

    def checkout_options(self, intent: PaymentIntent, order_id: uuid.UUID) -> Dict[str, Any]:
        """Fields the frontend needs to open the Razorpay checkout."""
        return {
            "razorpay_order_id": intent.gateway_order_id,
            "razorpay_key_id": self.key_id,
            "amount": intent.amount,
            "currency": intent.currency,
            "order_id": order_id,
        }


# Webhook event types
class WebhookEvent:
    """Razorpay webhook event types handled by the reconciliation service."""
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    PAYOUT_PROCESSED = "payout.processed"
    PAYOUT_FAILED = "payout.failed"
    PAYOUT_REJECTED = "payout.rejected"
