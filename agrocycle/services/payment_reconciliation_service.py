"""
Payment Reconciliation

Turns gateway confirmations into order state. Payments reach us three ways:
- the buyer's browser hands back a signed checkout result (verify_client_payment)
- Razorpay posts a signed webhook (handle_webhook)
- an operator pulls payments for an order from the gateway (sync_order_from_gateway)

All three go through _apply_payment. A payment is credited at most once: a
processed-event row with a unique key is inserted in the same transaction as
the conditional order update, so a replay or a concurrent worker loses on the
unique constraint and the order is left alone.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from agrocycle.core.security import parse_uuid
from agrocycle.core.exceptions import (
    ValidationError,
    InvalidStateError,
    OrderMismatchError,
    InvalidSignatureError,
    AlreadyPaidError,
    AlreadyProcessedError,
    ConcurrentUpdateError,
)
from agrocycle.models.buyer_order import (
    BuyerOrder,
    OrderStatus,
    derive_payment_status,
)
from agrocycle.models.payment_event import PaymentEvent, PaymentEventSource, PaymentEventOutcome
from agrocycle.models.payout import Payout, PayoutStatus
from agrocycle.services.payment_service import PaymentService, PaymentIntent, WebhookEvent, from_paise
from agrocycle.services.order_ledger_service import (
    load_order_for_update,
    compare_and_set_order,
    record_status_change,
)

logger = logging.getLogger(__name__)


class ReconciliationStatus:
    """What happened to an incoming payment event."""
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    ALREADY_PAID = "already_paid"
    RECORDED = "recorded"
    IGNORED = "ignored"


@dataclass
class ReconciliationOutcome:
    status: str
    order: Optional[BuyerOrder] = None
    event_key: Optional[str] = None
    message: str = ""


def payment_event_key(gateway_payment_id: str) -> str:
    """One key per gateway payment, whichever path reports it first."""
    return f"payment:{gateway_payment_id}"


class PaymentReconciliationService:
    """Applies gateway payment and payout events to orders and payouts."""

    def __init__(self, db: AsyncSession, gateway: Optional[PaymentService] = None):
        self.db = db
        self.gateway = gateway or PaymentService()

    # ==================== CHECKOUT ====================

    async def create_payment_intent(self, order_id: uuid.UUID, buyer_id: uuid.UUID) -> PaymentIntent:
        """
        Create a gateway order for the amount still due and remember its id.

        Raises:
            OrderNotFoundError: not the buyer's order
            InvalidStateError: order was cancelled
            AlreadyPaidError: nothing left to pay
            GatewayError: Razorpay call failed
        """
        order = await load_order_for_update(self.db, order_id, buyer_id=buyer_id)
        if order.status == OrderStatus.CANCELLED.value:
            raise InvalidStateError("Cannot pay for a cancelled order", {"order_id": str(order.id)})

        intent = self.gateway.create_payment_intent(order, order.balance_due)

        applied = await compare_and_set_order(
            self.db, order, {"gateway_order_id": intent.gateway_order_id}
        )
        if not applied:
            raise ConcurrentUpdateError(
                "Order was modified concurrently, please retry",
                {"order_id": str(order.id)},
            )
        await self.db.commit()
        return intent

    # ==================== CLIENT VERIFICATION ====================

    async def verify_client_payment(
        self,
        order_id: uuid.UUID,
        buyer_id: uuid.UUID,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> BuyerOrder:
        """
        Confirm a checkout result posted back by the buyer.

        Raises:
            OrderNotFoundError: not the buyer's order
            OrderMismatchError: gateway order id differs from the stored one
            InvalidSignatureError: signature did not verify
            InvalidStateError: order was cancelled
            AlreadyProcessedError: this payment was already applied
            AlreadyPaidError: order is already fully paid
        """
        order = await load_order_for_update(self.db, order_id, buyer_id=buyer_id)

        if not order.gateway_order_id or order.gateway_order_id != gateway_order_id:
            raise OrderMismatchError(
                "Payment order does not match this order",
                {"order_id": str(order.id)},
            )

        if not self.gateway.verify_client_signature(gateway_order_id, gateway_payment_id, signature):
            logger.warning(f"Invalid payment signature for order {order.order_number}")
            raise InvalidSignatureError("Invalid payment signature")

        outcome = await self._apply_payment(
            order,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            amount=order.balance_due,
            source=PaymentEventSource.CLIENT_VERIFICATION,
            event_type="payment.verified",
        )

        if outcome.status == ReconciliationStatus.ALREADY_PROCESSED:
            raise AlreadyProcessedError(
                "Payment has already been processed",
                {"gateway_payment_id": gateway_payment_id},
            )
        if outcome.status == ReconciliationStatus.ALREADY_PAID:
            raise AlreadyPaidError("Order is already paid", {"order_id": str(order_id)})

        return outcome.order

    # ==================== WEBHOOKS ====================

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> ReconciliationOutcome:
        """
        Verify and dispatch a Razorpay webhook.

        The signature is checked against the raw bytes before anything is
        parsed.

        Raises:
            InvalidSignatureError: signature missing or wrong
            ValidationError: body is not a JSON object
        """
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("Invalid Razorpay webhook signature")
            raise InvalidSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event = payload.get("event")
        logger.info(f"Received Razorpay webhook: {event}")

        if event in (WebhookEvent.PAYMENT_CAPTURED, WebhookEvent.PAYMENT_AUTHORIZED):
            return await self._handle_payment_credit(event, payload)
        if event == WebhookEvent.PAYMENT_FAILED:
            return await self._handle_payment_failed(payload)
        if event == WebhookEvent.PAYOUT_PROCESSED:
            return await self._handle_payout_processed(payload)
        if event in (WebhookEvent.PAYOUT_FAILED, WebhookEvent.PAYOUT_REJECTED):
            return await self._handle_payout_failed(event, payload)

        logger.warning(f"Ignoring unhandled webhook event: {event}")
        return ReconciliationOutcome(status=ReconciliationStatus.IGNORED, message=f"Unhandled event {event}")

    async def _handle_payment_credit(self, event: str, payload: Dict[str, Any]) -> ReconciliationOutcome:
        payment = self._entity(payload, "payment")
        gateway_payment_id = payment.get("id")
        order_id = parse_uuid((payment.get("notes") or {}).get("order_id"))

        if not gateway_payment_id or order_id is None:
            logger.warning(f"{event} without payment id or order reference, ignoring")
            return ReconciliationOutcome(status=ReconciliationStatus.IGNORED, message="No order reference")

        order = await self._find_order(order_id)
        if order is None:
            logger.warning(f"{event} for unknown order {order_id}, ignoring")
            return ReconciliationOutcome(status=ReconciliationStatus.IGNORED, message="Unknown order")

        try:
            amount = from_paise(int(payment.get("amount")))
        except (TypeError, ValueError) as e:
            raise ValidationError("Payment amount missing or malformed") from e

        return await self._apply_payment(
            order,
            gateway_order_id=payment.get("order_id"),
            gateway_payment_id=gateway_payment_id,
            amount=amount,
            source=PaymentEventSource.WEBHOOK,
            event_type=event,
            payload=payment,
        )

    async def _handle_payment_failed(self, payload: Dict[str, Any]) -> ReconciliationOutcome:
        """Failures are recorded for visibility; the buyer can retry, so the order is untouched."""
        payment = self._entity(payload, "payment")
        gateway_payment_id = payment.get("id")
        if not gateway_payment_id:
            return ReconciliationOutcome(status=ReconciliationStatus.IGNORED, message="No payment id")

        order_id = parse_uuid((payment.get("notes") or {}).get("order_id"))
        order = await self._find_order(order_id) if order_id else None

        event_key = f"{WebhookEvent.PAYMENT_FAILED}:{gateway_payment_id}"
        recorded = await self._record_event(
            event_key,
            event_type=WebhookEvent.PAYMENT_FAILED,
            source=PaymentEventSource.WEBHOOK,
            outcome=PaymentEventOutcome.RECORDED,
            order_id=order.id if order else None,
            gateway_order_id=payment.get("order_id"),
            gateway_payment_id=gateway_payment_id,
            payload=payment,
        )
        if not recorded:
            return ReconciliationOutcome(status=ReconciliationStatus.ALREADY_PROCESSED, event_key=event_key)

        await self.db.commit()
        logger.info(
            f"Payment {gateway_payment_id} failed for order "
            f"{order.order_number if order else order_id}: {payment.get('error_description')}"
        )
        return ReconciliationOutcome(status=ReconciliationStatus.RECORDED, order=order, event_key=event_key)

    async def _handle_payout_processed(self, payload: Dict[str, Any]) -> ReconciliationOutcome:
        payout_entity = self._entity(payload, "payout")
        payout = await self._find_payout(payout_entity)
        if payout is None:
            return ReconciliationOutcome(status=ReconciliationStatus.IGNORED, message="Unknown payout")

        event_key = f"{WebhookEvent.PAYOUT_PROCESSED}:{payout_entity.get('id') or payout.id}"
        if not await self._record_event(
            event_key,
            event_type=WebhookEvent.PAYOUT_PROCESSED,
            source=PaymentEventSource.WEBHOOK,
            outcome=PaymentEventOutcome.APPLIED,
            payload=payout_entity,
        ):
            return ReconciliationOutcome(status=ReconciliationStatus.ALREADY_PROCESSED, event_key=event_key)

        await self.db.execute(
            update(Payout)
            .where(Payout.id == payout.id, Payout.status != PayoutStatus.COMPLETED.value)
            .values(
                status=PayoutStatus.COMPLETED.value,
                gateway_payout_id=payout_entity.get("id") or payout.gateway_payout_id,
                processed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(f"Payout {payout.id} completed")
        return ReconciliationOutcome(status=ReconciliationStatus.APPLIED, event_key=event_key)

    async def _handle_payout_failed(self, event: str, payload: Dict[str, Any]) -> ReconciliationOutcome:
        payout_entity = self._entity(payload, "payout")
        payout = await self._find_payout(payout_entity)
        if payout is None:
            return ReconciliationOutcome(status=ReconciliationStatus.IGNORED, message="Unknown payout")

        event_key = f"{event}:{payout_entity.get('id') or payout.id}"
        if not await self._record_event(
            event_key,
            event_type=event,
            source=PaymentEventSource.WEBHOOK,
            outcome=PaymentEventOutcome.APPLIED,
            payload=payout_entity,
        ):
            return ReconciliationOutcome(status=ReconciliationStatus.ALREADY_PROCESSED, event_key=event_key)

        reason = payout_entity.get("failure_reason") or "Payout failed"
        # A completed payout stays completed
        result = await self.db.execute(
            update(Payout)
            .where(Payout.id == payout.id, Payout.status != PayoutStatus.COMPLETED.value)
            .values(status=PayoutStatus.FAILED.value, notes=reason)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount != 1:
            logger.warning(f"Ignoring {event} for completed payout {payout.id}")
            return ReconciliationOutcome(status=ReconciliationStatus.RECORDED, event_key=event_key)

        logger.info(f"Payout {payout.id} failed: {reason}")
        return ReconciliationOutcome(status=ReconciliationStatus.APPLIED, event_key=event_key)

    # ==================== GATEWAY SYNC ====================

    async def sync_order_from_gateway(self, order_id: uuid.UUID) -> List[ReconciliationOutcome]:
        """
        Pull captured payments for an order's gateway order and apply any
        that never arrived by webhook.
        """
        order = await load_order_for_update(self.db, order_id)
        if not order.gateway_order_id:
            logger.info(f"Order {order.order_number} has no gateway order, nothing to sync")
            return []

        gateway_order_id = order.gateway_order_id
        payments = self.gateway.fetch_order_payments(gateway_order_id)

        outcomes = []
        for payment in payments:
            if payment.get("status") != "captured" or not payment.get("id"):
                continue

            try:
                amount = from_paise(int(payment.get("amount")))
            except (TypeError, ValueError):
                amount = None
            if amount is None or amount <= 0:
                logger.warning(f"Skipping captured payment {payment['id']} with amount {payment.get('amount')!r}")
                continue

            # Re-lock per payment; an earlier apply may have committed or rolled back
            order = await load_order_for_update(self.db, order_id)
            outcome = await self._apply_payment(
                order,
                gateway_order_id=gateway_order_id,
                gateway_payment_id=payment["id"],
                amount=amount,
                source=PaymentEventSource.GATEWAY_SYNC,
                event_type=WebhookEvent.PAYMENT_CAPTURED,
                payload=payment,
            )
            outcomes.append(outcome)

        applied = sum(1 for o in outcomes if o.status == ReconciliationStatus.APPLIED)
        logger.info(f"Synced order {order_id} from gateway: {applied}/{len(outcomes)} payments applied")
        return outcomes

    # ==================== SHARED APPLY ====================

    async def _apply_payment(
        self,
        order: BuyerOrder,
        gateway_order_id: Optional[str],
        gateway_payment_id: str,
        amount: Decimal,
        source: PaymentEventSource,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ReconciliationOutcome:
        """
        Credit a payment to a locked order exactly once.

        paid_amount grows by the payment (never past the total) and the
        order moves pending -> confirmed. Other statuses are left as they are.
        Cancelled and fully paid orders are never credited; payments reported
        for them by webhook or sync are kept on file with outcome "recorded".
        """
        event_key = payment_event_key(gateway_payment_id)

        if order.gateway_payment_id == gateway_payment_id or await self._event_exists(event_key):
            logger.warning(f"Payment {gateway_payment_id} already processed ({source.value})")
            return ReconciliationOutcome(
                status=ReconciliationStatus.ALREADY_PROCESSED, order=order, event_key=event_key
            )

        cancelled = order.status == OrderStatus.CANCELLED.value
        if order.is_paid or cancelled:
            if source == PaymentEventSource.CLIENT_VERIFICATION:
                if cancelled:
                    raise InvalidStateError("Cannot pay for a cancelled order", {"order_id": str(order.id)})
                return ReconciliationOutcome(status=ReconciliationStatus.ALREADY_PAID, order=order)
            # Keep the payment on file for manual follow-up; the order is not touched
            recorded = await self._record_event(
                event_key,
                event_type=event_type,
                source=source,
                outcome=PaymentEventOutcome.RECORDED,
                order_id=order.id,
                gateway_order_id=gateway_order_id,
                gateway_payment_id=gateway_payment_id,
                amount=amount,
                payload=payload,
            )
            if not recorded:
                return ReconciliationOutcome(status=ReconciliationStatus.ALREADY_PROCESSED, event_key=event_key)
            await self.db.commit()
            if cancelled:
                logger.warning(f"Payment {gateway_payment_id} received for cancelled order {order.order_number}")
                return ReconciliationOutcome(status=ReconciliationStatus.RECORDED, order=order, event_key=event_key)
            logger.warning(f"Payment {gateway_payment_id} received for fully paid order {order.order_number}")
            return ReconciliationOutcome(status=ReconciliationStatus.ALREADY_PAID, order=order, event_key=event_key)

        if amount is None or amount <= 0:
            raise ValidationError("Payment amount must be greater than zero", {"amount": str(amount)})

        order_pk = order.id
        recorded = await self._record_event(
            event_key,
            event_type=event_type,
            source=source,
            outcome=PaymentEventOutcome.APPLIED,
            order_id=order_pk,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            amount=amount,
            payload=payload,
        )
        if not recorded:
            logger.warning(f"Payment {gateway_payment_id} lost the race to another worker")
            return ReconciliationOutcome(status=ReconciliationStatus.ALREADY_PROCESSED, event_key=event_key)

        now = datetime.now(timezone.utc)
        new_paid = min(order.total_amount, order.paid_amount + amount)
        values = {
            "paid_amount": new_paid,
            "payment_status": derive_payment_status(new_paid, order.total_amount),
            "gateway_payment_id": gateway_payment_id,
            "paid_at": now,
        }

        from_status = order.status
        confirms = from_status == OrderStatus.PENDING.value
        if confirms:
            values["status"] = OrderStatus.CONFIRMED.value
            values["confirmed_at"] = now

        applied = await compare_and_set_order(self.db, order, values)
        if not applied:
            await self.db.rollback()
            raise ConcurrentUpdateError(
                "Order was modified concurrently, please retry",
                {"order_id": str(order_pk)},
            )

        if confirms:
            record_status_change(
                self.db, order.id, from_status, OrderStatus.CONFIRMED.value,
                notes=f"Payment {gateway_payment_id} received ({source.value})",
            )

        await self.db.commit()

        logger.info(
            f"Applied payment {gateway_payment_id} of {amount} to order {order.order_number} "
            f"via {source.value}: paid {order.paid_amount}/{order.total_amount}, status {order.status}"
        )
        return ReconciliationOutcome(status=ReconciliationStatus.APPLIED, order=order, event_key=event_key)

    # ==================== HELPERS ====================

    async def _event_exists(self, event_key: str) -> bool:
        stmt = select(PaymentEvent.id).where(PaymentEvent.event_key == event_key)
        return (await self.db.execute(stmt)).scalar_one_or_none() is not None

    async def _record_event(
        self,
        event_key: str,
        event_type: str,
        source: PaymentEventSource,
        outcome: PaymentEventOutcome,
        order_id: Optional[uuid.UUID] = None,
        gateway_order_id: Optional[str] = None,
        gateway_payment_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Insert the processed-event marker.

        Returns False, with the transaction rolled back, when the key is
        already taken.
        """
        self.db.add(PaymentEvent(
            event_key=event_key,
            event_type=event_type,
            source=source.value,
            outcome=outcome.value,
            order_id=order_id,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            amount=amount,
            payload=payload,
        ))
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            return False
        return True

    async def _find_order(self, order_id: uuid.UUID) -> Optional[BuyerOrder]:
        stmt = (
            select(BuyerOrder)
            .where(BuyerOrder.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _find_payout(self, payout_entity: Dict[str, Any]) -> Optional[Payout]:
        payout_id = parse_uuid(payout_entity.get("reference_id"))
        if payout_id is None:
            logger.warning("Payout webhook without a usable reference_id, ignoring")
            return None
        payout = await self.db.get(Payout, payout_id)
        if payout is None:
            logger.warning(f"Payout webhook for unknown payout {payout_id}, ignoring")
        return payout

    @staticmethod
    def _entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
        """payload.<name>.entity, or {} when absent."""
        section = (payload.get("payload") or {}).get(name) or {}
        return section.get("entity") or {}
