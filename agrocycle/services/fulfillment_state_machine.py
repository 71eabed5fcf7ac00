"""
Fulfillment State Machine

Every hub-driven change to a paid order goes through apply_fulfillment_event.
The function is pure: it takes a snapshot of the order and one event, and
returns the new status plus the column changes to persist. It never touches
the database, which keeps the gate easy to test and lets the service fold a
combined request (allocate + quality + shipment + dispatch) all-or-nothing.

Lifecycle:
    confirmed --AllocateStock--> processing --Dispatch--> dispatched --MarkDelivered--> delivered

Dispatch requires a quality report AND a tracking id.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any, Union
import uuid

from agrocycle.core.exceptions import (
    ValidationError,
    InvalidStateError,
    PreconditionFailedError,
)
from agrocycle.models.buyer_order import OrderStatus


# =============================================================================
# ORDER SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class FulfillmentState:
    """The parts of an order the fulfillment gate looks at."""
    status: str
    quantity_tonnes: Decimal
    allocated_quantity_tonnes: Optional[Decimal] = None
    quality_report: Optional[Dict[str, Any]] = None
    tracking_id: Optional[str] = None
    shipping_date: Optional[datetime] = None

    @classmethod
    def from_order(cls, order) -> "FulfillmentState":
        return cls(
            status=order.status,
            quantity_tonnes=order.quantity_tonnes,
            allocated_quantity_tonnes=order.allocated_quantity_tonnes,
            quality_report=order.quality_report,
            tracking_id=order.tracking_id,
            shipping_date=order.shipping_date,
        )


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class AllocateStock:
    quantity: Decimal
    prepared_by: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class AttachQualityReport:
    report: Dict[str, Any]


@dataclass(frozen=True)
class ShipmentDetails:
    tracking_id: Optional[str] = None
    vehicle_number: Optional[str] = None
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


@dataclass(frozen=True)
class AttachShipmentDetails:
    details: ShipmentDetails


@dataclass(frozen=True)
class Dispatch:
    shipping_date: Optional[datetime] = None


@dataclass(frozen=True)
class MarkDelivered:
    pass


FulfillmentEvent = Union[AllocateStock, AttachQualityReport, AttachShipmentDetails, Dispatch, MarkDelivered]


@dataclass
class TransitionResult:
    """New status and the order columns to write."""
    new_status: str
    changes: Dict[str, Any] = field(default_factory=dict)

    @property
    def status_changed(self) -> bool:
        return "status" in self.changes


# =============================================================================
# STATUS CHECK HELPERS
# =============================================================================

# Statuses in which certificate and shipment details may still be edited
PREPARATION_STATUSES = [OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value]


def can_allocate(status: str) -> bool:
    """Can stock be allocated to this order?"""
    return status == OrderStatus.CONFIRMED.value


def can_prepare(status: str) -> bool:
    """Can quality report / shipment details be attached?"""
    return status in PREPARATION_STATUSES


def is_ready_to_dispatch(state: FulfillmentState) -> bool:
    """Both the quality certificate and a tracking id are on file."""
    return bool(state.quality_report) and bool(state.tracking_id)


def can_dispatch(state: FulfillmentState) -> bool:
    return state.status in PREPARATION_STATUSES and is_ready_to_dispatch(state)


def can_mark_delivered(status: str) -> bool:
    return status == OrderStatus.DISPATCHED.value


def _invalid(state: FulfillmentState, event: FulfillmentEvent) -> InvalidStateError:
    return InvalidStateError(
        f"Cannot apply {type(event).__name__} to order in '{state.status}' status",
        {"status": state.status, "event": type(event).__name__},
    )


# =============================================================================
# TRANSITION FUNCTION
# =============================================================================

def apply_fulfillment_event(
    state: FulfillmentState,
    event: FulfillmentEvent,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Evaluate one event against an order snapshot.

    Raises:
        ValidationError: allocation quantity is not positive
        PreconditionFailedError: dispatch without quality report or tracking id
        InvalidStateError: event is not allowed in the current status
    """
    now = now or datetime.now(timezone.utc)

    if isinstance(event, AllocateStock):
        if not can_allocate(state.status):
            raise _invalid(state, event)
        if event.quantity is None or event.quantity <= 0:
            raise ValidationError(
                "Allocated quantity must be greater than zero",
                {"quantity": str(event.quantity)},
            )
        return TransitionResult(
            new_status=OrderStatus.PROCESSING.value,
            changes={
                "status": OrderStatus.PROCESSING.value,
                "allocated_quantity_tonnes": event.quantity,
                "allocated_at": now,
                "prepared_by": event.prepared_by,
            },
        )

    if isinstance(event, AttachQualityReport):
        if not can_prepare(state.status):
            raise _invalid(state, event)
        return TransitionResult(
            new_status=state.status,
            changes={"quality_report": dict(event.report)},
        )

    if isinstance(event, AttachShipmentDetails):
        if not can_prepare(state.status):
            raise _invalid(state, event)
        details = event.details
        changes = {
            "tracking_id": details.tracking_id,
            "shipment_vehicle_number": details.vehicle_number,
            "shipment_driver_name": details.driver_name,
            "shipment_driver_phone": details.driver_phone,
            "estimated_delivery": details.estimated_delivery,
        }
        # Only overwrite what was supplied
        changes = {k: v for k, v in changes.items() if v is not None}
        return TransitionResult(new_status=state.status, changes=changes)

    if isinstance(event, Dispatch):
        if not can_prepare(state.status):
            raise _invalid(state, event)
        if not is_ready_to_dispatch(state):
            missing = []
            if not state.quality_report:
                missing.append("quality_report")
            if not state.tracking_id:
                missing.append("tracking_id")
            raise PreconditionFailedError(
                "Quality report and tracking ID are required before dispatch",
                {"missing": missing},
            )
        changes = {
            "status": OrderStatus.DISPATCHED.value,
            "dispatched_at": now,
        }
        if state.shipping_date is None:
            changes["shipping_date"] = event.shipping_date or now
        return TransitionResult(new_status=OrderStatus.DISPATCHED.value, changes=changes)

    if isinstance(event, MarkDelivered):
        if not can_mark_delivered(state.status):
            raise _invalid(state, event)
        return TransitionResult(
            new_status=OrderStatus.DELIVERED.value,
            changes={
                "status": OrderStatus.DELIVERED.value,
                "delivered_at": now,
            },
        )

    raise ValidationError(f"Unknown fulfillment event: {type(event).__name__}")


def apply_fulfillment_events(
    state: FulfillmentState,
    events: List[FulfillmentEvent],
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Fold several events in order. Either all apply or the first failure is
    raised and nothing should be written.
    """
    now = now or datetime.now(timezone.utc)
    merged = TransitionResult(new_status=state.status)

    for event in events:
        result = apply_fulfillment_event(state, event, now=now)
        merged.changes.update(result.changes)
        merged.new_status = result.new_status
        state = replace(state, **{
            k: v for k, v in result.changes.items()
            if k in FulfillmentState.__dataclass_fields__
        })

    return merged
