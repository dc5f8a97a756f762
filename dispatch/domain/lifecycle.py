"""
Delivery lifecycle rules (pure).

Patterns used
-------------
- **Table-driven state machine**: ``DELIVERY_TRANSITIONS`` decides
  legality; ``GUARDS`` add per-origin contextual preconditions.
- **Effect descriptors**: each target status maps to an ordered tuple of
  ``Effect`` members.  The service layer dispatches them through a handler
  map keyed by the same enum and refuses to start if one is missing.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from .entities import TransitionContext
from .enums import (
    DELIVERY_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    TERMINAL_STATUSES,
    DeliveryStatus,
    PaymentStatus,
)
from .errors import InvalidStatusTransition, ValidationError


def check_transition(current: DeliveryStatus, target: DeliveryStatus) -> None:
    """Move is legal iff *target* is in the allowed-next set of *current*."""
    if target not in DELIVERY_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(current.value, target.value)


def is_terminal(status: DeliveryStatus) -> bool:
    return status in TERMINAL_STATUSES


# ── Contextual guards, keyed by origin status ─────────────────────────


def _pending(target: DeliveryStatus, ctx: TransitionContext) -> None:
    if target == DeliveryStatus.ACCEPTED and not ctx.driver_id:
        raise ValidationError("Driver ID is required to accept a delivery")


def _accepted(target: DeliveryStatus, ctx: TransitionContext) -> None:
    if target == DeliveryStatus.DRIVER_EN_ROUTE and ctx.driver_location is None:
        raise ValidationError("Driver location is required to start the delivery")


def _arrived_at_pickup(target: DeliveryStatus, ctx: TransitionContext) -> None:
    if target == DeliveryStatus.IN_TRANSIT and not ctx.pickup_confirmed:
        raise ValidationError("Pickup must be confirmed to start transit")


def _arrived_at_dropoff(target: DeliveryStatus, ctx: TransitionContext) -> None:
    if target == DeliveryStatus.DELIVERED and not ctx.delivery_confirmed:
        raise ValidationError("Delivery must be confirmed to mark as delivered")


def _delivered(target: DeliveryStatus, ctx: TransitionContext) -> None:
    if target == DeliveryStatus.COMPLETED and not ctx.payment_confirmed:
        raise ValidationError("Payment must be confirmed to complete the delivery")


GUARDS: dict[DeliveryStatus, Callable[[DeliveryStatus, TransitionContext], None]] = {
    DeliveryStatus.PENDING: _pending,
    DeliveryStatus.ACCEPTED: _accepted,
    DeliveryStatus.ARRIVED_AT_PICKUP: _arrived_at_pickup,
    DeliveryStatus.ARRIVED_AT_DROPOFF: _arrived_at_dropoff,
    DeliveryStatus.DELIVERED: _delivered,
}


def validate_transition(
    current: DeliveryStatus, target: DeliveryStatus, ctx: TransitionContext
) -> None:
    check_transition(current, target)
    guard = GUARDS.get(current)
    if guard is not None:
        guard(target, ctx)


# Timestamp column written together with the status
TIMESTAMP_FIELDS: dict[DeliveryStatus, str] = {
    DeliveryStatus.ACCEPTED: "accepted_at",
    DeliveryStatus.IN_TRANSIT: "picked_up_at",
    DeliveryStatus.DELIVERED: "delivered_at",
    DeliveryStatus.COMPLETED: "completed_at",
    DeliveryStatus.CANCELLED: "cancelled_at",
    DeliveryStatus.DISPUTED: "disputed_at",
}

# Transitions that hand the driver back to the pool
RELEASING_STATUSES = frozenset(
    {DeliveryStatus.COMPLETED, DeliveryStatus.CANCELLED, DeliveryStatus.DISPUTED}
)


# ── Effects ───────────────────────────────────────────────────────────


class Effect(str, enum.Enum):
    NOTIFY_RIDER = "notify_rider"
    NOTIFY_DRIVER = "notify_driver"
    PUBLISH_STATUS = "publish_status"
    REFRESH_DRIVER_AVAILABILITY = "refresh_driver_availability"
    START_TRACKING = "start_tracking"
    STOP_TRACKING = "stop_tracking"
    REQUEST_PAYMENT_CONFIRMATION = "request_payment_confirmation"
    CREDIT_DRIVER_EARNINGS = "credit_driver_earnings"
    CREATE_DISPUTE = "create_dispute"
    ESCALATE = "escalate"


STATUS_EFFECTS: dict[DeliveryStatus, tuple[Effect, ...]] = {
    DeliveryStatus.ACCEPTED: (
        Effect.NOTIFY_RIDER,
        Effect.REFRESH_DRIVER_AVAILABILITY,
        Effect.START_TRACKING,
        Effect.PUBLISH_STATUS,
    ),
    DeliveryStatus.DRIVER_EN_ROUTE: (Effect.NOTIFY_RIDER, Effect.PUBLISH_STATUS),
    DeliveryStatus.ARRIVED_AT_PICKUP: (Effect.NOTIFY_RIDER, Effect.PUBLISH_STATUS),
    DeliveryStatus.IN_TRANSIT: (Effect.NOTIFY_RIDER, Effect.PUBLISH_STATUS),
    DeliveryStatus.ARRIVED_AT_DROPOFF: (Effect.NOTIFY_RIDER, Effect.PUBLISH_STATUS),
    DeliveryStatus.DELIVERED: (
        Effect.NOTIFY_RIDER,
        Effect.REQUEST_PAYMENT_CONFIRMATION,
        Effect.PUBLISH_STATUS,
    ),
    DeliveryStatus.COMPLETED: (
        Effect.NOTIFY_RIDER,
        Effect.NOTIFY_DRIVER,
        Effect.CREDIT_DRIVER_EARNINGS,
        Effect.REFRESH_DRIVER_AVAILABILITY,
        Effect.STOP_TRACKING,
        Effect.PUBLISH_STATUS,
    ),
    DeliveryStatus.CANCELLED: (
        Effect.NOTIFY_RIDER,
        Effect.NOTIFY_DRIVER,
        Effect.REFRESH_DRIVER_AVAILABILITY,
        Effect.STOP_TRACKING,
        Effect.PUBLISH_STATUS,
    ),
    DeliveryStatus.DISPUTED: (
        Effect.NOTIFY_RIDER,
        Effect.NOTIFY_DRIVER,
        Effect.CREATE_DISPUTE,
        Effect.ESCALATE,
        Effect.REFRESH_DRIVER_AVAILABILITY,
        Effect.STOP_TRACKING,
        Effect.PUBLISH_STATUS,
    ),
}


@dataclass(frozen=True)
class StatusMessage:
    title: str
    message: str


RIDER_MESSAGES: dict[DeliveryStatus, StatusMessage] = {
    DeliveryStatus.ACCEPTED: StatusMessage(
        "Driver assigned", "A driver has accepted your delivery."
    ),
    DeliveryStatus.DRIVER_EN_ROUTE: StatusMessage(
        "Driver en route", "Your driver is on the way to the pickup point."
    ),
    DeliveryStatus.ARRIVED_AT_PICKUP: StatusMessage(
        "Driver arrived", "Your driver has arrived at the pickup point."
    ),
    DeliveryStatus.IN_TRANSIT: StatusMessage(
        "Package in transit", "Your package has been picked up."
    ),
    DeliveryStatus.ARRIVED_AT_DROPOFF: StatusMessage(
        "Driver at drop-off", "Your driver has arrived at the drop-off point."
    ),
    DeliveryStatus.DELIVERED: StatusMessage(
        "Package delivered", "Your package has been delivered."
    ),
    DeliveryStatus.COMPLETED: StatusMessage(
        "Delivery completed", "Thanks for using our service."
    ),
    DeliveryStatus.CANCELLED: StatusMessage(
        "Delivery cancelled", "Your delivery has been cancelled."
    ),
    DeliveryStatus.DISPUTED: StatusMessage(
        "Delivery under review", "Your delivery has been flagged for review."
    ),
}

DRIVER_MESSAGES: dict[DeliveryStatus, StatusMessage] = {
    DeliveryStatus.COMPLETED: StatusMessage(
        "Delivery completed", "Earnings for this delivery have been credited."
    ),
    DeliveryStatus.CANCELLED: StatusMessage(
        "Delivery cancelled", "The delivery you were assigned has been cancelled."
    ),
    DeliveryStatus.DISPUTED: StatusMessage(
        "Delivery disputed", "A delivery you handled has been flagged for review."
    ),
}


# ── Timeout-driven auto transitions ───────────────────────────────────


@dataclass(frozen=True)
class AutoTransition:
    origin: DeliveryStatus
    target: DeliveryStatus
    after: timedelta
    reason: str


def auto_transitions(
    pending_dispute_after: timedelta = timedelta(hours=24),
    accepted_cancel_after: timedelta = timedelta(minutes=15),
    delivered_complete_after: timedelta = timedelta(minutes=5),
) -> tuple[AutoTransition, ...]:
    return (
        AutoTransition(
            DeliveryStatus.PENDING,
            DeliveryStatus.DISPUTED,
            pending_dispute_after,
            "No driver accepted the delivery in time",
        ),
        AutoTransition(
            DeliveryStatus.ACCEPTED,
            DeliveryStatus.CANCELLED,
            accepted_cancel_after,
            "Driver did not start the delivery in time",
        ),
        AutoTransition(
            DeliveryStatus.DELIVERED,
            DeliveryStatus.COMPLETED,
            delivered_complete_after,
            "Auto-completed after delivery",
        ),
    )


# ── Payment status ────────────────────────────────────────────────────


def validate_payment_transition(
    current: PaymentStatus, target: PaymentStatus, ctx: TransitionContext
) -> None:
    if target not in PAYMENT_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(current.value, target.value)
    if current == PaymentStatus.PENDING and target == PaymentStatus.PAID:
        if not ctx.payment_proof:
            raise ValidationError("Payment proof is required to mark as paid")

