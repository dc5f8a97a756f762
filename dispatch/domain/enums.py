"""Domain enumerations and state-transition rules."""

import enum


class DeliveryStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DRIVER_EN_ROUTE = "DRIVER_EN_ROUTE"
    ARRIVED_AT_PICKUP = "ARRIVED_AT_PICKUP"
    IN_TRANSIT = "IN_TRANSIT"
    ARRIVED_AT_DROPOFF = "ARRIVED_AT_DROPOFF"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


# State machine: maps current status -> set of valid next statuses
DELIVERY_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.PENDING: {
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.CANCELLED,
        DeliveryStatus.DISPUTED,
    },
    DeliveryStatus.ACCEPTED: {DeliveryStatus.DRIVER_EN_ROUTE, DeliveryStatus.CANCELLED},
    DeliveryStatus.DRIVER_EN_ROUTE: {
        DeliveryStatus.ARRIVED_AT_PICKUP,
        DeliveryStatus.CANCELLED,
    },
    DeliveryStatus.ARRIVED_AT_PICKUP: {DeliveryStatus.IN_TRANSIT, DeliveryStatus.CANCELLED},
    DeliveryStatus.IN_TRANSIT: {
        DeliveryStatus.ARRIVED_AT_DROPOFF,
        DeliveryStatus.CANCELLED,
    },
    DeliveryStatus.ARRIVED_AT_DROPOFF: {DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED},
    DeliveryStatus.DELIVERED: {
        DeliveryStatus.COMPLETED,
        DeliveryStatus.DISPUTED,
        DeliveryStatus.CANCELLED,
    },
    DeliveryStatus.DISPUTED: {DeliveryStatus.COMPLETED, DeliveryStatus.CANCELLED},
    DeliveryStatus.COMPLETED: set(),
    DeliveryStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset({DeliveryStatus.COMPLETED, DeliveryStatus.CANCELLED})

# Statuses during which the assigned driver is physically working the delivery
ACTIVE_STATUSES = frozenset(
    {
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.DRIVER_EN_ROUTE,
        DeliveryStatus.ARRIVED_AT_PICKUP,
        DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.ARRIVED_AT_DROPOFF,
    }
)


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    NOT_PAID = "NOT_PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.PAID,
        PaymentStatus.NOT_PAID,
        PaymentStatus.FAILED,
    },
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.NOT_PAID: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PENDING},
    PaymentStatus.REFUNDED: set(),
}


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    CARD = "CARD"
    TRANSFER = "TRANSFER"


class DriverStatus(str, enum.Enum):
    OFFLINE = "OFFLINE"
    LOGGED_IN = "LOGGED_IN"
    ONLINE = "ONLINE"
    BUSY = "BUSY"


class VerificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class VehicleClass(str, enum.Enum):
    BIKE = "BIKE"
    CAR = "CAR"
    VAN = "VAN"
    TRUCK = "TRUCK"


class CancelledBy(str, enum.Enum):
    RIDER = "RIDER"
    DRIVER = "DRIVER"
    SYSTEM = "SYSTEM"
