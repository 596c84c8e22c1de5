"""Domain enumerations and state-transition rules."""

import enum


class MoveStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    ARRIVED_AT_PICKUP = "arrived_at_pickup"
    PICKED_UP = "picked_up"
    ARRIVED_AT_DELIVERY = "arrived_at_delivery"
    DELIVERED = "delivered"
    CANCELLED_BY_CUSTOMER = "cancelled_by_customer"
    CANCELLED_BY_DRIVER = "cancelled_by_driver"
    CANCELLED_BY_ADMIN = "cancelled_by_admin"
    NO_DRIVERS_AVAILABLE = "no_drivers_available"


_CANCELLABLE = {
    MoveStatus.CANCELLED_BY_CUSTOMER,
    MoveStatus.CANCELLED_BY_DRIVER,
    MoveStatus.CANCELLED_BY_ADMIN,
}

# State machine: maps current status -> set of valid next statuses
MOVE_TRANSITIONS: dict[MoveStatus, set[MoveStatus]] = {
    MoveStatus.PENDING: {
        MoveStatus.ACCEPTED,
        MoveStatus.NO_DRIVERS_AVAILABLE,
        MoveStatus.CANCELLED_BY_CUSTOMER,
        MoveStatus.CANCELLED_BY_ADMIN,
    },
    MoveStatus.ACCEPTED: {MoveStatus.ARRIVED_AT_PICKUP} | _CANCELLABLE,
    MoveStatus.ARRIVED_AT_PICKUP: {MoveStatus.PICKED_UP} | _CANCELLABLE,
    MoveStatus.PICKED_UP: {MoveStatus.ARRIVED_AT_DELIVERY} | _CANCELLABLE,
    MoveStatus.ARRIVED_AT_DELIVERY: {
        MoveStatus.DELIVERED,
        MoveStatus.CANCELLED_BY_ADMIN,
    },
    MoveStatus.DELIVERED: set(),
    MoveStatus.CANCELLED_BY_CUSTOMER: set(),
    MoveStatus.CANCELLED_BY_DRIVER: set(),
    MoveStatus.CANCELLED_BY_ADMIN: set(),
    MoveStatus.NO_DRIVERS_AVAILABLE: set(),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in MOVE_TRANSITIONS.items() if not nxt)

# Statuses a driver reports through progress updates
PROGRESS_STATUSES = frozenset(
    {
        MoveStatus.ARRIVED_AT_PICKUP,
        MoveStatus.PICKED_UP,
        MoveStatus.ARRIVED_AT_DELIVERY,
        MoveStatus.DELIVERED,
    }
)

# Statuses in which the assigned driver is out on the move
EN_ROUTE_STATUSES = frozenset(
    {
        MoveStatus.ACCEPTED,
        MoveStatus.ARRIVED_AT_PICKUP,
        MoveStatus.PICKED_UP,
        MoveStatus.ARRIVED_AT_DELIVERY,
    }
)


class VehicleClass(str, enum.Enum):
    BIKE = "bike"
    CAR = "car"
    VAN = "van"
    TRUCK = "truck"


class ActorRole(str, enum.Enum):
    CUSTOMER = "customer"
    DRIVER = "driver"
    ADMIN = "admin"


# Cancelling actor -> (statuses it may cancel from, resulting status)
CANCELLATION_RULES: dict[ActorRole, tuple[frozenset[MoveStatus], MoveStatus]] = {
    ActorRole.CUSTOMER: (
        frozenset({MoveStatus.PENDING, MoveStatus.ACCEPTED}),
        MoveStatus.CANCELLED_BY_CUSTOMER,
    ),
    ActorRole.DRIVER: (
        frozenset({MoveStatus.ACCEPTED, MoveStatus.ARRIVED_AT_PICKUP}),
        MoveStatus.CANCELLED_BY_DRIVER,
    ),
    ActorRole.ADMIN: (
        frozenset(MOVE_TRANSITIONS) - TERMINAL_STATUSES,
        MoveStatus.CANCELLED_BY_ADMIN,
    ),
}


class DriverApproval(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
