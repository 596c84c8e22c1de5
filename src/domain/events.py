"""Notification event names and the customer-facing status messages."""

from .enums import MoveStatus

# Driver-facing
MOVE_REQUEST_NEW = "move:request_new"
MOVE_OFFER_EXPIRED = "move:offer_expired"
MOVE_REQUEST_CANCELLED = "move:request_cancelled"
MOVE_ACCEPTANCE_CONFIRMED = "move:acceptance_confirmed"
MOVE_ACCEPTANCE_FAILED = "move:acceptance_failed"
MOVE_COMPLETED_ON_DRIVER_SIDE = "move:completed_on_driver_side"
DRIVER_RATED = "driver:rated"

# Customer-facing
MOVE_SCHEDULED = "move:scheduled"
MOVE_NO_DRIVERS_FOUND = "move:no_drivers_found"
MOVE_ACCEPTED = "move:accepted"
MOVE_STATUS_UPDATE = "move:status_update"
MOVE_PAYMENT_REQUIRED = "move:payment_required"
MOVE_PAYMENT_COMPLETED = "move:payment_completed"
MOVE_DRIVER_LOCATION = "move:driver_location"
MOVE_DRIVER_APPROACHING_PICKUP = "move:driver_approaching_pickup"
MOVE_DRIVER_APPROACHING_DELIVERY = "move:driver_approaching_delivery"

# Either side
MOVE_CANCELLED = "move:cancelled"


STATUS_MESSAGES: dict[MoveStatus, str] = {
    MoveStatus.ACCEPTED: "A driver has accepted your move.",
    MoveStatus.ARRIVED_AT_PICKUP: "Your driver has arrived at the pickup location.",
    MoveStatus.PICKED_UP: "Your items have been picked up.",
    MoveStatus.ARRIVED_AT_DELIVERY: "Your driver has arrived at the delivery location.",
    MoveStatus.DELIVERED: "Your items have been delivered.",
    MoveStatus.NO_DRIVERS_AVAILABLE: "No drivers are available right now. Please try again later.",
}

CANCELLATION_MESSAGES: dict[MoveStatus, dict[str, str]] = {
    MoveStatus.CANCELLED_BY_CUSTOMER: {
        "driver": "The customer cancelled this move.",
        "customer": "You cancelled this move.",
    },
    MoveStatus.CANCELLED_BY_DRIVER: {
        "driver": "You cancelled this move.",
        "customer": "Your driver cancelled this move.",
    },
    MoveStatus.CANCELLED_BY_ADMIN: {
        "driver": "This move was cancelled by support.",
        "customer": "This move was cancelled by support.",
    },
}
