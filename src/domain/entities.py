"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Move``: ``transition_to`` enforces the lifecycle
  table in ``enums.MOVE_TRANSITIONS`` and stamps the per-status audit
  timestamp.
- ``DriverRecord.is_eligible_for`` encapsulates the matching invariants
  (approved, available, same vehicle class).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .enums import (
    MOVE_TRANSITIONS,
    TERMINAL_STATUSES,
    ActorRole,
    DriverApproval,
    MoveStatus,
    PaymentMethod,
    PaymentStatus,
    VehicleClass,
)
from .errors import InvalidTransition


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Stop:
    address: str
    location: Location
    instructions: Optional[str] = None


@dataclass(frozen=True)
class Item:
    title: str
    description: Optional[str] = None
    quantity: int = 1
    weight_kg: Optional[float] = None
    special_handling: Optional[str] = None


@dataclass(frozen=True)
class PriceBreakdown:
    base: float
    distance: float
    total: float


@dataclass(frozen=True)
class RouteMeta:
    distance_m: float
    duration_s: float


@dataclass(frozen=True)
class Quote:
    pricing: PriceBreakdown
    route: RouteMeta


@dataclass(frozen=True)
class Candidate:
    """One ranked answer from the geo matching provider."""

    driver_id: str
    location: Location
    distance_m: float
    rating: float = 0.0


@dataclass
class Payment:
    method: PaymentMethod = PaymentMethod.CASH
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    checkout_url: Optional[str] = None
    paid_at: Optional[datetime] = None


@dataclass(frozen=True)
class Cancellation:
    reason: str
    actor_id: str
    actor_role: ActorRole
    cancelled_at: datetime


@dataclass(frozen=True)
class DriverRating:
    """The customer's one rating of the driver who delivered the move."""

    rate: int
    rated_at: datetime
    comment: Optional[str] = None


# ── Entities ──────────────────────────────────────────────────────────

# Audit-trail attribute stamped when a move enters the status
STATUS_TIMESTAMPS: dict[MoveStatus, str] = {
    MoveStatus.ACCEPTED: "accepted_at",
    MoveStatus.ARRIVED_AT_PICKUP: "arrived_at_pickup_at",
    MoveStatus.PICKED_UP: "picked_up_at",
    MoveStatus.ARRIVED_AT_DELIVERY: "arrived_at_delivery_at",
    MoveStatus.DELIVERED: "delivered_at",
    MoveStatus.CANCELLED_BY_CUSTOMER: "cancelled_at",
    MoveStatus.CANCELLED_BY_DRIVER: "cancelled_at",
    MoveStatus.CANCELLED_BY_ADMIN: "cancelled_at",
    MoveStatus.NO_DRIVERS_AVAILABLE: "no_drivers_at",
}


@dataclass
class Move:
    id: str
    customer_id: str
    pickup: Stop
    delivery: Stop
    vehicle_class: VehicleClass
    pricing: PriceBreakdown
    route: Optional[RouteMeta] = None
    items: list[Item] = field(default_factory=list)
    status: MoveStatus = MoveStatus.PENDING
    driver_id: Optional[str] = None
    payment: Payment = field(default_factory=Payment)
    cancellation: Optional[Cancellation] = None
    rating: Optional[DriverRating] = None
    scheduled_for: Optional[datetime] = None
    last_offer_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at_pickup_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    arrived_at_delivery_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    no_drivers_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, new_status: MoveStatus) -> bool:
        return new_status in MOVE_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: MoveStatus, at: datetime) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        if not self.can_transition_to(new_status):
            raise InvalidTransition(
                f"Cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.updated_at = at
        stamp = STATUS_TIMESTAMPS.get(new_status)
        if stamp:
            setattr(self, stamp, at)

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.customer_id, self.driver_id)


@dataclass
class DriverRecord:
    """Availability record; ``driver_id`` is the driver's user id."""

    driver_id: str
    vehicle_class: VehicleClass
    approval: DriverApproval = DriverApproval.PENDING
    is_available: bool = False
    location: Optional[Location] = None
    h3_cell: Optional[str] = None
    rating_average: float = 0.0
    rating_count: int = 0
    rating_total: int = 0
    vehicle_model: Optional[str] = None
    vehicle_color: Optional[str] = None
    license_plate: Optional[str] = None
    location_updated_at: Optional[datetime] = None

    @property
    def is_approved(self) -> bool:
        return self.approval == DriverApproval.APPROVED

    def is_eligible_for(self, vehicle_class: VehicleClass) -> bool:
        return (
            self.is_available
            and self.is_approved
            and self.vehicle_class == vehicle_class
        )

    def vehicle_summary(self) -> dict:
        return {
            "type": self.vehicle_class.value,
            "model": self.vehicle_model,
            "color": self.vehicle_color,
            "license_plate": self.license_plate,
        }


@dataclass
class UserRecord:
    user_id: str
    name: str
    role: ActorRole = ActorRole.CUSTOMER
    email: Optional[str] = None
    phone: Optional[str] = None

    def contact(self) -> dict:
        return {"id": self.user_id, "name": self.name, "phone": self.phone}


@dataclass
class MoveView:
    """Read model returned by ``get_move``: the move plus its parties."""

    move: Move
    customer: Optional[UserRecord] = None
    driver: Optional[UserRecord] = None
    driver_profile: Optional[DriverRecord] = None
