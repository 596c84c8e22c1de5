"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from src.domain.entities import DriverRecord, Item, Location, Move, MoveView, Quote, Stop
from src.domain.enums import DriverApproval, MoveStatus, PaymentMethod, VehicleClass


# ── Requests ──────────────────────────────────────────────────────────


class StopIn(BaseModel):
    address: str = Field(..., min_length=1, max_length=500)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    instructions: Optional[str] = Field(None, max_length=500)

    def to_domain(self) -> Stop:
        return Stop(
            address=self.address,
            location=Location(self.latitude, self.longitude),
            instructions=self.instructions,
        )


class ItemIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    quantity: int = Field(1, ge=1, le=100)
    weight_kg: Optional[float] = Field(None, ge=0)
    special_handling: Optional[str] = None

    def to_domain(self) -> Item:
        return Item(**self.model_dump())


class EstimateRequest(BaseModel):
    pickup: StopIn
    delivery: StopIn
    vehicle_class: VehicleClass


class MoveCreateRequest(EstimateRequest):
    items: list[ItemIn] = Field(default_factory=list, max_length=50)
    scheduled_for: Optional[datetime] = Field(
        None, description="Dispatch later; within the grace window it dispatches now."
    )
    payment_method: PaymentMethod = PaymentMethod.CASH


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ProgressRequest(BaseModel):
    status: MoveStatus
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    def location(self) -> Optional[Location]:
        if self.latitude is None or self.longitude is None:
            return None
        return Location(self.latitude, self.longitude)


class DriverRegisterRequest(BaseModel):
    vehicle_class: VehicleClass
    vehicle_model: Optional[str] = Field(None, max_length=80)
    vehicle_color: Optional[str] = Field(None, max_length=40)
    license_plate: Optional[str] = Field(None, max_length=20)


class AvailabilityRequest(BaseModel):
    available: bool
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    def location(self) -> Optional[Location]:
        if self.latitude is None or self.longitude is None:
            return None
        return Location(self.latitude, self.longitude)


class LocationUpdateRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    def to_domain(self) -> Location:
        return Location(self.latitude, self.longitude)


class RatingRequest(BaseModel):
    rate: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


class ApprovalRequest(BaseModel):
    approval: DriverApproval


class PaymentWebhookRequest(BaseModel):
    move_id: str
    transaction_id: str = Field(..., min_length=1)


# ── Responses ─────────────────────────────────────────────────────────


class QuoteResponse(BaseModel):
    base: float
    distance: float
    total: float
    distance_m: float
    duration_s: float

    @classmethod
    def from_domain(cls, quote: Quote) -> "QuoteResponse":
        return cls(
            base=quote.pricing.base,
            distance=quote.pricing.distance,
            total=quote.pricing.total,
            distance_m=quote.route.distance_m,
            duration_s=quote.route.duration_s,
        )


class StopResponse(BaseModel):
    address: str
    latitude: float
    longitude: float
    instructions: Optional[str] = None


class PaymentResponse(BaseModel):
    method: PaymentMethod
    status: str
    transaction_id: Optional[str] = None
    checkout_url: Optional[str] = None
    paid_at: Optional[datetime] = None


def _stop(stop: Stop) -> StopResponse:
    return StopResponse(
        address=stop.address,
        latitude=stop.location.latitude,
        longitude=stop.location.longitude,
        instructions=stop.instructions,
    )


class MoveResponse(BaseModel):
    id: str
    customer_id: str
    driver_id: Optional[str] = None
    status: MoveStatus
    vehicle_class: VehicleClass
    pickup: StopResponse
    delivery: StopResponse
    items: list[ItemIn] = []
    total_price: float
    distance_m: Optional[float] = None
    payment: PaymentResponse
    scheduled_for: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    driver_rating: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, move: Move) -> "MoveResponse":
        return cls(
            id=move.id,
            customer_id=move.customer_id,
            driver_id=move.driver_id,
            status=move.status,
            vehicle_class=move.vehicle_class,
            pickup=_stop(move.pickup),
            delivery=_stop(move.delivery),
            items=[ItemIn(**vars(item)) for item in move.items],
            total_price=move.pricing.total,
            distance_m=move.route.distance_m if move.route else None,
            payment=PaymentResponse(
                method=move.payment.method,
                status=move.payment.status.value,
                transaction_id=move.payment.transaction_id,
                checkout_url=move.payment.checkout_url,
                paid_at=move.payment.paid_at,
            ),
            scheduled_for=move.scheduled_for,
            cancel_reason=move.cancellation.reason if move.cancellation else None,
            driver_rating=move.rating.rate if move.rating else None,
            created_at=move.created_at,
            updated_at=move.updated_at,
            accepted_at=move.accepted_at,
            delivered_at=move.delivered_at,
            cancelled_at=move.cancelled_at,
        )


class PartyResponse(BaseModel):
    id: str
    name: str
    phone: Optional[str] = None


class MoveDetailResponse(MoveResponse):
    customer: Optional[PartyResponse] = None
    driver: Optional[PartyResponse] = None
    vehicle: Optional[dict] = None

    @classmethod
    def from_view(cls, view: MoveView) -> "MoveDetailResponse":
        base = MoveResponse.from_domain(view.move).model_dump()
        if view.customer:
            base["customer"] = PartyResponse(**view.customer.contact())
        if view.driver:
            base["driver"] = PartyResponse(**view.driver.contact())
        if view.driver_profile:
            base["vehicle"] = view.driver_profile.vehicle_summary()
        return cls(**base)


class DriverResponse(BaseModel):
    driver_id: str
    vehicle_class: VehicleClass
    approval: DriverApproval
    is_available: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    h3_cell: Optional[str] = None
    rating_average: float = 0.0

    @classmethod
    def from_domain(cls, driver: DriverRecord) -> "DriverResponse":
        return cls(
            driver_id=driver.driver_id,
            vehicle_class=driver.vehicle_class,
            approval=driver.approval,
            is_available=driver.is_available,
            latitude=driver.location.latitude if driver.location else None,
            longitude=driver.location.longitude if driver.location else None,
            h3_cell=driver.h3_cell,
            rating_average=driver.rating_average,
        )


class DriverRatingResponse(BaseModel):
    driver_id: str
    rating_average: float
    rating_count: int

    @classmethod
    def from_domain(cls, driver: DriverRecord) -> "DriverRatingResponse":
        return cls(
            driver_id=driver.driver_id,
            rating_average=driver.rating_average,
            rating_count=driver.rating_count,
        )


class TrackingResponse(BaseModel):
    move_id: str
    distance_to_stop_m: Optional[float] = None


class ReconcileResponse(BaseModel):
    restarted: int


class HealthResponse(BaseModel):
    status: str = "ok"
    live_solicitations: int = 0


class ErrorResponse(BaseModel):
    detail: str
    code: str
