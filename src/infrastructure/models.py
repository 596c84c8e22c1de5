"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``users``    -- customers, drivers and admins (contact details only)
* ``drivers``  -- driver availability record, keyed by the driver's user id
* ``moves``    -- one row per delivery; stops, pricing, payment and the
  cancellation record are flattened into columns

Indexes
-------
* **B-Tree** on ``(is_available, vehicle_class, h3_cell)`` for the
  nearby-driver search.
* **Partial unique** indexes allow at most one non-terminal move per
  customer and per driver.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)

from .database import Base
from src.domain.enums import (
    TERMINAL_STATUSES,
    ActorRole,
    DriverApproval,
    MoveStatus,
    PaymentMethod,
    PaymentStatus,
    VehicleClass,
)


def _values(enum_cls):
    return [member.value for member in enum_cls]


def _enum(enum_cls, name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=_values)


ACTIVE_MOVE_CLAUSE = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in MoveStatus if s not in TERMINAL_STATUSES)
)


class UserModel(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    name = Column(String(120), nullable=False)
    role = Column(_enum(ActorRole, "actorrole"), default=ActorRole.CUSTOMER, nullable=False)
    email = Column(String(255), unique=True, nullable=True)
    phone = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class DriverModel(Base):
    __tablename__ = "drivers"

    user_id = Column(String(64), ForeignKey("users.id"), primary_key=True)
    vehicle_class = Column(_enum(VehicleClass, "vehicleclass"), nullable=False)
    approval = Column(
        _enum(DriverApproval, "driverapproval"),
        default=DriverApproval.PENDING,
        nullable=False,
    )
    is_available = Column(Boolean, default=False, nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    h3_cell = Column(String(20), nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)
    rating_average = Column(Float, default=0.0, nullable=False)
    rating_count = Column(Integer, default=0, nullable=False)
    rating_total = Column(Integer, default=0, nullable=False)
    vehicle_model = Column(String(80), nullable=True)
    vehicle_color = Column(String(40), nullable=True)
    license_plate = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_drivers_search", "is_available", "vehicle_class", "h3_cell"),
    )


class MoveModel(Base):
    __tablename__ = "moves"

    id = Column(String(32), primary_key=True)
    customer_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    driver_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    status = Column(
        _enum(MoveStatus, "movestatus"), default=MoveStatus.PENDING, nullable=False
    )
    vehicle_class = Column(_enum(VehicleClass, "vehicleclass"), nullable=False)

    pickup_address = Column(Text, nullable=False)
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_instructions = Column(Text, nullable=True)
    delivery_address = Column(Text, nullable=False)
    delivery_lat = Column(Float, nullable=False)
    delivery_lng = Column(Float, nullable=False)
    delivery_instructions = Column(Text, nullable=True)

    items = Column(JSON, nullable=False, default=list)

    price_base = Column(Float, nullable=False)
    price_distance = Column(Float, nullable=False)
    price_total = Column(Float, nullable=False)
    route_distance_m = Column(Float, nullable=True)
    route_duration_s = Column(Float, nullable=True)

    payment_method = Column(
        _enum(PaymentMethod, "paymentmethod"), default=PaymentMethod.CASH, nullable=False
    )
    payment_status = Column(
        _enum(PaymentStatus, "paymentstatus"), default=PaymentStatus.PENDING, nullable=False
    )
    payment_transaction_id = Column(String(128), nullable=True)
    payment_checkout_url = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    cancel_reason = Column(Text, nullable=True)
    cancelled_by_id = Column(String(64), nullable=True)
    cancelled_by_role = Column(_enum(ActorRole, "actorrole"), nullable=True)

    driver_rating = Column(Integer, nullable=True)
    driver_rating_comment = Column(Text, nullable=True)
    rated_at = Column(DateTime(timezone=True), nullable=True)

    scheduled_for = Column(DateTime(timezone=True), nullable=True)
    last_offer_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    arrived_at_pickup_at = Column(DateTime(timezone=True), nullable=True)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    arrived_at_delivery_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    no_drivers_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_moves_status", "status"),
        Index("idx_moves_customer", "customer_id"),
        Index("idx_moves_driver", "driver_id"),
        Index(
            "uq_moves_customer_active",
            "customer_id",
            unique=True,
            postgresql_where=text(ACTIVE_MOVE_CLAUSE),
            sqlite_where=text(ACTIVE_MOVE_CLAUSE),
        ),
        Index(
            "uq_moves_driver_active",
            "driver_id",
            unique=True,
            postgresql_where=text(f"driver_id IS NOT NULL AND {ACTIVE_MOVE_CLAUSE}"),
            sqlite_where=text(f"driver_id IS NOT NULL AND {ACTIVE_MOVE_CLAUSE}"),
        ),
    )
