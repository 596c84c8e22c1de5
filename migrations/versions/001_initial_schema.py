"""Initial schema: users, drivers and moves.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


MOVE_STATUSES = (
    "pending",
    "accepted",
    "arrived_at_pickup",
    "picked_up",
    "arrived_at_delivery",
    "delivered",
    "cancelled_by_customer",
    "cancelled_by_driver",
    "cancelled_by_admin",
    "no_drivers_available",
)
ACTIVE_MOVE_CLAUSE = (
    "status IN ('pending', 'accepted', 'arrived_at_pickup', "
    "'picked_up', 'arrived_at_delivery')"
)
VEHICLE_CLASSES = ("bike", "car", "van", "truck")
ACTOR_ROLES = ("customer", "driver", "admin")


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column(
            "role",
            sa.Enum(*ACTOR_ROLES, name="actorrole"),
            nullable=False,
            server_default="customer",
        ),
        sa.Column("email", sa.String(255), unique=True, nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column(
            "user_id", sa.String(64), sa.ForeignKey("users.id"), primary_key=True
        ),
        sa.Column(
            "vehicle_class",
            sa.Enum(*VEHICLE_CLASSES, name="vehicleclass"),
            nullable=False,
        ),
        sa.Column(
            "approval",
            sa.Enum("pending", "approved", "rejected", "suspended", name="driverapproval"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("is_available", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        sa.Column("h3_cell", sa.String(20), nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rating_average", sa.Float, nullable=False, server_default="0"),
        sa.Column("rating_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("rating_total", sa.Integer, nullable=False, server_default="0"),
        sa.Column("vehicle_model", sa.String(80), nullable=True),
        sa.Column("vehicle_color", sa.String(40), nullable=True),
        sa.Column("license_plate", sa.String(20), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_drivers_search", "drivers", ["is_available", "vehicle_class", "h3_cell"]
    )

    # ── moves ─────────────────────────────────────────────────────────
    op.create_table(
        "moves",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column(
            "customer_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("driver_id", sa.String(64), sa.ForeignKey("users.id"), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*MOVE_STATUSES, name="movestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "vehicle_class",
            postgresql.ENUM(*VEHICLE_CLASSES, name="vehicleclass", create_type=False),
            nullable=False,
        ),
        sa.Column("pickup_address", sa.Text, nullable=False),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_instructions", sa.Text, nullable=True),
        sa.Column("delivery_address", sa.Text, nullable=False),
        sa.Column("delivery_lat", sa.Float, nullable=False),
        sa.Column("delivery_lng", sa.Float, nullable=False),
        sa.Column("delivery_instructions", sa.Text, nullable=True),
        sa.Column("items", sa.JSON, nullable=False),
        sa.Column("price_base", sa.Float, nullable=False),
        sa.Column("price_distance", sa.Float, nullable=False),
        sa.Column("price_total", sa.Float, nullable=False),
        sa.Column("route_distance_m", sa.Float, nullable=True),
        sa.Column("route_duration_s", sa.Float, nullable=True),
        sa.Column(
            "payment_method",
            sa.Enum("cash", "card", name="paymentmethod"),
            nullable=False,
            server_default="cash",
        ),
        sa.Column(
            "payment_status",
            sa.Enum("pending", "completed", "failed", "refunded", name="paymentstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("payment_transaction_id", sa.String(128), nullable=True),
        sa.Column("payment_checkout_url", sa.Text, nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text, nullable=True),
        sa.Column("cancelled_by_id", sa.String(64), nullable=True),
        sa.Column(
            "cancelled_by_role",
            postgresql.ENUM(*ACTOR_ROLES, name="actorrole", create_type=False),
            nullable=True,
        ),
        sa.Column("driver_rating", sa.Integer, nullable=True),
        sa.Column("driver_rating_comment", sa.Text, nullable=True),
        sa.Column("rated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_offer_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrived_at_pickup_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("picked_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrived_at_delivery_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("no_drivers_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_moves_status", "moves", ["status"])
    op.create_index("idx_moves_customer", "moves", ["customer_id"])
    op.create_index("idx_moves_driver", "moves", ["driver_id"])
    op.create_index(
        "uq_moves_customer_active",
        "moves",
        ["customer_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_MOVE_CLAUSE),
    )
    op.create_index(
        "uq_moves_driver_active",
        "moves",
        ["driver_id"],
        unique=True,
        postgresql_where=sa.text(f"driver_id IS NOT NULL AND {ACTIVE_MOVE_CLAUSE}"),
    )


def downgrade() -> None:
    op.drop_table("moves")
    op.drop_table("drivers")
    op.drop_table("users")
    for enum_name in (
        "movestatus",
        "paymentstatus",
        "paymentmethod",
        "driverapproval",
        "vehicleclass",
        "actorrole",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
