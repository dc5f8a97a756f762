"""Initial schema: drivers, deliveries, position history and side tables.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


DELIVERY_STATUS = (
    "PENDING",
    "ACCEPTED",
    "DRIVER_EN_ROUTE",
    "ARRIVED_AT_PICKUP",
    "IN_TRANSIT",
    "ARRIVED_AT_DROPOFF",
    "DELIVERED",
    "COMPLETED",
    "CANCELLED",
    "DISPUTED",
)
VEHICLE_CLASS = ("BIKE", "CAR", "VAN", "TRUCK")


def _ts(name: str, **kw) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kw)


def _position_columns() -> list[sa.Column]:
    return [
        sa.Column("latitude", sa.Float, nullable=False),
        sa.Column("longitude", sa.Float, nullable=False),
        sa.Column("bearing", sa.Float, nullable=True),
        sa.Column("speed", sa.Float, nullable=True),
        sa.Column("accuracy", sa.Float, nullable=True),
        sa.Column("status", sa.String(20), nullable=True),
        _ts("recorded_at", nullable=False),
    ]


def upgrade() -> None:
    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False, server_default=""),
        sa.Column(
            "status",
            sa.Enum("OFFLINE", "LOGGED_IN", "ONLINE", "BUSY", name="driverstatus"),
            nullable=False,
            server_default="OFFLINE",
        ),
        sa.Column("is_available", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "verification_status",
            sa.Enum("PENDING", "VERIFIED", "REJECTED", name="verificationstatus"),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column(
            "vehicle_class",
            sa.Enum(*VEHICLE_CLASS, name="vehicleclass"),
            nullable=False,
            server_default="BIKE",
        ),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        sa.Column("h3_cell", sa.String(20), nullable=True),
        _ts("last_location_at", nullable=True),
        _ts("available_since", nullable=True),
        sa.Column("current_delivery_id", sa.String(36), nullable=True),
        sa.Column("total_earnings", sa.Float, nullable=False, server_default="0"),
        sa.Column("todays_earnings", sa.Float, nullable=False, server_default="0"),
        sa.Column("completed_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("rating", sa.Float, nullable=False, server_default="5"),
        sa.Column("rating_count", sa.Integer, nullable=False, server_default="0"),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
    )
    op.create_index(
        "idx_drivers_matchable",
        "drivers",
        ["status", "is_available", "verification_status"],
    )
    op.create_index("idx_drivers_cell", "drivers", ["h3_cell"])
    op.create_index("idx_drivers_current_delivery", "drivers", ["current_delivery_id"])

    # ── deliveries ────────────────────────────────────────────────────
    op.create_table(
        "deliveries",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("rider_id", sa.String(36), nullable=False),
        sa.Column("driver_id", sa.String(36), nullable=True),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_address", sa.String(255), nullable=False, server_default=""),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("dropoff_lng", sa.Float, nullable=False),
        sa.Column("dropoff_address", sa.String(255), nullable=False, server_default=""),
        sa.Column("package_weight_kg", sa.Float, nullable=True),
        sa.Column("package_length_cm", sa.Float, nullable=True),
        sa.Column("package_width_cm", sa.Float, nullable=True),
        sa.Column("package_height_cm", sa.Float, nullable=True),
        sa.Column("is_fragile", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "requires_special_handling",
            sa.Boolean,
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("package_description", sa.Text, nullable=True),
        sa.Column(
            "vehicle_class",
            postgresql.ENUM(*VEHICLE_CLASS, name="vehicleclass", create_type=False),
            nullable=False,
            server_default="BIKE",
        ),
        sa.Column(
            "payment_method",
            sa.Enum("CASH", "CARD", "TRANSFER", name="paymentmethod"),
            nullable=False,
            server_default="CASH",
        ),
        sa.Column(
            "payment_status",
            sa.Enum(
                "PENDING", "PAID", "NOT_PAID", "FAILED", "REFUNDED", name="paymentstatus"
            ),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("distance_km", sa.Float, nullable=True),
        sa.Column("duration_min", sa.Float, nullable=True),
        sa.Column("estimated_fare", sa.Float, nullable=True),
        sa.Column("actual_fare", sa.Float, nullable=True),
        sa.Column(
            "status",
            sa.Enum(*DELIVERY_STATUS, name="deliverystatus"),
            nullable=False,
            server_default="PENDING",
        ),
        _ts("accepted_at", nullable=True),
        _ts("picked_up_at", nullable=True),
        _ts("delivered_at", nullable=True),
        _ts("completed_at", nullable=True),
        _ts("cancelled_at", nullable=True),
        _ts("disputed_at", nullable=True),
        sa.Column(
            "cancelled_by",
            sa.Enum("RIDER", "DRIVER", "SYSTEM", name="cancelledby"),
            nullable=True,
        ),
        sa.Column("cancellation_reason", sa.String(255), nullable=True),
        sa.Column("earnings_credited", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("rated", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
    )
    op.create_index("idx_deliveries_status_updated", "deliveries", ["status", "updated_at"])
    op.create_index("idx_deliveries_rider", "deliveries", ["rider_id"])
    op.create_index("idx_deliveries_driver", "deliveries", ["driver_id"])

    # ── position history ──────────────────────────────────────────────
    op.create_table(
        "driver_locations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("driver_id", sa.String(36), nullable=False),
        *_position_columns(),
    )
    op.create_index(
        "idx_driver_locations_driver_time",
        "driver_locations",
        ["driver_id", "recorded_at"],
    )

    op.create_table(
        "delivery_tracking",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("delivery_id", sa.String(36), nullable=False),
        *_position_columns(),
    )
    op.create_index(
        "idx_delivery_tracking_delivery_time",
        "delivery_tracking",
        ["delivery_id", "recorded_at"],
    )

    # ── notifications / disputes / rejections ─────────────────────────
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("recipient_id", sa.String(36), nullable=False),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("title", sa.String(120), nullable=False),
        sa.Column("message", sa.String(500), nullable=False),
        sa.Column("data", sa.JSON, nullable=True),
        sa.Column("response", sa.String(20), nullable=True),
        _ts("responded_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index("idx_notifications_recipient", "notifications", ["recipient_id", "type"])

    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("delivery_id", sa.String(36), nullable=False),
        sa.Column("rider_id", sa.String(36), nullable=False),
        sa.Column("driver_id", sa.String(36), nullable=True),
        sa.Column("title", sa.String(120), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="OPEN"),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index("idx_disputes_delivery", "disputes", ["delivery_id"])

    op.create_table(
        "delivery_rejections",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("delivery_id", sa.String(36), nullable=False),
        sa.Column("driver_id", sa.String(36), nullable=False),
        sa.Column("reason", sa.String(255), nullable=True),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index("idx_rejections_delivery", "delivery_rejections", ["delivery_id"])


def downgrade() -> None:
    op.drop_table("delivery_rejections")
    op.drop_table("disputes")
    op.drop_table("notifications")
    op.drop_table("delivery_tracking")
    op.drop_table("driver_locations")
    op.drop_table("deliveries")
    op.drop_table("drivers")
    for enum_type in (
        "deliverystatus",
        "cancelledby",
        "paymentstatus",
        "paymentmethod",
        "vehicleclass",
        "verificationstatus",
        "driverstatus",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_type}")
