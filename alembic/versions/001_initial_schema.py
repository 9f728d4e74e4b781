"""
Initial database schema: attendance_records, bills, bill_items,
sequence_counters, subscriptions, notifications.

Revision ID: 001
"""
from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create initial tables."""
    # Attendance ledger: one row per (subscriber, meal type, day)
    op.create_table(
        "attendance_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("subscriber_id", sa.String(20), nullable=False, index=True),
        sa.Column("subscriber_name", sa.String(100), nullable=False),
        sa.Column("meal_type", sa.String(20), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("recorded_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), default=sa.func.now(), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscriber_id", "meal_type", "date", name="ux_attendance_subscriber_meal_date"),
        sa.CheckConstraint("price >= 0", name="ck_attendance_price_non_negative"),
    )
    op.create_index("ix_attendance_date_meal", "attendance_records", ["date", "meal_type"])

    # Bills and their snapshot lines
    op.create_table(
        "bills",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("bill_number", sa.String(32), nullable=False, unique=True, index=True),
        sa.Column("subscriber_id", sa.String(20), nullable=False, index=True),
        sa.Column("subscriber_name", sa.String(100), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("total_meals", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Float(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="generated", index=True),
        sa.Column("generated_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), default=sa.func.now(), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_bills_period", "bills", ["start_date", "end_date"])

    op.create_table(
        "bill_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("bill_id", sa.Integer(), sa.ForeignKey("bills.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("meal_type", sa.String(20), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Named counters (bill numbers)
    op.create_table(
        "sequence_counters",
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("name"),
    )
    op.bulk_insert(
        sa.table("sequence_counters", sa.column("name", sa.String), sa.column("value", sa.Integer)),
        [{"name": "bill_number", "value": 0}],
    )

    # Subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("subscriber_id", sa.String(20), nullable=False, index=True),
        sa.Column("subscriber_name", sa.String(100), nullable=False),
        sa.Column("plan", sa.String(20), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("meals_included", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active", index=True),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), default=sa.func.now(), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("end_date > start_date", name="ck_subscription_dates"),
    )
    op.create_index("ix_subscriptions_period", "subscriptions", ["start_date", "end_date"])

    # Notifications
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("subscriber_id", sa.String(20), nullable=False),
        sa.Column("subscriber_name", sa.String(100), nullable=True),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("message", sa.String(500), nullable=False),
        sa.Column("type", sa.String(20), nullable=False, server_default="general", index=True),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("related_kind", sa.String(20), nullable=True),
        sa.Column("related_id", sa.Integer(), nullable=True),
        sa.Column("sent_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), default=sa.func.now(), index=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notifications_subscriber_read", "notifications", ["subscriber_id", "read"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("notifications")
    op.drop_table("subscriptions")
    op.drop_table("sequence_counters")
    op.drop_table("bill_items")
    op.drop_table("bills")
    op.drop_table("attendance_records")
