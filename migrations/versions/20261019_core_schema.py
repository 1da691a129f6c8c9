"""users, badges, jobs, status log and bids

Revision ID: 20261019_core_schema
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision = "20261019_core_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    tables = set(inspect(bind).get_table_names())

    if "user" not in tables:
        op.create_table(
            "user",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=120), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("password_hash", sa.String(length=256), nullable=False),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="client"),
            sa.Column("approved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("phone", sa.String(length=30), nullable=True),
            sa.Column("balance", sa.Float(), nullable=False, server_default="0"),
            sa.Column("total_earned", sa.Float(), nullable=False, server_default="0"),
            sa.Column("total_spent", sa.Float(), nullable=False, server_default="0"),
            sa.Column("completed_jobs", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("on_time_deliveries", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("revisions_requested", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("rating", sa.Float(), nullable=True),
            sa.Column("freelancer_badge", sa.String(length=20), nullable=True),
            sa.Column("client_tier", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "user_badge" not in tables:
        op.create_table(
            "user_badge",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("badge", sa.String(length=40), nullable=False),
            sa.Column("awarded_by", sa.String(length=20), nullable=False, server_default="auto"),
            sa.Column("awarded_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "badge", name="uq_user_badge"),
        )
        op.create_index("ix_user_badge_user_id", "user_badge", ["user_id"])

    if "job" not in tables:
        op.create_table(
            "job",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("display_id", sa.String(length=20), nullable=True),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("assigned_freelancer_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("instructions", sa.Text(), nullable=False),
            sa.Column("work_type", sa.String(length=80), nullable=False),
            sa.Column("pages", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("slides", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("freelancer_earnings", sa.Float(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("actual_deadline", sa.DateTime(), nullable=False),
            sa.Column("freelancer_deadline", sa.DateTime(), nullable=True),
            sa.Column("payment_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("admin_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("archived_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["client_id"], ["user.id"]),
            sa.ForeignKeyConstraint(["assigned_freelancer_id"], ["user.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("display_id"),
        )
        op.create_index("ix_job_client_id", "job", ["client_id"])
        op.create_index("ix_job_assigned_freelancer_id", "job", ["assigned_freelancer_id"])
        op.create_index("ix_job_status", "job", ["status"])

    if "job_status_log" not in tables:
        op.create_table(
            "job_status_log",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.Integer(), nullable=False),
            sa.Column("old_status", sa.String(length=20), nullable=True),
            sa.Column("new_status", sa.String(length=20), nullable=False),
            sa.Column("changed_by", sa.Integer(), nullable=True),
            sa.Column("note", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["job_id"], ["job.id"]),
            sa.ForeignKeyConstraint(["changed_by"], ["user.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_job_status_log_job_id", "job_status_log", ["job_id"])

    if "bid" not in tables:
        op.create_table(
            "bid",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.Integer(), nullable=False),
            sa.Column("freelancer_id", sa.Integer(), nullable=False),
            sa.Column("bid_amount", sa.Float(), nullable=True),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["job_id"], ["job.id"]),
            sa.ForeignKeyConstraint(["freelancer_id"], ["user.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_id", "freelancer_id", name="uq_bid_job_freelancer"),
        )
        op.create_index("ix_bid_job_id", "bid", ["job_id"])


def downgrade():
    tables = set(inspect(op.get_bind()).get_table_names())
    for name in ("bid", "job_status_log", "job", "user_badge", "user"):
        if name in tables:
            op.drop_table(name)
