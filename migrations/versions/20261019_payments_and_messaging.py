"""payments, invoices, attachments, messages, ratings, notifications, email log, rate limits

Revision ID: 20261019_payments_and_messaging
Revises: 20261019_core_schema
Create Date: 2026-10-19 09:30:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision = "20261019_payments_and_messaging"
down_revision = "20261019_core_schema"
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    tables = set(inspect(bind).get_table_names())

    if "payment" not in tables:
        op.create_table(
            "payment",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("freelancer_id", sa.Integer(), nullable=True),
            sa.Column("amount", sa.Float(), nullable=False),
            sa.Column("phone_number", sa.String(length=20), nullable=True),
            sa.Column("payment_method", sa.String(length=20), nullable=False, server_default="mpesa"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("mpesa_checkout_request_id", sa.String(length=100), nullable=True),
            sa.Column("mpesa_merchant_request_id", sa.String(length=100), nullable=True),
            sa.Column("mpesa_receipt_number", sa.String(length=50), nullable=True),
            sa.Column("mpesa_transaction_date", sa.String(length=20), nullable=True),
            sa.Column("mpesa_result_desc", sa.String(length=255), nullable=True),
            sa.Column("confirmed_by_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["job_id"], ["job.id"]),
            sa.ForeignKeyConstraint(["client_id"], ["user.id"]),
            sa.ForeignKeyConstraint(["freelancer_id"], ["user.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("mpesa_checkout_request_id"),
        )
        op.create_index("ix_payment_job_id", "payment", ["job_id"])

    if "invoice" not in tables:
        op.create_table(
            "invoice",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=False),
            sa.Column("freelancer_id", sa.Integer(), nullable=True),
            sa.Column("amount", sa.Float(), nullable=False),
            sa.Column("freelancer_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("admin_commission", sa.Float(), nullable=False, server_default="0"),
            sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["job_id"], ["job.id"]),
            sa.ForeignKeyConstraint(["client_id"], ["user.id"]),
            sa.ForeignKeyConstraint(["freelancer_id"], ["user.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_id"),
        )

    if "job_attachment" not in tables:
        op.create_table(
            "job_attachment",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.Integer(), nullable=False),
            sa.Column("uploaded_by", sa.Integer(), nullable=False),
            sa.Column("file_name", sa.String(length=255), nullable=False),
            sa.Column("stored_name", sa.String(length=255), nullable=False),
            sa.Column("file_size", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("file_type", sa.String(length=120), nullable=True),
            sa.Column("upload_type", sa.String(length=20), nullable=False, server_default="initial"),
            sa.Column("is_visible", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("visible_to_client", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("visible_to_freelancer", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("scheduled_deletion_at", sa.DateTime(), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["job_id"], ["job.id"]),
            sa.ForeignKeyConstraint(["uploaded_by"], ["user.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_job_attachment_job_id", "job_attachment", ["job_id"])

    if "job_message" not in tables:
        op.create_table(
            "job_message",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.Integer(), nullable=False),
            sa.Column("sender_id", sa.Integer(), nullable=False),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("message_type", sa.String(length=10), nullable=False, server_default="text"),
            sa.Column("admin_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["job_id"], ["job.id"]),
            sa.ForeignKeyConstraint(["sender_id"], ["user.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_job_message_job_id", "job_message", ["job_id"])

    if "rating" not in tables:
        op.create_table(
            "rating",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.Integer(), nullable=False),
            sa.Column("rater_id", sa.Integer(), nullable=False),
            sa.Column("rated_user_id", sa.Integer(), nullable=False),
            sa.Column("score", sa.Integer(), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["job_id"], ["job.id"]),
            sa.ForeignKeyConstraint(["rater_id"], ["user.id"]),
            sa.ForeignKeyConstraint(["rated_user_id"], ["user.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_id", "rater_id", name="uq_rating_job_rater"),
        )
        op.create_index("ix_rating_job_id", "rating", ["job_id"])
        op.create_index("ix_rating_rated_user_id", "rating", ["rated_user_id"])

    if "notification" not in tables:
        op.create_table(
            "notification",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.Integer(), nullable=True),
            sa.Column("type", sa.String(length=40), nullable=False),
            sa.Column("title", sa.String(length=150), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
            sa.ForeignKeyConstraint(["job_id"], ["job.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notification_user_id", "notification", ["user_id"])

    if "email_log" not in tables:
        op.create_table(
            "email_log",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("sent_by", sa.Integer(), nullable=False),
            sa.Column("sent_to", sa.Text(), nullable=False),
            sa.Column("recipient_type", sa.String(length=20), nullable=False),
            sa.Column("recipient_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("from_email", sa.String(length=120), nullable=False),
            sa.Column("subject", sa.String(length=255), nullable=False),
            sa.Column("body", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=10), nullable=False),
            sa.Column("failed_recipients", sa.Text(), nullable=True),
            sa.Column("job_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["sent_by"], ["user.id"]),
            sa.ForeignKeyConstraint(["job_id"], ["job.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_email_log_created_at", "email_log", ["created_at"])

    if "rate_limit_window" not in tables:
        op.create_table(
            "rate_limit_window",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("key", sa.String(length=120), nullable=False),
            sa.Column("window_start", sa.DateTime(), nullable=False),
            sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("key", "window_start", name="uq_rate_limit_window"),
        )


def downgrade():
    tables = set(inspect(op.get_bind()).get_table_names())
    for name in (
        "rate_limit_window",
        "email_log",
        "notification",
        "rating",
        "job_message",
        "job_attachment",
        "invoice",
        "payment",
    ):
        if name in tables:
            op.drop_table(name)
