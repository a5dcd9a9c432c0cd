"""reliability tables: outbox, inbox and scheduled jobs

Revision ID: 0001
Revises:
Create Date: 2025-12-15 09:00:00.000000+00:00

"""
from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade database schema."""
    op.create_table(
        "outbox_messages",
        sa.Column("id", sa.Uuid(), nullable=False, comment="UUID v7 primary key (time-sortable)"),
        sa.Column("message_id", sa.String(length=36), nullable=False, comment="Globally unique message identifier"),
        sa.Column("correlation_id", sa.String(length=36), nullable=False, comment="Correlates a request with its outcome"),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True, comment="Caller-supplied de-duplication key"),
        sa.Column("exchange", sa.String(length=255), nullable=False),
        sa.Column("routing_key", sa.String(length=255), nullable=False),
        sa.Column("message_type", sa.String(length=100), nullable=False, comment="Envelope type identifier"),
        sa.Column(
            "payload",
            sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "next_retry_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Earliest time for the next retry attempt",
        ),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True, comment="Last error message if publishing failed"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
            comment="Timestamp of record creation",
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
            comment="Timestamp of last update",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_outbox_messages")),
        sa.UniqueConstraint("message_id", name=op.f("uq_outbox_messages_message_id")),
        sa.UniqueConstraint("idempotency_key", name=op.f("uq_outbox_messages_idempotency_key")),
    )
    op.create_index(op.f("ix_outbox_messages_correlation_id"), "outbox_messages", ["correlation_id"])
    op.create_index(op.f("ix_outbox_messages_message_type"), "outbox_messages", ["message_type"])
    op.create_index(op.f("ix_outbox_messages_status"), "outbox_messages", ["status"])
    op.create_index(
        "ix_outbox_messages_retry_scan",
        "outbox_messages",
        ["status", "next_retry_at", "created_at"],
        postgresql_where=sa.text("status IN ('pending', 'failed')"),
    )

    op.create_table(
        "inbox_messages",
        sa.Column("id", sa.Uuid(), nullable=False, comment="UUID v7 primary key (time-sortable)"),
        sa.Column("message_id", sa.String(length=36), nullable=False),
        sa.Column("correlation_id", sa.String(length=36), nullable=False),
        sa.Column("message_type", sa.String(length=100), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_inbox_messages")),
        sa.UniqueConstraint("message_id", name=op.f("uq_inbox_messages_message_id")),
    )
    op.create_index(op.f("ix_inbox_messages_correlation_id"), "inbox_messages", ["correlation_id"])

    op.create_table(
        "scheduled_jobs",
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("schedule_spec", sa.String(length=100), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_owner", sa.String(length=255), nullable=True),
        sa.Column("lease_token", sa.Integer(), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fail_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("disabled", sa.Boolean(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
            comment="Timestamp of record creation",
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
            comment="Timestamp of last update",
        ),
        sa.PrimaryKeyConstraint("name", name=op.f("pk_scheduled_jobs")),
    )
    op.create_index("ix_scheduled_jobs_due", "scheduled_jobs", ["next_run_at", "locked_at"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("ix_scheduled_jobs_due", table_name="scheduled_jobs")
    op.drop_table("scheduled_jobs")

    op.drop_index(op.f("ix_inbox_messages_correlation_id"), table_name="inbox_messages")
    op.drop_table("inbox_messages")

    op.drop_index("ix_outbox_messages_retry_scan", table_name="outbox_messages")
    op.drop_index(op.f("ix_outbox_messages_status"), table_name="outbox_messages")
    op.drop_index(op.f("ix_outbox_messages_message_type"), table_name="outbox_messages")
    op.drop_index(op.f("ix_outbox_messages_correlation_id"), table_name="outbox_messages")
    op.drop_table("outbox_messages")
