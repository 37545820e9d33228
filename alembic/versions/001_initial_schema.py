"""Initial schema with jobs, dead_letters and cache_entries tables

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column(
            "scheduled_for",
            sa.DateTime,
            nullable=False,
            server_default=sa.text("(now() at time zone 'utc')"),
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("error_history", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("lease_expires_at", sa.DateTime, nullable=True),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.text("(now() at time zone 'utc')"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.text("(now() at time zone 'utc')"),
        ),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_jobs_status",
        ),
        sa.CheckConstraint("priority BETWEEN 1 AND 10", name="ck_jobs_priority"),
    )

    op.create_index("ix_jobs_type", "jobs", ["type"])
    op.create_index("ix_jobs_user_id", "jobs", ["user_id"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_claim_order", "jobs", ["status", "priority", "scheduled_for"])
    op.create_index("ix_jobs_lease_expiry", "jobs", ["status", "lease_expires_at"])
    op.create_index("ix_jobs_user_created", "jobs", ["user_id", "created_at"])

    # Partial index for queue polling
    op.execute("""
        CREATE INDEX ix_jobs_pending_poll
        ON jobs (priority DESC, scheduled_for ASC, created_at ASC)
        WHERE status = 'pending'
    """)

    op.create_table(
        "dead_letters",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("original_job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("failure_history", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("final_error", sa.Text, nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        sa.Column("original_created_at", sa.DateTime, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="dead"),
        sa.Column("resolution_notes", sa.Text, nullable=True),
        sa.Column("resolved_by", sa.String(255), nullable=True),
        sa.Column("retried_job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.text("(now() at time zone 'utc')"),
        ),
        sa.Column("resolved_at", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("original_job_id", name="uq_dead_letters_original_job"),
        sa.CheckConstraint(
            "status IN ('dead', 'retrying', 'resolved')",
            name="ck_dead_letters_status",
        ),
    )

    op.create_index("ix_dead_letters_job_type", "dead_letters", ["job_type"])
    op.create_index("ix_dead_letters_user_id", "dead_letters", ["user_id"])
    op.create_index("ix_dead_letters_status", "dead_letters", ["status"])
    op.create_index("ix_dead_letters_created_at", "dead_letters", ["created_at"])

    op.create_table(
        "cache_entries",
        sa.Column("namespace", sa.String(50), nullable=False),
        sa.Column("cache_key", sa.String(64), nullable=False),
        sa.Column("value", postgresql.JSONB, nullable=True),
        sa.Column("meta", postgresql.JSONB, nullable=True),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.text("(now() at time zone 'utc')"),
        ),
        sa.Column(
            "accessed_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.text("(now() at time zone 'utc')"),
        ),
        sa.Column("access_count", sa.Integer, nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("namespace", "cache_key"),
    )

    op.create_index("ix_cache_entries_expires_at", "cache_entries", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_cache_entries_expires_at")
    op.drop_table("cache_entries")

    op.drop_index("ix_dead_letters_created_at")
    op.drop_index("ix_dead_letters_status")
    op.drop_index("ix_dead_letters_user_id")
    op.drop_index("ix_dead_letters_job_type")
    op.drop_table("dead_letters")

    op.execute("DROP INDEX IF EXISTS ix_jobs_pending_poll")
    op.drop_index("ix_jobs_user_created")
    op.drop_index("ix_jobs_lease_expiry")
    op.drop_index("ix_jobs_claim_order")
    op.drop_index("ix_jobs_status")
    op.drop_index("ix_jobs_user_id")
    op.drop_index("ix_jobs_type")
    op.drop_table("jobs")
