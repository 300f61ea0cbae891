"""add job queue and job runs tables

Revision ID: 3b7e91c2d4a0
Revises:
Create Date: 2026-10-18 09:12:41.503217

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7e91c2d4a0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Pending work for table delivery mode
    op.create_table(
        "job_queue",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("org_id", sa.Text, nullable=False, comment="Organization scope"),
        sa.Column("type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column(
            "data",
            sa.JSON,
            nullable=False,
            server_default=sa.text("'{}'"),
            comment="Job-specific parameters",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Number of claims made",
        ),
        sa.Column(
            "locked_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When the row was claimed by an executor",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Enqueue time, determines FIFO claim order",
        ),
        sa.CheckConstraint("attempts >= 0", name="job_queue_attempts_check"),
    )

    # Claim scans unlocked rows in created_at order
    op.create_index(
        "ix_job_queue_claim_order", "job_queue", ["locked_at", "created_at"]
    )

    # Run-log: one row per logical job, keyed by the content-derived job id
    op.create_table(
        "job_runs",
        sa.Column(
            "job_id",
            sa.Text,
            primary_key=True,
            comment="Content-derived idempotency key",
        ),
        sa.Column("org_id", sa.Text, nullable=False, comment="Organization scope"),
        sa.Column(
            "processed_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "result",
            sa.JSON,
            nullable=False,
            comment="JobResult returned by the handler",
        ),
    )
    op.create_index("ix_job_runs_org_id", "job_runs", ["org_id"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_job_runs_org_id", table_name="job_runs")
    op.drop_table("job_runs")
    op.drop_index("ix_job_queue_claim_order", table_name="job_queue")
    op.drop_table("job_queue")
