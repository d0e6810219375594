"""add_assembly_jobs_table

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "1a2b3c4d5e6f"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "assembly_jobs",
        sa.Column("job_id", sa.Uuid(), nullable=False),
        # Job kind and status
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, default="pending"),
        # Progress tracking
        sa.Column("progress", sa.Integer(), nullable=False, default=0),
        sa.Column("stage", sa.String(), nullable=True),
        # Request payload
        sa.Column("request", sa.JSON(), nullable=False),
        # Output details
        sa.Column("result_url", sa.String(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        # Error handling
        sa.Column("error_message", sa.String(), nullable=True),
        # Timestamps
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )

    op.create_index("ix_assembly_jobs_job_id", "assembly_jobs", ["job_id"], unique=True)
    op.create_index("ix_assembly_jobs_status", "assembly_jobs", ["status"])


def downgrade() -> None:
    op.drop_index("ix_assembly_jobs_status", table_name="assembly_jobs")
    op.drop_index("ix_assembly_jobs_job_id", table_name="assembly_jobs")
    op.drop_table("assembly_jobs")
