"""Add build job state table and status enum."""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "202610190001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


BUILD_JOB_STATUS = postgresql.ENUM(
    "queued",
    "running",
    "paused",
    "complete",
    "failed",
    name="buildjobstatus",
    create_type=False,
)


def _json_column() -> sa.JSON:
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    """Create build job state schema objects."""

    bind = op.get_bind()
    BUILD_JOB_STATUS.create(bind, checkfirst=True)

    op.create_table(
        "build_job_states",
        sa.Column("job_id", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(name="buildjobstatus", create_type=False),
            nullable=False,
            server_default=sa.text("'queued'::buildjobstatus"),
        ),
        sa.Column("job", _json_column(), nullable=False),
        sa.Column("plan", _json_column(), nullable=True),
        sa.Column(
            "completed_items",
            _json_column(),
            nullable=False,
            server_default=sa.text("'[]'"),
        ),
        sa.Column("result_url", sa.Text(), nullable=True),
        sa.Column("deploy_url", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cost_estimate", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "validation_warnings",
            _json_column(),
            nullable=False,
            server_default=sa.text("'[]'"),
        ),
        sa.Column(
            "drive_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id", name="pk_build_job_states"),
    )
    op.create_index(
        "ix_build_job_states_status_updated_at",
        "build_job_states",
        ["status", "updated_at"],
        unique=False,
    )


def downgrade() -> None:
    """Drop build job state schema objects."""

    op.drop_index("ix_build_job_states_status_updated_at", table_name="build_job_states")
    op.drop_table("build_job_states")
    BUILD_JOB_STATUS.drop(op.get_bind(), checkfirst=True)
