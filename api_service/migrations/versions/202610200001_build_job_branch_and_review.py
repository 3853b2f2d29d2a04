"""Track branch creation and the risk review on build job state."""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "202610200001"
down_revision: Union[str, None] = "202610190001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "build_job_states",
        sa.Column(
            "branch_created", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
    )
    op.add_column(
        "build_job_states",
        sa.Column(
            "risk_review",
            sa.JSON().with_variant(
                postgresql.JSONB(astext_type=sa.Text()), "postgresql"
            ),
            nullable=True,
        ),
    )


def downgrade() -> None:
    op.drop_column("build_job_states", "risk_review")
    op.drop_column("build_job_states", "branch_created")
