"""Create trial records table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "trial_records",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("model_id", sa.String(), nullable=False),
        sa.Column("trial_index", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("log_ref", sa.String(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint(
            "task_id",
            "model_id",
            "trial_index",
            name="pk_trial_records",
        ),
    )
    op.create_index("ix_trial_records_model_id", "trial_records", ["model_id"])
    op.create_index("ix_trial_records_status", "trial_records", ["status"])


def downgrade() -> None:
    op.drop_index("ix_trial_records_status", table_name="trial_records")
    op.drop_index("ix_trial_records_model_id", table_name="trial_records")
    op.drop_table("trial_records")
