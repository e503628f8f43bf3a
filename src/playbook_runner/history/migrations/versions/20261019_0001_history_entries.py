"""Batch history entries table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "history_entries",
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("project_path", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("full_response", sa.Text(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("elapsed_time_ms", sa.Integer(), nullable=False),
        sa.Column("agent_session_id", sa.String(), nullable=True),
        sa.Column("usage_json", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index("ix_history_entries_entry_type", "history_entries", ["entry_type"])
    op.create_index("ix_history_entries_created_at", "history_entries", ["created_at"])
    op.create_index("ix_history_entries_session_id", "history_entries", ["session_id"])


def downgrade() -> None:
    op.drop_index("ix_history_entries_session_id", table_name="history_entries")
    op.drop_index("ix_history_entries_created_at", table_name="history_entries")
    op.drop_index("ix_history_entries_entry_type", table_name="history_entries")
    op.drop_table("history_entries")
