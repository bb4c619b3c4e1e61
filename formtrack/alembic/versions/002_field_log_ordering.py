"""field_log_ordering

Revision ID: 002_field_log_ordering
Revises: 001_initial_schema
Create Date: 2026-10-17 00:00:00.000000 UTC

form_field_logs.logged_at now holds the client-side time of the change.
Adds:
  - received_at  server receive time of the batch (backfilled from logged_at)
  - sequence     position of the change inside its batch
  - ix_form_field_logs_session_logged  (session_id, logged_at) for ordered reads
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "002_field_log_ordering"
down_revision: Union[str, None] = "001_initial_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "form_field_logs",
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.execute("UPDATE form_field_logs SET received_at = logged_at")
    with op.batch_alter_table("form_field_logs") as batch_op:
        batch_op.alter_column("received_at", nullable=False)
    op.add_column(
        "form_field_logs",
        sa.Column(
            "sequence",
            sa.Integer(),
            nullable=False,
            server_default="0",
            comment="Index of the change inside its batch",
        ),
    )
    op.create_index(
        "ix_form_field_logs_session_logged", "form_field_logs", ["session_id", "logged_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_form_field_logs_session_logged", table_name="form_field_logs")
    op.drop_column("form_field_logs", "sequence")
    op.drop_column("form_field_logs", "received_at")
