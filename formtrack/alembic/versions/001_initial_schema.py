"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-01 00:00:00.000000 UTC

Creates:
  - form_sessions    one row per form-fill attempt (behavioral snapshot embedded)
  - form_field_logs  append-only field observations, cascade-deleted with the session
  - documents        read-only document view consumed by the intelligence report
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "form_sessions",
        sa.Column("id", sa.String(36), nullable=False, comment="Session UUID returned to the client"),
        sa.Column("document_type", sa.String(30), nullable=True),
        sa.Column("device_info", JSONType, nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("referral_source", sa.Text(), nullable=True),
        sa.Column("page_url", sa.Text(), nullable=True),
        sa.Column(
            "referral",
            JSONType,
            nullable=True,
            comment="UTM fields, traffic source, social platform, landing page, search query",
        ),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("ip_country", sa.String(2), nullable=True),
        sa.Column(
            "ip_geo",
            JSONType,
            nullable=True,
            comment="Best-effort geolocation; NULL when the upstream lookup failed",
        ),
        sa.Column("fingerprint", JSONType, nullable=True),
        sa.Column("fingerprint_hash", sa.String(64), nullable=True),
        sa.Column("is_returning", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("document_id", sa.String(36), nullable=True),
        sa.Column("form_snapshot", JSONType, nullable=True),
        sa.Column("behavioral", JSONType, nullable=True),
        sa.Column("mouse_heatmap", JSONType, nullable=True),
        sa.Column("click_map", JSONType, nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_form_sessions_fingerprint_hash", "form_sessions", ["fingerprint_hash"])
    op.create_index("ix_form_sessions_ip_address", "form_sessions", ["ip_address"])
    op.create_index("ix_form_sessions_last_activity_at", "form_sessions", ["last_activity_at"])

    op.create_table(
        "form_field_logs",
        sa.Column("id", sa.String(36), nullable=False, comment="UUID row identifier"),
        sa.Column("session_id", sa.String(36), nullable=False, comment="Owning form session"),
        sa.Column("field_name", sa.String(200), nullable=False),
        sa.Column("field_value", sa.Text(), nullable=False),
        sa.Column("logged_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["form_sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_form_field_logs_session_id", "form_field_logs", ["session_id"])

    op.create_table(
        "documents",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("grand_total", sa.Numeric(14, 2), nullable=False),
        sa.Column("ip_country", sa.String(2), nullable=True),
        sa.Column("sender_info", JSONType, nullable=True),
        sa.Column("recipient_info", JSONType, nullable=True),
        sa.Column("line_items", JSONType, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("documents")
    op.drop_index("ix_form_field_logs_session_id", table_name="form_field_logs")
    op.drop_table("form_field_logs")
    op.drop_index("ix_form_sessions_last_activity_at", table_name="form_sessions")
    op.drop_index("ix_form_sessions_ip_address", table_name="form_sessions")
    op.drop_index("ix_form_sessions_fingerprint_hash", table_name="form_sessions")
    op.drop_table("form_sessions")
