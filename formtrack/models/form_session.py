"""
models/form_session.py — SQLAlchemy ORM model for one form-fill attempt.

Table: form_sessions

Write pattern:
  - Created once by POST /api/sessions (enriched with IP + geolocation)
  - Field logs append to form_field_logs and bump last_activity_at
  - Behavioral snapshots overwrite `behavioral` wholesale (never merged)

Session status (active / abandoned / completed) is derived at read time from
`completed` and `last_activity_at` — there is no status column to sweep.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from formtrack.database import Base, JSONType


class FormSessionORM(Base):
    """
    ORM model for a visitor's form session.

    fingerprint_hash: SHA-256 pseudo-identity; indexed for the returning-visitor
                      check performed on every create.
    behavioral:       latest cumulative BehavioralSnapshot (schema_version 1).
    form_snapshot:    opaque wizard state, replaced on each update.
    """
    __tablename__ = "form_sessions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Session UUID returned to the client",
    )
    document_type: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    # --- Device / referral ---
    device_info: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    referral_source: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    page_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    referral: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="UTM fields, traffic source, social platform, landing page, search query",
    )

    # --- Network ---
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True, index=True)
    ip_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    ip_geo: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Best-effort geolocation; NULL when the upstream lookup failed",
    )

    # --- Identity ---
    fingerprint: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    fingerprint_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    is_returning: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # --- Lifecycle ---
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    document_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # --- Snapshots ---
    form_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    behavioral: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    mouse_heatmap: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    click_map: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
