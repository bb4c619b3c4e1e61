"""
models/field_log.py — SQLAlchemy ORM for recorded field values.

Table: form_field_logs
One row per observed field value. Append-only: rows are never updated, and the
client may deliver the same observation twice after a failed flush, so readers
must treat duplicates as harmless. Rows go away only with their owning session
(ON DELETE CASCADE).
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from formtrack.database import Base


class FieldLogORM(Base):
    """
    ORM model for a single field value observation.

    field_value: stringified value as typed by the user. Never logged.
    logged_at:   when the change happened, on the client clock when the client
                 sent one, otherwise the server receive time.
    received_at: server receive time of the batch.
    sequence:    position inside the delivered batch; breaks logged_at ties.
    """
    __tablename__ = "form_field_logs"
    __table_args__ = (
        Index("ix_form_field_logs_session_logged", "session_id", "logged_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID row identifier",
    )
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("form_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Owning form session",
    )
    field_name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="Form field identifier, e.g. sender.email",
    )
    field_value: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        comment="Stringified field value",
    )
    logged_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Index of the change inside its batch",
    )
