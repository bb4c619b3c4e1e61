"""
models/document.py — read-only view of generated documents.

Table: documents
The document CRUD layer owns this table's lifecycle; formtrack only reads it
for business-intelligence aggregation (industry, revenue range, sender and
recipient relationships, currency/country correlation).
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from formtrack.database import Base, JSONType


class DocumentORM(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False, default="invoice")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    grand_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    ip_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    sender_info: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="{business_name, email, ...} as entered in the wizard",
    )
    recipient_info: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    line_items: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="[{description, quantity, unit_price}]",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
