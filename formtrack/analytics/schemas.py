"""
schemas.py — Aggregation Engine data contracts.

Input side:  DocumentRecord (read-only view of the document CRUD layer).
Output side: the report models served by analytics/routes.py.
Session input is ingestion.schemas.SessionRecord.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from formtrack.ingestion.schemas import SessionRecord


# ---------------------------------------------------------------------------
# Document input
# ---------------------------------------------------------------------------

class PartyInfo(BaseModel):
    """Sender or recipient block. Unknown wizard keys are tolerated."""
    model_config = ConfigDict(extra="ignore")

    business_name: Optional[str] = None
    email: Optional[str] = None


class LineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    description: str = ""
    quantity: float = 1
    unit_price: float = 0


class DocumentRecord(BaseModel):
    id: str
    type: str = "invoice"
    currency: str = "USD"
    grand_total: Decimal = Decimal("0")
    ip_country: Optional[str] = None
    sender_info: Optional[PartyInfo] = None
    recipient_info: Optional[PartyInfo] = None
    line_items: List[LineItem] = Field(default_factory=list)
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Shared report rows
# ---------------------------------------------------------------------------

class RankedCount(BaseModel):
    name: str
    count: int


class FieldTimingStat(BaseModel):
    field: str
    avg: int = Field(..., description="Mean focus duration in ms, rounded.")
    count: int


class DurationStats(BaseModel):
    """Mean durations in ms; None when no positive duration was recorded."""
    overall_ms: Optional[int] = None
    completed_ms: Optional[int] = None
    not_completed_ms: Optional[int] = None
    sample_count: int = 0


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class BehavioralReport(BaseModel):
    sessions_total: int
    sessions_with_behavioral: int
    avg_field_times: List[FieldTimingStat]
    drop_off_fields: List[RankedCount]
    top_edited_fields: List[RankedCount]
    top_pasted_fields: List[RankedCount]
    total_paste_events: int
    total_type_events: int
    total_rage_clicks: int
    total_tab_switches: int
    avg_scroll_depth: int
    durations: DurationStats


class IndustryStat(BaseModel):
    name: str
    count: int
    total_revenue: float
    avg_revenue: float


class CurrencyCountry(BaseModel):
    currency: str
    top_country: str
    top_country_count: int
    total: int


class ReturningVisitors(BaseModel):
    unique_fingerprints: int
    returning_fingerprints: int
    returning_pct: int


class IntelligenceReport(BaseModel):
    documents_total: int
    industries: List[IndustryStat]
    detected_industries: int
    revenue_ranges: List[RankedCount]
    top_sender_domains: List[RankedCount]
    corporate_senders: int
    free_email_senders: int
    currency_country: List[CurrencyCountry]
    relationships: List[RankedCount]
    repeat_senders: List[RankedCount]
    returning_visitors: ReturningVisitors


class NetworkReport(BaseModel):
    geolocated_sessions: int
    countries: List[RankedCount]
    cities: List[RankedCount]
    regions: List[RankedCount]
    isps: List[RankedCount]
    orgs: List[RankedCount]
    timezones: List[RankedCount]
    shared_ips: List[RankedCount]


class OverviewReport(BaseModel):
    sessions_total: int
    active: int
    abandoned: int
    completed: int
    completion_rate_pct: float
    returning_sessions: int


class SessionPage(BaseModel):
    data: List[SessionRecord]
    total: int
    limit: int
    offset: int
