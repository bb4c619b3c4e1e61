"""
schemas.py — Ingestion API Pydantic v2 data contracts.

Defines:
  - Fingerprint, DeviceInfo, ReferralData     (collected by the client SDK)
  - BehavioralSnapshot + its row types          (versioned, closed schema)
  - GeoLocation                                 (upstream lookup result)
  - CreateSessionRequest / FieldLogBatch / SessionUpdate  (request bodies)
  - SessionRecord, FieldLogRecord               (domain objects returned by store.py)
  - ErrorDetail, ErrorBody, ErrorResponse       (cross-cutting error envelope)

The client SDK (formtrack.client) builds its payloads from these same models,
so the wire contract has exactly one definition.

BehavioralSnapshot is CLOSED (extra='forbid') and tagged with schema_version.
Aggregation relies on field presence and types instead of casting at read time.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Client environment contracts
# ---------------------------------------------------------------------------

class Fingerprint(BaseModel):
    """
    Stable client signals. Every field is optional: an environment that cannot
    expose a signal leaves it None rather than failing collection.
    """
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    window_width: Optional[int] = None
    window_height: Optional[int] = None
    pixel_ratio: Optional[float] = None
    color_depth: Optional[int] = None
    touch_support: Optional[bool] = None
    max_touch_points: Optional[int] = None
    cpu_cores: Optional[int] = None
    device_memory: Optional[float] = None
    gpu: Optional[str] = None
    do_not_track: Optional[bool] = None
    cookies_enabled: Optional[bool] = None
    connection_type: Optional[str] = None
    connection_downlink: Optional[float] = None
    timezone: Optional[str] = None
    timezone_offset: Optional[int] = None
    languages: List[str] = Field(default_factory=list)
    platform: Optional[str] = None
    canvas_hash: str = ""
    webgl_hash: str = ""
    audio_hash: str = ""


class DeviceInfo(BaseModel):
    browser: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    mobile: bool = False
    language: Optional[str] = None
    platform: Optional[str] = None


class TrafficSource(str, Enum):
    direct = "direct"
    organic = "organic"
    social = "social"
    referral = "referral"
    paid = "paid"
    email = "email"


class ReferralData(BaseModel):
    full_referrer: str = ""
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None
    landing_page: str = "/"
    search_query: Optional[str] = None
    traffic_source: TrafficSource = TrafficSource.direct
    social_platform: Optional[str] = None


# ---------------------------------------------------------------------------
# Behavioral snapshot — cumulative, overwritten on every flush
# ---------------------------------------------------------------------------

class FieldTiming(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field_name: str
    duration: int = Field(..., description="Milliseconds between focus and blur.")


class MousePoint(BaseModel):
    model_config = ConfigDict(extra="forbid")

    x: int
    y: int
    t: int = Field(..., description="Milliseconds since tracker start.")


class ClickPoint(BaseModel):
    model_config = ConfigDict(extra="forbid")

    x: int
    y: int
    target: str = "unknown"
    t: int


class BehavioralSnapshot(BaseModel):
    """
    Point-in-time read of a BehavioralTracker.

    Counters (edit_counts, rage_clicks, tab_switches, ...) never decrease
    between successive snapshots of the same session, because the tracker
    never resets them. The server replaces the stored snapshot with each new one.
    """
    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = 1

    field_timings: List[FieldTiming] = Field(default_factory=list)
    edit_counts: Dict[str, int] = Field(default_factory=dict)
    field_order: List[str] = Field(default_factory=list)
    paste_events: List[str] = Field(default_factory=list)
    typing_speeds: Dict[str, List[int]] = Field(default_factory=dict)
    scroll_depth: int = Field(default=0, ge=0, le=100)
    tab_switches: int = Field(default=0, ge=0)
    rage_clicks: int = Field(default=0, ge=0)
    copy_events: int = Field(default=0, ge=0)
    right_click_events: int = Field(default=0, ge=0)
    validation_errors: int = Field(default=0, ge=0)
    duration: int = Field(default=0, description="Milliseconds since tracker start.")
    page_load_time: int = 0
    mouse_heatmap: List[MousePoint] = Field(default_factory=list)
    click_map: List[ClickPoint] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Geolocation
# ---------------------------------------------------------------------------

class GeoLocation(BaseModel):
    country: Optional[str] = None
    country_code: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    isp: Optional[str] = None
    org: Optional[str] = None
    timezone: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_type: Optional[str] = None
    device_info: Optional[DeviceInfo] = None
    referral_source: Optional[str] = None
    page_url: Optional[str] = None
    referral: Optional[ReferralData] = None
    fingerprint: Optional[Fingerprint] = None
    fingerprint_hash: Optional[str] = Field(default=None, max_length=64)


class CreateSessionResponse(BaseModel):
    success: bool = True
    session_id: str
    is_returning: bool


class FieldChange(BaseModel):
    field_name: str = Field(..., min_length=1, max_length=200)
    field_value: str = ""
    logged_at: Optional[datetime] = Field(
        None, description="Client clock at the moment of the change; server receive time when absent"
    )

    @field_validator("field_value", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @field_validator("logged_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class FieldLogBatch(BaseModel):
    """One debounced flush from the client. Must carry at least one field."""
    model_config = ConfigDict(extra="forbid")

    session_id: str = Field(..., min_length=1, max_length=36)
    fields: List[FieldChange] = Field(..., min_length=1)


class SessionUpdate(BaseModel):
    """
    Partial update. Only fields present in the request body are applied
    (see model_fields_set); `behavioral` replaces the stored snapshot wholesale.
    """
    model_config = ConfigDict(extra="forbid")

    session_id: str = Field(..., min_length=1, max_length=36)
    document_type: Optional[str] = None
    form_snapshot: Optional[Dict[str, Any]] = None
    completed: Optional[bool] = None
    document_id: Optional[str] = None
    behavioral: Optional[BehavioralSnapshot] = None

    def to_payload(self) -> Dict[str, Any]:
        """JSON body carrying only the fields that were set (nested models dumped in full)."""
        body = self.model_dump(mode="json")
        return {k: v for k, v in body.items() if k in self.model_fields_set}


# ---------------------------------------------------------------------------
# Domain objects returned by store.py
# ---------------------------------------------------------------------------

class FieldLogRecord(BaseModel):
    field_name: str
    field_value: str
    logged_at: datetime
    received_at: Optional[datetime] = None


class SessionStatus(str, Enum):
    active = "active"
    abandoned = "abandoned"
    completed = "completed"


class SessionRecord(BaseModel):
    id: str
    document_type: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None
    user_agent: Optional[str] = None
    referral_source: Optional[str] = None
    page_url: Optional[str] = None
    referral: Optional[ReferralData] = None
    ip_address: Optional[str] = None
    ip_country: Optional[str] = None
    ip_geo: Optional[GeoLocation] = None
    fingerprint_hash: Optional[str] = None
    is_returning: bool = False
    started_at: datetime
    last_activity_at: datetime
    completed: bool = False
    completed_at: Optional[datetime] = None
    document_id: Optional[str] = None
    form_snapshot: Optional[Dict[str, Any]] = None
    behavioral: Optional[BehavioralSnapshot] = None
    status: SessionStatus = SessionStatus.active
    field_log_count: int = 0
    recent_field_logs: List[FieldLogRecord] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field: Optional[str] = None
    issue: str


class ErrorBody(BaseModel):
    code: str
    message: str
    details: List[ErrorDetail] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: ErrorBody
