"""
Unit tests for the Aggregation Engine — formtrack/analytics/aggregation.py
and formtrack/analytics/classification.py.

Pure functions over hand-built SessionRecord / DocumentRecord lists; no
database involved.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from formtrack.analytics.aggregation import (
    behavioral_report,
    drop_off_fields,
    duration_stats,
    field_timing_stats,
    intelligence_report,
    network_report,
    overview_report,
    relationships,
    returning_visitors,
    revenue_distribution,
)
from formtrack.analytics.classification import (
    detect_industry,
    email_domain,
    industry_scores,
    is_free_email_domain,
    revenue_range,
)
from formtrack.analytics.schemas import DocumentRecord
from formtrack.ingestion.schemas import (
    BehavioralSnapshot,
    FieldTiming,
    GeoLocation,
    SessionRecord,
    SessionStatus,
)
from formtrack.store import derive_status

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def session(
    id: str = "s",
    completed: bool = False,
    behavioral: BehavioralSnapshot | None = None,
    fingerprint_hash: str | None = None,
    ip_address: str | None = None,
    ip_geo: GeoLocation | None = None,
    status: SessionStatus | None = None,
) -> SessionRecord:
    return SessionRecord(
        id=id,
        started_at=NOW,
        last_activity_at=NOW,
        completed=completed,
        behavioral=behavioral,
        fingerprint_hash=fingerprint_hash,
        ip_address=ip_address,
        ip_geo=ip_geo,
        status=status or (SessionStatus.completed if completed else SessionStatus.active),
    )


def snap(**fields) -> BehavioralSnapshot:
    return BehavioralSnapshot(**fields)


def document(total, descriptions=(), sender=None, recipient=None, email=None, currency="USD", country=None):
    return DocumentRecord(
        id="d",
        currency=currency,
        grand_total=Decimal(str(total)) if total is not None else Decimal("0"),
        ip_country=country,
        sender_info={"business_name": sender, "email": email},
        recipient_info={"business_name": recipient},
        line_items=[{"description": d, "quantity": 1, "unit_price": 0} for d in descriptions],
    )


# ---------------------------------------------------------------------------
# Behavioral
# ---------------------------------------------------------------------------

def test_field_timings_average_positive_durations_only():
    sessions = [
        session(behavioral=snap(field_timings=[
            FieldTiming(field_name="email", duration=1000),
            FieldTiming(field_name="email", duration=0),
            FieldTiming(field_name="name", duration=300),
        ])),
        session(behavioral=snap(field_timings=[FieldTiming(field_name="email", duration=2001)])),
        session(behavioral=None),
    ]
    stats = field_timing_stats(sessions)
    assert [(s.field, s.avg, s.count) for s in stats] == [("email", 1501, 2), ("name", 300, 1)]


def test_field_timings_truncated_to_top_n():
    timings = [FieldTiming(field_name=f"f{i}", duration=100 + i) for i in range(30)]
    stats = field_timing_stats([session(behavioral=snap(field_timings=timings))])
    assert len(stats) == 20
    assert stats[0].field == "f29"


def test_drop_off_counts_last_field_of_incomplete_sessions():
    sessions = [
        session(behavioral=snap(field_order=["name", "email"])),
        session(behavioral=snap(field_order=["email"])),
        session(behavioral=snap(field_order=["name", "phone"])),
        session(completed=True, behavioral=snap(field_order=["phone"])),
        session(behavioral=snap(field_order=[])),
    ]
    result = drop_off_fields(sessions)
    assert [(r.name, r.count) for r in result] == [("email", 2), ("phone", 1)]


def test_duration_stats_split_by_completion():
    sessions = [
        session(completed=True, behavioral=snap(duration=60000)),
        session(completed=True, behavioral=snap(duration=30000)),
        session(behavioral=snap(duration=10000)),
        session(behavioral=snap(duration=0)),
    ]
    stats = duration_stats(sessions)
    assert stats.overall_ms == 33333
    assert stats.completed_ms == 45000
    assert stats.not_completed_ms == 10000
    assert stats.sample_count == 3


def test_duration_stats_empty_is_none():
    stats = duration_stats([session()])
    assert stats.overall_ms is None
    assert stats.sample_count == 0


def test_behavioral_report_totals():
    sessions = [
        session(behavioral=snap(
            edit_counts={"email": 4, "name": 2},
            paste_events=["email", "email"],
            rage_clicks=1,
            tab_switches=2,
            scroll_depth=50,
        )),
        session(behavioral=snap(edit_counts={"email": 1}, paste_events=["iban"], scroll_depth=100)),
        session(),
    ]
    report = behavioral_report(sessions)
    assert report.sessions_total == 3
    assert report.sessions_with_behavioral == 2
    assert [(r.name, r.count) for r in report.top_edited_fields] == [("email", 5), ("name", 2)]
    assert [(r.name, r.count) for r in report.top_pasted_fields] == [("email", 2), ("iban", 1)]
    assert report.total_paste_events == 3
    assert report.total_type_events == 7
    assert report.total_rage_clicks == 1
    assert report.total_tab_switches == 2
    assert report.avg_scroll_depth == 75


def test_empty_corpus_reports_are_zeroed():
    report = behavioral_report([])
    assert report.sessions_total == 0
    assert report.avg_field_times == []
    assert report.avg_scroll_depth == 0
    assert overview_report([]).completion_rate_pct == 0.0
    assert returning_visitors([]).returning_pct == 0


# ---------------------------------------------------------------------------
# Visitors / overview
# ---------------------------------------------------------------------------

def test_returning_visitor_rate():
    sessions = [session(fingerprint_hash=h) for h in ["A", "A", "B", "C", "C"]] + [session()]
    result = returning_visitors(sessions)
    assert result.unique_fingerprints == 3
    assert result.returning_fingerprints == 2
    assert result.returning_pct == 67


def test_overview_counts_derived_statuses():
    sessions = [
        session(status=SessionStatus.active),
        session(status=SessionStatus.abandoned),
        session(status=SessionStatus.abandoned),
        session(completed=True),
    ]
    report = overview_report(sessions)
    assert (report.active, report.abandoned, report.completed) == (1, 2, 1)
    assert report.completion_rate_pct == 25.0


@pytest.mark.parametrize(
    "idle, completed, expected",
    [
        (timedelta(minutes=5), False, SessionStatus.active),
        (timedelta(minutes=30), False, SessionStatus.active),
        (timedelta(minutes=30, seconds=1), False, SessionStatus.abandoned),
        (timedelta(days=3), True, SessionStatus.completed),
    ],
)
def test_derive_status_idle_boundary(idle, completed, expected):
    assert derive_status(completed, NOW - idle, now=NOW) == expected


def test_derive_status_accepts_naive_timestamps():
    naive = (NOW - timedelta(hours=1)).replace(tzinfo=None)
    assert derive_status(False, naive, now=NOW) == SessionStatus.abandoned


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

def test_network_groups_geo_and_detects_shared_ips():
    berlin = GeoLocation(country="Germany", city="Berlin", region="Berlin", isp="Telekom", timezone="Europe/Berlin")
    paris = GeoLocation(country="France", city="Paris", isp="Orange")
    sessions = [
        session(ip_address="198.51.100.1", ip_geo=berlin),
        session(ip_address="198.51.100.1", ip_geo=berlin),
        session(ip_address="198.51.100.2", ip_geo=paris),
        session(ip_address="198.51.100.3"),
        session(),
    ]
    report = network_report(sessions)
    assert report.geolocated_sessions == 3
    assert [(r.name, r.count) for r in report.countries] == [("Germany", 2), ("France", 1)]
    assert report.cities[0].name == "Berlin, Germany"
    assert [(r.name, r.count) for r in report.shared_ips] == [("198.51.100.1", 2)]
    assert report.orgs == []


# ---------------------------------------------------------------------------
# Classification / intelligence
# ---------------------------------------------------------------------------

def test_industry_most_distinct_keyword_hits_wins():
    descriptions = ["website redesign", "logo design"]
    scores = industry_scores(descriptions)
    assert scores["design"] == 2
    assert scores["technology"] == 1
    assert detect_industry(descriptions) == "design"


def test_industry_tie_goes_to_first_table_entry():
    assert detect_industry(["logo", "website"]) == "design"


def test_industry_without_hits_is_unclassified():
    assert detect_industry(["misc item", ""]) == "unclassified"
    assert detect_industry([]) == "unclassified"


@pytest.mark.parametrize(
    "total, bucket",
    [
        (Decimal("999.99"), "<1k"),
        (Decimal("1000.00"), "1k-5k"),
        (Decimal("4999.99"), "1k-5k"),
        (Decimal("5000"), "5k-25k"),
        (Decimal("99999.99"), "25k-100k"),
        (Decimal("100000.00"), "100k+"),
        (None, "unknown"),
    ],
)
def test_revenue_buckets_are_half_open(total, bucket):
    assert revenue_range(total) == bucket


def test_revenue_distribution_in_bucket_order():
    docs = [document(t) for t in (150000, 50, 2000, 60)]
    assert [(r.name, r.count) for r in revenue_distribution(docs)] == [("<1k", 2), ("1k-5k", 1), ("100k+", 1)]


def test_email_domain_classification():
    assert email_domain("Billing@Acme.Test") == "acme.test"
    assert email_domain("not-an-email") is None
    assert email_domain(None) is None
    assert is_free_email_domain("gmail.com") is True
    assert is_free_email_domain("acme.test") is False


def test_relationships_need_more_than_one_document():
    docs = [
        document(100, sender="Acme", recipient="Globex"),
        document(200, sender="Acme", recipient="Globex"),
        document(300, sender="Acme", recipient="Initech"),
        document(400, sender=None, recipient="Globex"),
    ]
    assert [(r.name, r.count) for r in relationships(docs)] == [("Acme → Globex", 2)]


def test_intelligence_report():
    docs = [
        document(1200, ["logo design", "branding package"], sender="Studio", email="hi@studio.test",
                 currency="EUR", country="DE"),
        document(80, ["hosting", "cloud server"], sender="Studio", email="me@gmail.com",
                 currency="EUR", country="FR"),
        document(30, ["misc"], currency="EUR", country="DE"),
    ]
    sessions = [session(fingerprint_hash="A"), session(fingerprint_hash="A")]
    report = intelligence_report(docs, sessions)

    assert report.documents_total == 3
    assert {i.name for i in report.industries} == {"design", "technology", "unclassified"}
    assert report.detected_industries == 2
    assert (report.corporate_senders, report.free_email_senders) == (1, 1)
    assert report.currency_country[0].currency == "EUR"
    assert report.currency_country[0].top_country == "DE"
    assert report.currency_country[0].top_country_count == 2
    assert [(r.name, r.count) for r in report.repeat_senders] == [("Studio", 2)]
    assert report.returning_visitors.returning_pct == 100
