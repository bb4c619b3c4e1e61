"""
aggregation.py — Aggregation Engine: cross-session statistics.

Every function here is a pure read + reduce over already-loaded
SessionRecord / DocumentRecord lists. Nothing mutates its input, nothing is
cached between calls; routes reload the corpus and recompute per request.

Missing optional data (no behavioral snapshot, no geolocation, no sender
name, ...) excludes that record from the affected aggregate only.
"""
from __future__ import annotations

import math
from collections import Counter, defaultdict
from typing import Iterable, Optional, Sequence

from formtrack.analytics.classification import (
    REVENUE_ORDER,
    UNCLASSIFIED,
    detect_industry,
    email_domain,
    is_free_email_domain,
    revenue_range,
)
from formtrack.analytics.schemas import (
    BehavioralReport,
    CurrencyCountry,
    DocumentRecord,
    DurationStats,
    FieldTimingStat,
    IndustryStat,
    IntelligenceReport,
    NetworkReport,
    OverviewReport,
    RankedCount,
    ReturningVisitors,
)
from formtrack.ingestion.schemas import SessionRecord, SessionStatus

FIELD_TIMING_TOP_N = 20
DROP_OFF_TOP_N = 10
HISTOGRAM_TOP_N = 10
NETWORK_TOP_N = 15
INTELLIGENCE_TOP_N = 15
CURRENCY_TOP_N = 10


def _round(value: float) -> int:
    """Half-up rounding (Python's round() is banker's rounding)."""
    return int(math.floor(value + 0.5))


def _mean(values: Sequence[float]) -> Optional[int]:
    return _round(sum(values) / len(values)) if values else None


def rank(counter: Counter, top_n: Optional[int] = None, min_count: int = 1) -> list[RankedCount]:
    """Descending by count; ties keep first-seen order."""
    return [
        RankedCount(name=name, count=count)
        for name, count in counter.most_common(top_n)
        if count >= min_count
    ]


def _with_behavioral(sessions: Iterable[SessionRecord]) -> list[SessionRecord]:
    return [s for s in sessions if s.behavioral is not None]


# ---------------------------------------------------------------------------
# Behavioral aggregates
# ---------------------------------------------------------------------------

def field_timing_stats(
    sessions: Iterable[SessionRecord],
    top_n: int = FIELD_TIMING_TOP_N,
) -> list[FieldTimingStat]:
    """
    Mean focus duration per field across every snapshot.

    Durations <= 0 are invalid measurements and are dropped, not averaged in
    as zero. Ranked by mean descending, truncated to top_n.
    """
    durations: dict[str, list[int]] = defaultdict(list)
    for session in _with_behavioral(sessions):
        for timing in session.behavioral.field_timings:
            if timing.duration > 0:
                durations[timing.field_name].append(timing.duration)

    stats = [
        FieldTimingStat(field=field, avg=_mean(values), count=len(values))
        for field, values in durations.items()
    ]
    stats.sort(key=lambda s: s.avg, reverse=True)
    return stats[:top_n]


def drop_off_fields(
    sessions: Iterable[SessionRecord],
    top_n: int = DROP_OFF_TOP_N,
) -> list[RankedCount]:
    """Histogram of the last visited field of every session that did not complete."""
    last_fields: Counter = Counter()
    for session in _with_behavioral(sessions):
        if session.completed:
            continue
        order = session.behavioral.field_order
        if order:
            last_fields[order[-1]] += 1
    return rank(last_fields, top_n)


def edit_count_histogram(sessions: Iterable[SessionRecord]) -> Counter:
    edits: Counter = Counter()
    for session in _with_behavioral(sessions):
        for field, count in session.behavioral.edit_counts.items():
            edits[field] += count
    return edits


def paste_histogram(sessions: Iterable[SessionRecord]) -> Counter:
    pastes: Counter = Counter()
    for session in _with_behavioral(sessions):
        pastes.update(session.behavioral.paste_events)
    return pastes


def duration_stats(sessions: Iterable[SessionRecord]) -> DurationStats:
    """
    Mean session duration from the snapshot's recorded duration (not from
    timestamps). Only positive durations contribute.
    """
    overall: list[int] = []
    completed: list[int] = []
    not_completed: list[int] = []
    for session in _with_behavioral(sessions):
        duration = session.behavioral.duration
        if duration <= 0:
            continue
        overall.append(duration)
        (completed if session.completed else not_completed).append(duration)
    return DurationStats(
        overall_ms=_mean(overall),
        completed_ms=_mean(completed),
        not_completed_ms=_mean(not_completed),
        sample_count=len(overall),
    )


def behavioral_report(sessions: Sequence[SessionRecord]) -> BehavioralReport:
    with_behavioral = _with_behavioral(sessions)
    edits = edit_count_histogram(with_behavioral)
    pastes = paste_histogram(with_behavioral)
    scroll_depths = [s.behavioral.scroll_depth for s in with_behavioral]

    return BehavioralReport(
        sessions_total=len(sessions),
        sessions_with_behavioral=len(with_behavioral),
        avg_field_times=field_timing_stats(with_behavioral),
        drop_off_fields=drop_off_fields(with_behavioral),
        top_edited_fields=rank(edits, HISTOGRAM_TOP_N),
        top_pasted_fields=rank(pastes, HISTOGRAM_TOP_N),
        total_paste_events=sum(pastes.values()),
        total_type_events=sum(edits.values()),
        total_rage_clicks=sum(s.behavioral.rage_clicks for s in with_behavioral),
        total_tab_switches=sum(s.behavioral.tab_switches for s in with_behavioral),
        avg_scroll_depth=_mean(scroll_depths) or 0,
        durations=duration_stats(with_behavioral),
    )


# ---------------------------------------------------------------------------
# Visitor identity
# ---------------------------------------------------------------------------

def returning_visitors(sessions: Iterable[SessionRecord]) -> ReturningVisitors:
    """
    Single pass: a hash goes into `returning` on its second sighting.
    Sessions without a fingerprint hash are skipped.
    """
    seen: set[str] = set()
    returning: set[str] = set()
    for session in sessions:
        fingerprint = session.fingerprint_hash
        if not fingerprint:
            continue
        if fingerprint in seen:
            returning.add(fingerprint)
        seen.add(fingerprint)

    pct = _round(len(returning) / len(seen) * 100) if seen else 0
    return ReturningVisitors(
        unique_fingerprints=len(seen),
        returning_fingerprints=len(returning),
        returning_pct=pct,
    )


# ---------------------------------------------------------------------------
# Business intelligence (documents)
# ---------------------------------------------------------------------------

def classify_document(document: DocumentRecord) -> tuple[str, str]:
    """(industry, revenue range) for one document."""
    industry = detect_industry(item.description for item in document.line_items)
    return industry, revenue_range(document.grand_total)


def industry_breakdown(documents: Iterable[DocumentRecord]) -> list[IndustryStat]:
    totals: dict[str, list[float]] = defaultdict(list)
    for document in documents:
        industry, _ = classify_document(document)
        totals[industry].append(float(document.grand_total))
    stats = [
        IndustryStat(
            name=name,
            count=len(values),
            total_revenue=round(sum(values), 2),
            avg_revenue=round(sum(values) / len(values), 2),
        )
        for name, values in totals.items()
    ]
    stats.sort(key=lambda s: s.count, reverse=True)
    return stats


def revenue_distribution(documents: Iterable[DocumentRecord]) -> list[RankedCount]:
    """Bucket counts in fixed bucket order; empty buckets omitted."""
    counts = Counter(revenue_range(d.grand_total) for d in documents)
    return [RankedCount(name=label, count=counts[label]) for label in REVENUE_ORDER if counts[label]]


def sender_domains(documents: Iterable[DocumentRecord]) -> tuple[list[RankedCount], int, int]:
    """(top sender email domains, corporate sender count, free-mail sender count)."""
    domains: Counter = Counter()
    corporate = free = 0
    for document in documents:
        domain = email_domain(document.sender_info.email if document.sender_info else None)
        if domain is None:
            continue
        domains[domain] += 1
        if is_free_email_domain(domain):
            free += 1
        else:
            corporate += 1
    return rank(domains, INTELLIGENCE_TOP_N), corporate, free


def currency_country(documents: Iterable[DocumentRecord]) -> list[CurrencyCountry]:
    by_currency: dict[str, Counter] = defaultdict(Counter)
    for document in documents:
        if not document.ip_country:
            continue
        by_currency[document.currency][document.ip_country] += 1

    rows = []
    for currency, countries in by_currency.items():
        top_country, top_count = countries.most_common(1)[0]
        rows.append(
            CurrencyCountry(
                currency=currency,
                top_country=top_country,
                top_country_count=top_count,
                total=sum(countries.values()),
            )
        )
    rows.sort(key=lambda r: r.total, reverse=True)
    return rows[:CURRENCY_TOP_N]


def relationships(documents: Iterable[DocumentRecord]) -> list[RankedCount]:
    """Sender → recipient business pairs that occur more than once."""
    pairs: Counter = Counter()
    for document in documents:
        sender = document.sender_info.business_name if document.sender_info else None
        recipient = document.recipient_info.business_name if document.recipient_info else None
        if sender and recipient:
            pairs[f"{sender} → {recipient}"] += 1
    return rank(pairs, INTELLIGENCE_TOP_N, min_count=2)


def repeat_senders(documents: Iterable[DocumentRecord]) -> list[RankedCount]:
    senders: Counter = Counter(
        d.sender_info.business_name
        for d in documents
        if d.sender_info and d.sender_info.business_name
    )
    return rank(senders, INTELLIGENCE_TOP_N, min_count=2)


def intelligence_report(
    documents: Sequence[DocumentRecord],
    sessions: Sequence[SessionRecord],
) -> IntelligenceReport:
    domains, corporate, free = sender_domains(documents)
    industries = industry_breakdown(documents)
    return IntelligenceReport(
        documents_total=len(documents),
        industries=industries,
        detected_industries=sum(1 for i in industries if i.name != UNCLASSIFIED),
        revenue_ranges=revenue_distribution(documents),
        top_sender_domains=domains,
        corporate_senders=corporate,
        free_email_senders=free,
        currency_country=currency_country(documents),
        relationships=relationships(documents),
        repeat_senders=repeat_senders(documents),
        returning_visitors=returning_visitors(sessions),
    )


# ---------------------------------------------------------------------------
# Network / geo
# ---------------------------------------------------------------------------

def network_report(sessions: Sequence[SessionRecord], top_n: int = NETWORK_TOP_N) -> NetworkReport:
    countries: Counter = Counter()
    cities: Counter = Counter()
    regions: Counter = Counter()
    isps: Counter = Counter()
    orgs: Counter = Counter()
    timezones: Counter = Counter()
    ips: Counter = Counter()
    geolocated = 0

    for session in sessions:
        if session.ip_address:
            ips[session.ip_address] += 1
        geo = session.ip_geo
        if geo is None:
            continue
        geolocated += 1
        if geo.country:
            countries[geo.country] += 1
        if geo.city:
            cities[f"{geo.city}, {geo.country}" if geo.country else geo.city] += 1
        if geo.region:
            regions[f"{geo.region}, {geo.country}" if geo.country else geo.region] += 1
        if geo.isp:
            isps[geo.isp] += 1
        if geo.org:
            orgs[geo.org] += 1
        if geo.timezone:
            timezones[geo.timezone] += 1

    return NetworkReport(
        geolocated_sessions=geolocated,
        countries=rank(countries, top_n),
        cities=rank(cities, top_n),
        regions=rank(regions, top_n),
        isps=rank(isps, top_n),
        orgs=rank(orgs, top_n),
        timezones=rank(timezones, top_n),
        # more than one session from one address: candidate "same office"
        shared_ips=rank(ips, top_n, min_count=2),
    )


# ---------------------------------------------------------------------------
# Funnel overview
# ---------------------------------------------------------------------------

def overview_report(sessions: Sequence[SessionRecord]) -> OverviewReport:
    statuses = Counter(s.status for s in sessions)
    total = len(sessions)
    completed = statuses[SessionStatus.completed]
    return OverviewReport(
        sessions_total=total,
        active=statuses[SessionStatus.active],
        abandoned=statuses[SessionStatus.abandoned],
        completed=completed,
        completion_rate_pct=round(completed / total * 100, 1) if total else 0.0,
        returning_sessions=sum(1 for s in sessions if s.is_returning),
    )
