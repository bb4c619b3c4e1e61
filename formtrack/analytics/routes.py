"""
Aggregation read surface — GET /api/admin/sessions
                                GET /api/admin/analytics/overview
                                GET /api/admin/analytics/behavioral
                                GET /api/admin/analytics/intelligence
                                GET /api/admin/analytics/network

All endpoints are privileged (they expose per-session detail or aggregates of
it) and side-effect free. Reports are recomputed from the full corpus on every
request — there is no materialized aggregate store.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from formtrack.analytics.aggregation import (
    behavioral_report,
    intelligence_report,
    network_report,
    overview_report,
)
from formtrack.analytics.schemas import (
    BehavioralReport,
    IntelligenceReport,
    NetworkReport,
    OverviewReport,
    SessionPage,
)
from formtrack.auth import require_admin
from formtrack.database import get_db
from formtrack.ingestion.schemas import SessionStatus
from formtrack.store import list_sessions, load_documents, load_sessions

router = APIRouter(prefix="/api/admin", tags=["analytics"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.get("/sessions", response_model=SessionPage)
async def get_sessions(
    filter: Optional[SessionStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> SessionPage:
    """Sessions newest first, filterable by derived status, with recent field logs."""
    records, total = await list_sessions(db, status=filter, limit=limit, offset=offset)
    logger.info("Listed sessions filter=%s returned=%d total=%d", filter, len(records), total)
    return SessionPage(data=records, total=total, limit=limit, offset=offset)


@router.get("/analytics/overview", response_model=OverviewReport)
async def get_overview(db: AsyncSession = Depends(get_db)) -> OverviewReport:
    return overview_report(await load_sessions(db))


@router.get("/analytics/behavioral", response_model=BehavioralReport)
async def get_behavioral(db: AsyncSession = Depends(get_db)) -> BehavioralReport:
    """Field timings, drop-off, edit/paste histograms, durations."""
    sessions = await load_sessions(db)
    report = behavioral_report(sessions)
    logger.info(
        "Behavioral report sessions=%d with_snapshot=%d",
        report.sessions_total,
        report.sessions_with_behavioral,
    )
    return report


@router.get("/analytics/intelligence", response_model=IntelligenceReport)
async def get_intelligence(db: AsyncSession = Depends(get_db)) -> IntelligenceReport:
    """Industry, revenue, sender domains, relationships, returning visitors."""
    documents = await load_documents(db)
    sessions = await load_sessions(db)
    report = intelligence_report(documents, sessions)
    logger.info("Intelligence report documents=%d sessions=%d", len(documents), len(sessions))
    return report


@router.get("/analytics/network", response_model=NetworkReport)
async def get_network(db: AsyncSession = Depends(get_db)) -> NetworkReport:
    """Geo / ISP grouping and shared-IP detection."""
    return network_report(await load_sessions(db))
