"""
Ingestion API HTTP routes — POST   /api/sessions
                              PUT    /api/sessions
                              POST   /api/sessions/log
                              POST   /api/sessions/beacon
                              DELETE /api/sessions/{session_id}

Writes only. Every request body is validated by Pydantic before any side
effect; unknown session ids are rejected with 404 (no orphan field-log rows).
Geolocation is best-effort and never fails a create.
"""
from __future__ import annotations

import json
import logging
from typing import Optional

import pydantic
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from formtrack.auth import require_admin
from formtrack.database import get_db
from formtrack.exceptions import NotFound
from formtrack.ingestion.geolocation import GeoLocator
from formtrack.ingestion.schemas import (
    CreateSessionRequest,
    CreateSessionResponse,
    FieldLogBatch,
    SessionUpdate,
)
from formtrack.store import (
    append_field_logs,
    create_session,
    delete_session,
    update_session,
)

router = APIRouter(prefix="/api/sessions", tags=["ingestion"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dependencies / helpers
# ---------------------------------------------------------------------------

def get_geo_locator(request: Request) -> GeoLocator:
    """GeoLocator bound to the app-wide Redis pool and HTTP client (either may be absent)."""
    state = request.app.state
    return GeoLocator(
        http_client=getattr(state, "http", None),
        redis_client=getattr(state, "redis", None),
    )


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("", status_code=201, response_model=CreateSessionResponse)
async def create_form_session(
    request: Request,
    body: CreateSessionRequest,
    db: AsyncSession = Depends(get_db),
    geo_locator: GeoLocator = Depends(get_geo_locator),
) -> CreateSessionResponse:
    """
    Create a session on the visitor's first form interaction.

    Enriches with the server-observed IP and a geolocation lookup (3s timeout,
    failure leaves geo fields empty) and flags returning fingerprints.
    """
    ip_address = client_ip(request)
    geo = await geo_locator.lookup_or_none(ip_address)
    record = await create_session(
        db,
        body,
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
        geo=geo,
    )
    return CreateSessionResponse(session_id=record.id, is_returning=record.is_returning)


@router.post("/log")
async def log_fields(
    body: FieldLogBatch,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Append one debounced batch of field values. All rows or none."""
    logged = await append_field_logs(db, body)
    return JSONResponse(status_code=200, content={"success": True, "logged": logged})


@router.put("")
async def update_form_session(
    body: SessionUpdate,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Partial update: form snapshot, behavioral snapshot (replace), completion, document link."""
    record = await update_session(db, body)
    return JSONResponse(
        status_code=200,
        content={"success": True, "completed": record.completed},
    )


@router.post("/beacon", status_code=204)
async def beacon(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Response:
    """
    Page-teardown delivery target.

    Beacons arrive as text/plain and nobody reads the response, so this always
    answers 204. A body with "fields" is a field-log batch; anything else is a
    session update (typically the final behavioral snapshot).
    """
    raw = await request.body()
    try:
        payload = json.loads(raw or b"{}")
        if isinstance(payload, dict) and "fields" in payload:
            await append_field_logs(db, FieldLogBatch.model_validate(payload))
        else:
            await update_session(db, SessionUpdate.model_validate(payload))
    except (ValueError, pydantic.ValidationError) as exc:
        logger.warning("Dropped malformed beacon: %s", type(exc).__name__)
    except NotFound as exc:
        logger.warning("Dropped beacon for unknown session: %s", exc.message)
    return Response(status_code=204)


@router.delete("/{session_id}", dependencies=[Depends(require_admin)])
async def delete_form_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Privileged: delete a session and cascade its field logs."""
    await delete_session(db, session_id)
    return JSONResponse(status_code=200, content={"success": True})
