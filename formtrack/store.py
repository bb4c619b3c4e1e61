"""
store.py — Data access facade for formtrack.

Provides a consistent, high-level API for persisting and retrieving sessions,
field logs and documents. Ingestion and analytics routes use these functions —
no route touches SQLAlchemy directly.

Design principles:
  - All functions are async and accept an AsyncSession parameter
  - No raw SQL: ORM-only queries
  - Logs only session_id / counts — never field values, IPs or fingerprints
  - Returns domain Pydantic objects (not ORM instances) so callers are persistence-agnostic
  - Uses flush() (not commit()) — the get_db() dependency owns the transaction

Write semantics:
  - field logs are append-only inserts
  - behavioral snapshots are replaced wholesale
  - last_activity_at never moves backwards
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pydantic
from sqlalchemy import delete, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from formtrack.analytics.schemas import DocumentRecord
from formtrack.config import settings
from formtrack.exceptions import NotFound
from formtrack.ingestion.schemas import (
    BehavioralSnapshot,
    CreateSessionRequest,
    FieldLogBatch,
    FieldLogRecord,
    GeoLocation,
    ReferralData,
    SessionRecord,
    SessionStatus,
    SessionUpdate,
)
from formtrack.models.document import DocumentORM
from formtrack.models.field_log import FieldLogORM
from formtrack.models.form_session import FormSessionORM

logger = logging.getLogger(__name__)

RECENT_FIELD_LOG_LIMIT = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Derived session state
# ---------------------------------------------------------------------------

def derive_status(
    completed: bool,
    last_activity_at: datetime,
    now: Optional[datetime] = None,
    idle_timeout: Optional[timedelta] = None,
) -> SessionStatus:
    """
    Classify a session at read time.

    completed wins; otherwise a session idle longer than the timeout is
    abandoned. Nothing is ever written back.
    """
    if completed:
        return SessionStatus.completed
    now = now or _utcnow()
    idle_timeout = idle_timeout or timedelta(minutes=settings.session_idle_timeout_minutes)
    if now - _as_utc(last_activity_at) > idle_timeout:
        return SessionStatus.abandoned
    return SessionStatus.active


def _validate_blob(model: type[pydantic.BaseModel], blob, session_id: str, column: str):
    if blob is None:
        return None
    try:
        return model.model_validate(blob)
    except pydantic.ValidationError:
        logger.warning("Ignoring unreadable %s blob session_id=%s", column, session_id)
        return None


def _to_record(orm: FormSessionORM, now: Optional[datetime] = None) -> SessionRecord:
    return SessionRecord(
        id=orm.id,
        document_type=orm.document_type,
        device_info=orm.device_info,
        user_agent=orm.user_agent,
        referral_source=orm.referral_source,
        page_url=orm.page_url,
        referral=_validate_blob(ReferralData, orm.referral, orm.id, "referral"),
        ip_address=orm.ip_address,
        ip_country=orm.ip_country,
        ip_geo=_validate_blob(GeoLocation, orm.ip_geo, orm.id, "ip_geo"),
        fingerprint_hash=orm.fingerprint_hash,
        is_returning=orm.is_returning,
        started_at=_as_utc(orm.started_at),
        last_activity_at=_as_utc(orm.last_activity_at),
        completed=orm.completed,
        completed_at=_as_utc(orm.completed_at),
        document_id=orm.document_id,
        form_snapshot=orm.form_snapshot,
        behavioral=_validate_blob(BehavioralSnapshot, orm.behavioral, orm.id, "behavioral"),
        status=derive_status(orm.completed, orm.last_activity_at, now),
    )


async def _get_session_orm(db: AsyncSession, session_id: str) -> FormSessionORM:
    result = await db.execute(
        select(FormSessionORM).where(FormSessionORM.id == session_id)
    )
    orm = result.scalar_one_or_none()
    if orm is None:
        raise NotFound(f"Session '{session_id}' not found")
    return orm


def _touch(orm: FormSessionORM, now: datetime) -> None:
    previous = _as_utc(orm.last_activity_at)
    orm.last_activity_at = now if previous is None else max(previous, now)


# ---------------------------------------------------------------------------
# Session operations
# ---------------------------------------------------------------------------

async def fingerprint_seen(db: AsyncSession, fingerprint_hash: Optional[str]) -> bool:
    """True when any stored session already carries this fingerprint hash."""
    if not fingerprint_hash:
        return False
    result = await db.execute(
        select(exists().where(FormSessionORM.fingerprint_hash == fingerprint_hash))
    )
    return bool(result.scalar())


async def create_session(
    db: AsyncSession,
    request: CreateSessionRequest,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    geo: Optional[GeoLocation] = None,
) -> SessionRecord:
    """
    Persist a new form session.

    is_returning uses first-seen semantics: the first session for a
    fingerprint hash is not returning, every later one is.
    """
    is_returning = await fingerprint_seen(db, request.fingerprint_hash)
    now = _utcnow()

    orm = FormSessionORM(
        id=str(uuid.uuid4()),
        document_type=request.document_type,
        device_info=request.device_info.model_dump(mode="json") if request.device_info else None,
        user_agent=user_agent,
        referral_source=request.referral_source,
        page_url=request.page_url,
        referral=request.referral.model_dump(mode="json") if request.referral else None,
        ip_address=ip_address,
        ip_country=geo.country_code if geo else None,
        ip_geo=geo.model_dump(mode="json") if geo else None,
        fingerprint=request.fingerprint.model_dump(mode="json") if request.fingerprint else None,
        fingerprint_hash=request.fingerprint_hash,
        is_returning=is_returning,
        started_at=now,
        last_activity_at=now,
        completed=False,
    )
    db.add(orm)
    await db.flush()
    logger.info(
        "Created session session_id=%s returning=%s geolocated=%s",
        orm.id,
        is_returning,
        geo is not None,
    )
    return _to_record(orm, now)


async def append_field_logs(db: AsyncSession, batch: FieldLogBatch) -> int:
    """
    Insert every field change in the batch as a new row, then bump
    last_activity_at. Unknown session ids raise NotFound and insert nothing.

    logged_at is the client time of the change when the batch carries one;
    sequence keeps the in-batch order for changes that share a timestamp.
    """
    orm = await _get_session_orm(db, batch.session_id)
    now = _utcnow()
    db.add_all(
        FieldLogORM(
            id=str(uuid.uuid4()),
            session_id=batch.session_id,
            field_name=change.field_name,
            field_value=change.field_value,
            logged_at=change.logged_at or now,
            received_at=now,
            sequence=position,
        )
        for position, change in enumerate(batch.fields)
    )
    _touch(orm, now)
    await db.flush()
    logger.info("Logged fields session_id=%s count=%d", batch.session_id, len(batch.fields))
    return len(batch.fields)


async def update_session(db: AsyncSession, update: SessionUpdate) -> SessionRecord:
    """
    Apply a partial update. Only fields the caller actually sent are touched.

    completed=True stamps completed_at once; a later completion keeps the
    first timestamp. A behavioral payload replaces the stored snapshot.
    """
    orm = await _get_session_orm(db, update.session_id)
    now = _utcnow()
    provided = update.model_fields_set

    if "document_type" in provided and update.document_type:
        orm.document_type = update.document_type
    if "form_snapshot" in provided and update.form_snapshot is not None:
        orm.form_snapshot = update.form_snapshot
    if "document_id" in provided and update.document_id:
        orm.document_id = update.document_id
    if "behavioral" in provided and update.behavioral is not None:
        snapshot = update.behavioral.model_dump(mode="json")
        orm.behavioral = snapshot
        orm.mouse_heatmap = snapshot["mouse_heatmap"]
        orm.click_map = snapshot["click_map"]
    if update.completed and not orm.completed:
        orm.completed = True
        orm.completed_at = max(now, _as_utc(orm.started_at))

    _touch(orm, now)
    await db.flush()
    logger.info(
        "Updated session session_id=%s fields=%s",
        update.session_id,
        ",".join(sorted(provided - {"session_id"})),
    )
    return _to_record(orm, now)


async def delete_session(db: AsyncSession, session_id: str) -> None:
    """Delete a session and its field logs. Authorization is the caller's job."""
    orm = await _get_session_orm(db, session_id)
    result = await db.execute(
        delete(FieldLogORM).where(FieldLogORM.session_id == session_id)
    )
    await db.delete(orm)
    await db.flush()
    logger.info("Deleted session session_id=%s field_logs=%d", session_id, result.rowcount or 0)


async def get_session(db: AsyncSession, session_id: str) -> SessionRecord:
    return _to_record(await _get_session_orm(db, session_id))


async def get_field_logs(
    db: AsyncSession,
    session_id: str,
    limit: Optional[int] = None,
) -> list[FieldLogRecord]:
    """Field logs for a session, newest change first regardless of arrival order."""
    stmt = (
        select(FieldLogORM)
        .where(FieldLogORM.session_id == session_id)
        .order_by(FieldLogORM.logged_at.desc(), FieldLogORM.sequence.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    rows = (await db.execute(stmt)).scalars().all()
    return [
        FieldLogRecord(
            field_name=row.field_name,
            field_value=row.field_value,
            logged_at=_as_utc(row.logged_at),
            received_at=_as_utc(row.received_at),
        )
        for row in rows
    ]


# ---------------------------------------------------------------------------
# Read surface for the Aggregation Engine
# ---------------------------------------------------------------------------

def _status_clause(status: Optional[SessionStatus], now: datetime):
    cutoff = now - timedelta(minutes=settings.session_idle_timeout_minutes)
    if status == SessionStatus.completed:
        return [FormSessionORM.completed.is_(True)]
    if status == SessionStatus.abandoned:
        return [FormSessionORM.completed.is_(False), FormSessionORM.last_activity_at < cutoff]
    if status == SessionStatus.active:
        return [FormSessionORM.completed.is_(False), FormSessionORM.last_activity_at >= cutoff]
    return []


async def list_sessions(
    db: AsyncSession,
    status: Optional[SessionStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[SessionRecord], int]:
    """
    Page through sessions newest first, optionally filtered by derived status.
    Each record carries its total field-log count and the most recent logs.
    """
    now = _utcnow()
    clauses = _status_clause(status, now)

    total = (
        await db.execute(select(func.count()).select_from(FormSessionORM).where(*clauses))
    ).scalar_one()

    rows = (
        await db.execute(
            select(FormSessionORM)
            .where(*clauses)
            .order_by(FormSessionORM.started_at.desc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()

    ids = [row.id for row in rows]
    counts: dict[str, int] = {}
    if ids:
        count_rows = await db.execute(
            select(FieldLogORM.session_id, func.count())
            .where(FieldLogORM.session_id.in_(ids))
            .group_by(FieldLogORM.session_id)
        )
        counts = {session_id: n for session_id, n in count_rows.all()}

    records = []
    for row in rows:
        record = _to_record(row, now)
        record.field_log_count = counts.get(row.id, 0)
        record.recent_field_logs = await get_field_logs(db, row.id, RECENT_FIELD_LOG_LIMIT)
        records.append(record)
    return records, total


async def load_sessions(db: AsyncSession) -> list[SessionRecord]:
    """The full session corpus, as read by the aggregation jobs."""
    now = _utcnow()
    rows = (await db.execute(select(FormSessionORM))).scalars().all()
    return [_to_record(row, now) for row in rows]


async def load_documents(db: AsyncSession) -> list[DocumentRecord]:
    """The full document corpus. Rows that fail validation are skipped."""
    rows = (await db.execute(select(DocumentORM))).scalars().all()
    documents = []
    for row in rows:
        try:
            documents.append(
                DocumentRecord(
                    id=row.id,
                    type=row.type,
                    currency=row.currency,
                    grand_total=row.grand_total,
                    ip_country=row.ip_country,
                    sender_info=row.sender_info,
                    recipient_info=row.recipient_info,
                    line_items=row.line_items or [],
                    created_at=_as_utc(row.created_at),
                )
            )
        except pydantic.ValidationError:
            logger.warning("Skipping unreadable document document_id=%s", row.id)
    return documents
