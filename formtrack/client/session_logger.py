"""
session_logger.py — Session Logger.

Owns the session lifecycle on the client:

  uninitialized --ensure_session--> creating --ok--> active --complete_session--> completed
                                        |                 \
                                        +--failure--> uninitialized   teardown / aclose

Field changes are queued and flushed after a trailing debounce; the
behavioral snapshot is pushed on a fixed interval once the session exists.
Nothing here raises to the caller: delivery failures of any kind are logged
and the form keeps working without analytics.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from formtrack.client.fingerprint import (
    ClientEnvironment,
    collect_device_info,
    collect_fingerprint,
    collect_referral_data,
    generate_fingerprint_hash,
)
from formtrack.client.tracker import BehavioralTracker
from formtrack.client.transport import BEACON_PATH, BestEffortSender, SessionTransport
from formtrack.config import settings
from formtrack.exceptions import TransientDeliveryFailure
from formtrack.ingestion.schemas import (
    CreateSessionRequest,
    FieldChange,
    FieldLogBatch,
    SessionUpdate,
)

logger = logging.getLogger(__name__)


class SessionLogger:
    def __init__(
        self,
        transport: SessionTransport,
        tracker: BehavioralTracker,
        env: ClientEnvironment,
        sender: BestEffortSender,
        debounce_seconds: Optional[float] = None,
        snapshot_interval_seconds: Optional[float] = None,
    ):
        self._transport = transport
        self._tracker = tracker
        self._env = env
        self._sender = sender
        self._debounce = (
            debounce_seconds if debounce_seconds is not None
            else settings.field_flush_debounce_seconds
        )
        self._snapshot_interval = (
            snapshot_interval_seconds if snapshot_interval_seconds is not None
            else settings.snapshot_interval_seconds
        )

        self._session_id: Optional[str] = None
        self._is_returning = False
        self._completed = False
        self._closed = False
        self._creating: Optional[asyncio.Future] = None

        self._pending: list[FieldChange] = []
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._snapshot_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

        self._flush_lock = asyncio.Lock()
        self._snapshot_lock = asyncio.Lock()

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def is_returning(self) -> bool:
        return self._is_returning

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -----------------------------------------------------------------------
    # Session creation
    # -----------------------------------------------------------------------

    async def ensure_session(self, document_type: Optional[str] = None) -> Optional[str]:
        """
        Return the session id, creating the session on first call.

        Concurrent callers share one in-flight creation. On failure the
        logger returns to uninitialized and None is returned, so a later
        call retries.
        """
        if self._session_id is not None or self._closed:
            return self._session_id
        if self._creating is None:
            self._creating = asyncio.ensure_future(self._create(document_type))
        return await asyncio.shield(self._creating)

    def _build_create_request(self, document_type: Optional[str]) -> CreateSessionRequest:
        fingerprint = collect_fingerprint(self._env)
        return CreateSessionRequest(
            document_type=document_type,
            device_info=collect_device_info(self._env),
            referral_source=self._env.referrer or None,
            page_url=self._env.location,
            referral=collect_referral_data(self._env),
            fingerprint=fingerprint,
            fingerprint_hash=generate_fingerprint_hash(fingerprint),
        )

    async def _create(self, document_type: Optional[str]) -> Optional[str]:
        try:
            response = await self._transport.create_session(self._build_create_request(document_type))
        except TransientDeliveryFailure as exc:
            logger.warning("Session creation failed: %s", exc.message)
            return None
        except Exception:
            logger.exception("Session creation failed unexpectedly")
            return None
        finally:
            self._creating = None

        self._session_id = response.session_id
        self._is_returning = response.is_returning
        logger.info(
            "Form session created: session_id=%s returning=%s",
            self._session_id, self._is_returning,
        )
        self._arm_snapshot_timer()
        # fields typed before the session existed are waiting in the queue
        if self._pending:
            self._schedule_flush()
        return self._session_id

    # -----------------------------------------------------------------------
    # Field logs
    # -----------------------------------------------------------------------

    def log_field(self, field_name: str, field_value: Any) -> None:
        """Queue a field change and restart the debounce window."""
        if self._closed:
            return
        self._pending.append(
            FieldChange(
                field_name=field_name,
                field_value=field_value,
                logged_at=datetime.now(timezone.utc),
            )
        )
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
        loop = asyncio.get_running_loop()
        self._flush_handle = loop.call_later(self._debounce, self._on_debounce_elapsed)

    def _on_debounce_elapsed(self) -> None:
        self._flush_handle = None
        self._spawn(self.flush_fields())

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def flush_fields(self) -> int:
        """
        Send every queued field change as one batch.

        No-op without a session or with an empty queue. On delivery failure
        the batch goes back to the front of the queue, ahead of anything
        logged meanwhile. Returns the number of changes delivered.
        """
        async with self._flush_lock:
            if self._session_id is None or not self._pending:
                return 0
            batch, self._pending = self._pending, []
            try:
                await self._transport.append_field_logs(
                    FieldLogBatch(session_id=self._session_id, fields=batch)
                )
            except TransientDeliveryFailure as exc:
                self._pending[:0] = batch
                logger.warning(
                    "Field log flush failed: session_id=%s queued=%d: %s",
                    self._session_id, len(self._pending), exc.message,
                )
                return 0
            except Exception:
                self._pending[:0] = batch
                logger.exception(
                    "Field log flush failed unexpectedly: session_id=%s queued=%d",
                    self._session_id, len(self._pending),
                )
                return 0
            logger.debug("Flushed %d field changes: session_id=%s", len(batch), self._session_id)
            return len(batch)

    # -----------------------------------------------------------------------
    # Behavioral snapshots
    # -----------------------------------------------------------------------

    def _arm_snapshot_timer(self) -> None:
        if self._snapshot_task is None and self._snapshot_interval > 0:
            self._snapshot_task = asyncio.get_running_loop().create_task(self._snapshot_loop())

    async def _snapshot_loop(self) -> None:
        while True:
            await asyncio.sleep(self._snapshot_interval)
            await self.send_behavioral_snapshot()

    async def send_behavioral_snapshot(self) -> bool:
        """Push the tracker's current snapshot. No retry; the next one supersedes it."""
        async with self._snapshot_lock:
            if self._session_id is None or self._completed:
                return False
            update = SessionUpdate(
                session_id=self._session_id, behavioral=self._tracker.get_snapshot()
            )
            try:
                await self._transport.update_session(update)
            except TransientDeliveryFailure as exc:
                logger.warning(
                    "Behavioral snapshot not delivered: session_id=%s: %s",
                    self._session_id, exc.message,
                )
                return False
            except Exception:
                logger.exception(
                    "Behavioral snapshot not delivered: session_id=%s", self._session_id
                )
                return False
            return True

    # -----------------------------------------------------------------------
    # Session updates
    # -----------------------------------------------------------------------

    async def update_session(self, **patch: Any) -> bool:
        """Partial update; only the keyword arguments given are sent."""
        if self._session_id is None:
            return False
        try:
            update = SessionUpdate(session_id=self._session_id, **patch)
        except ValueError:
            logger.warning("Rejected session update fields: %s", sorted(patch))
            return False
        try:
            await self._transport.update_session(update)
        except TransientDeliveryFailure as exc:
            logger.warning("Session update failed: session_id=%s: %s", self._session_id, exc.message)
            return False
        except Exception:
            logger.exception("Session update failed unexpectedly: session_id=%s", self._session_id)
            return False
        return True

    async def complete_session(self, document_id: Optional[str] = None) -> bool:
        """Flush fields, then push the final snapshot, then mark completed. Strictly in that order."""
        if self._session_id is None:
            return False
        await self.flush_fields()
        await self.send_behavioral_snapshot()
        patch: dict[str, Any] = {"completed": True}
        if document_id is not None:
            patch["document_id"] = document_id
        ok = await self.update_session(**patch)
        if ok:
            self._completed = True
            self._cancel_snapshot_task()
            logger.info("Form session completed: session_id=%s", self._session_id)
        return ok

    # -----------------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------------

    def _cancel_snapshot_task(self) -> None:
        if self._snapshot_task is not None:
            self._snapshot_task.cancel()
            self._snapshot_task = None

    def _cancel_timers(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        self._cancel_snapshot_task()

    def teardown(self) -> None:
        """
        Page-unload path. Cancels timers and hands the remaining field logs
        plus a final snapshot to the best-effort sender. Delivery is not
        confirmed.
        """
        self._cancel_timers()
        if self._session_id is None:
            return
        if self._pending:
            batch = FieldLogBatch(session_id=self._session_id, fields=self._pending)
            self._pending = []
            self._sender.send(BEACON_PATH, batch.model_dump(mode="json"))
        if not self._completed:
            update = SessionUpdate(
                session_id=self._session_id, behavioral=self._tracker.get_snapshot()
            )
            self._sender.send(BEACON_PATH, update.to_payload())

    async def aclose(self) -> None:
        """Dispose of the logger: teardown, detach the tracker, cancel background work."""
        if self._closed:
            return
        self.teardown()
        self._closed = True
        self._tracker.destroy()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
