"""
Tests for formtrack/client/session_logger.py and formtrack/client/transport.py.

SessionLogger runs against an in-memory FakeTransport and a RecordingSender;
debounce windows are shrunk to milliseconds. The HTTP transport and the
detached beacon sender run against httpx.MockTransport.
"""
import asyncio
import json

import httpx
import pytest

from formtrack.client.events import EventHub
from formtrack.client.fingerprint import ClientEnvironment
from formtrack.client.session_logger import SessionLogger
from formtrack.client.tracker import BehavioralTracker
from formtrack.client.transport import BEACON_PATH, DetachedTaskSender, HttpSessionTransport
from formtrack.exceptions import TransientDeliveryFailure
from formtrack.ingestion.schemas import (
    CreateSessionRequest,
    CreateSessionResponse,
    FieldChange,
    FieldLogBatch,
    SessionUpdate,
)

DEBOUNCE = 0.01


class FakeTransport:
    def __init__(self):
        self.created = []
        self.batches = []
        self.updates = []
        self.calls = []
        self.fail_create = False
        self.fail_logs = 0
        self.create_gate = None

    async def create_session(self, request):
        self.calls.append("create")
        self.created.append(request)
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.fail_create:
            raise TransientDeliveryFailure("connection refused")
        return CreateSessionResponse(session_id="sess-1", is_returning=False)

    async def append_field_logs(self, batch):
        self.calls.append("log")
        if self.fail_logs:
            self.fail_logs -= 1
            raise TransientDeliveryFailure("connection reset")
        self.batches.append(batch)

    async def update_session(self, update):
        if update.completed:
            self.calls.append("complete")
        elif update.behavioral is not None:
            self.calls.append("snapshot")
        else:
            self.calls.append("update")
        self.updates.append(update)


class RecordingSender:
    def __init__(self):
        self.sent = []

    def send(self, endpoint, payload):
        self.sent.append((endpoint, payload))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def hub():
    return EventHub()


@pytest.fixture
def make_logger(transport, sender, hub):
    def _make(snapshot_interval_seconds=0):
        logger = SessionLogger(
            transport=transport,
            tracker=BehavioralTracker(hub),
            env=ClientEnvironment(
                location="https://invoices.example.com/create?utm_source=ads&utm_medium=cpc",
                referrer="https://www.google.com/",
            ),
            sender=sender,
            debounce_seconds=DEBOUNCE,
            snapshot_interval_seconds=snapshot_interval_seconds,
        )
        return logger

    return _make


# ---------------------------------------------------------------------------
# Session creation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_ensure_session_creates_once(make_logger, transport):
    logger = make_logger()
    transport.create_gate = asyncio.Event()

    tasks = [asyncio.create_task(logger.ensure_session("invoice")) for _ in range(3)]
    await asyncio.sleep(0)
    transport.create_gate.set()
    results = await asyncio.gather(*tasks)

    assert results == ["sess-1", "sess-1", "sess-1"]
    assert len(transport.created) == 1
    assert await logger.ensure_session() == "sess-1"
    assert len(transport.created) == 1
    await logger.aclose()


@pytest.mark.asyncio
async def test_create_request_carries_fingerprint_and_referral(make_logger, transport):
    logger = make_logger()
    await logger.ensure_session("receipt")

    request = transport.created[0]
    assert isinstance(request, CreateSessionRequest)
    assert request.document_type == "receipt"
    assert len(request.fingerprint_hash) == 64
    assert request.referral.traffic_source.value == "paid"
    assert request.referral_source == "https://www.google.com/"
    assert request.page_url.startswith("https://invoices.example.com/create")
    await logger.aclose()


@pytest.mark.asyncio
async def test_failed_creation_resets_and_can_retry(make_logger, transport):
    logger = make_logger()
    transport.fail_create = True
    assert await logger.ensure_session() is None
    assert logger.session_id is None

    transport.fail_create = False
    assert await logger.ensure_session() == "sess-1"
    assert len(transport.created) == 2
    await logger.aclose()


class BrokenTransport(FakeTransport):
    """Raises a non-delivery error from every call."""

    async def create_session(self, request):
        self.calls.append("create")
        raise OSError("network unreachable")

    async def append_field_logs(self, batch):
        self.calls.append("log")
        raise OSError("network unreachable")

    async def update_session(self, update):
        self.calls.append("update")
        raise OSError("network unreachable")


@pytest.mark.asyncio
async def test_unexpected_transport_errors_never_reach_the_caller(sender, hub):
    transport = BrokenTransport()
    logger = SessionLogger(
        transport=transport,
        tracker=BehavioralTracker(hub),
        env=ClientEnvironment(location="https://invoices.example.com/create"),
        sender=sender,
        debounce_seconds=DEBOUNCE,
        snapshot_interval_seconds=0,
    )
    assert await logger.ensure_session() is None
    assert logger.session_id is None

    # pretend creation succeeded earlier so the other paths run
    logger._session_id = "sess-1"
    logger.log_field("a", "1")
    logger.log_field("b", "2")
    assert await logger.flush_fields() == 0
    assert logger.pending_count == 2

    assert await logger.send_behavioral_snapshot() is False
    assert await logger.update_session(form_snapshot={"step": 1}) is False
    assert await logger.complete_session() is False
    assert logger.pending_count == 2

    await asyncio.sleep(DEBOUNCE * 3)    # debounced flush fails in the background
    assert logger.pending_count == 2
    await logger.aclose()


@pytest.mark.asyncio
async def test_field_changes_carry_client_timestamps_in_order(make_logger, transport):
    logger = make_logger()
    await logger.ensure_session()
    logger.log_field("a", "1")
    logger.log_field("b", "2")
    await logger.flush_fields()

    first, second = transport.batches[0].fields
    assert first.logged_at is not None
    assert first.logged_at.tzinfo is not None
    assert first.logged_at <= second.logged_at
    await logger.aclose()


# ---------------------------------------------------------------------------
# Field logs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rapid_changes_flush_as_one_ordered_batch(make_logger, transport):
    logger = make_logger()
    await logger.ensure_session()

    logger.log_field("sender_name", "Acme")
    logger.log_field("sender_email", "billing@acme.test")
    logger.log_field("grand_total", 1250)
    await asyncio.sleep(DEBOUNCE * 5)

    assert len(transport.batches) == 1
    batch = transport.batches[0]
    assert batch.session_id == "sess-1"
    assert [f.field_name for f in batch.fields] == ["sender_name", "sender_email", "grand_total"]
    assert batch.fields[2].field_value == "1250"
    assert logger.pending_count == 0
    await logger.aclose()


@pytest.mark.asyncio
async def test_flush_without_session_keeps_queue(make_logger, transport):
    logger = make_logger()
    logger.log_field("notes", "hello")
    assert await logger.flush_fields() == 0
    assert logger.pending_count == 1
    assert transport.batches == []
    await logger.aclose()


@pytest.mark.asyncio
async def test_fields_logged_before_session_flush_after_creation(make_logger, transport):
    logger = make_logger()
    logger.log_field("notes", "early")
    await asyncio.sleep(DEBOUNCE * 3)
    assert transport.batches == []

    await logger.ensure_session()
    await asyncio.sleep(DEBOUNCE * 5)
    assert [f.field_value for f in transport.batches[0].fields] == ["early"]
    await logger.aclose()


@pytest.mark.asyncio
async def test_failed_flush_requeues_at_front(make_logger, transport):
    logger = make_logger()
    await logger.ensure_session()

    logger.log_field("a", "1")
    transport.fail_logs = 1
    assert await logger.flush_fields() == 0
    assert logger.pending_count == 1

    logger.log_field("b", "2")
    assert await logger.flush_fields() == 2
    assert [f.field_name for f in transport.batches[0].fields] == ["a", "b"]
    await logger.aclose()


# ---------------------------------------------------------------------------
# Snapshots / completion
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_periodic_snapshot_after_session_exists(make_logger, transport):
    logger = make_logger(snapshot_interval_seconds=0.01)
    await asyncio.sleep(0.03)
    assert "snapshot" not in transport.calls

    await logger.ensure_session()
    await asyncio.sleep(0.05)
    assert "snapshot" in transport.calls
    assert transport.updates[0].behavioral.schema_version == 1
    await logger.aclose()


@pytest.mark.asyncio
async def test_complete_session_is_strictly_ordered(make_logger, transport):
    logger = make_logger()
    await logger.ensure_session()
    logger.log_field("grand_total", "99.00")

    assert await logger.complete_session(document_id="doc-42") is True
    assert transport.calls == ["create", "log", "snapshot", "complete"]

    final = transport.updates[-1]
    assert final.to_payload() == {"session_id": "sess-1", "completed": True, "document_id": "doc-42"}
    await logger.aclose()


@pytest.mark.asyncio
async def test_completion_stops_periodic_snapshots(make_logger, transport):
    logger = make_logger(snapshot_interval_seconds=0.01)
    await logger.ensure_session()
    assert await logger.complete_session(document_id="doc-1") is True
    calls_at_completion = len(transport.calls)

    await asyncio.sleep(0.06)
    assert len(transport.calls) == calls_at_completion
    assert transport.calls[-1] == "complete"
    assert await logger.send_behavioral_snapshot() is False
    await logger.aclose()


@pytest.mark.asyncio
async def test_update_before_session_is_dropped(make_logger, transport):
    logger = make_logger()
    assert await logger.update_session(form_snapshot={"step": 2}) is False
    assert await logger.complete_session() is False
    assert transport.calls == []
    await logger.aclose()


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_teardown_hands_pending_logs_and_snapshot_to_sender(make_logger, transport, sender):
    logger = make_logger()
    await logger.ensure_session()
    logger.log_field("recipient_name", "Globex")
    logger.log_field("recipient_email", "ap@globex.test")

    logger.teardown()
    await asyncio.sleep(DEBOUNCE * 3)

    assert transport.batches == []        # debounce cancelled
    assert logger.pending_count == 0
    (logs_endpoint, logs), (snap_endpoint, snap) = sender.sent
    assert logs_endpoint == snap_endpoint == BEACON_PATH
    assert [f["field_name"] for f in logs["fields"]] == ["recipient_name", "recipient_email"]
    assert snap["session_id"] == "sess-1"
    assert snap["behavioral"]["schema_version"] == 1
    await logger.aclose()


@pytest.mark.asyncio
async def test_teardown_without_session_sends_nothing(make_logger, sender):
    logger = make_logger()
    logger.log_field("notes", "x")
    logger.teardown()
    assert sender.sent == []
    await logger.aclose()


@pytest.mark.asyncio
async def test_aclose_detaches_tracker_and_is_idempotent(make_logger, hub):
    logger = make_logger()
    assert hub.listener_count() == 8
    await logger.aclose()
    await logger.aclose()
    assert hub.listener_count() == 0
    logger.log_field("ignored", "after close")
    assert logger.pending_count == 0


# ---------------------------------------------------------------------------
# HTTP transport
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_http_transport_create_and_partial_update():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, json.loads(request.content)))
        if request.method == "POST":
            return httpx.Response(201, json={"success": True, "session_id": "s-9", "is_returning": True})
        return httpx.Response(200, json={"success": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://api") as client:
        transport = HttpSessionTransport(client=client)
        response = await transport.create_session(CreateSessionRequest(document_type="invoice"))
        await transport.update_session(SessionUpdate(session_id="s-9", form_snapshot={"step": 3}))

    assert response.session_id == "s-9"
    assert response.is_returning is True
    assert seen[0][:2] == ("POST", "/api/sessions")
    assert seen[1] == ("PUT", "/api/sessions", {"session_id": "s-9", "form_snapshot": {"step": 3}})


@pytest.mark.asyncio
async def test_http_transport_wraps_failures():
    def server_error(request):
        return httpx.Response(503, json={"error": {"code": "UNAVAILABLE"}})

    def connection_refused(request):
        raise httpx.ConnectError("refused", request=request)

    batch = FieldLogBatch(session_id="s-1", fields=[FieldChange(field_name="a", field_value="1")])
    for handler in (server_error, connection_refused):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://api") as client:
            with pytest.raises(TransientDeliveryFailure):
                await HttpSessionTransport(client=client).append_field_logs(batch)


@pytest.mark.asyncio
async def test_detached_sender_posts_text_plain_and_never_raises():
    received = []

    def handler(request):
        received.append((request.url.path, request.headers["content-type"], json.loads(request.content)))
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://api") as client:
        sender = DetachedTaskSender(client=client, timeout=1.0)
        sender.send(BEACON_PATH, {"session_id": "s-1", "fields": [{"field_name": "a", "field_value": "1"}]})
        await sender.drain()

    path, content_type, body = received[0]
    assert path == BEACON_PATH
    assert content_type.startswith("text/plain")
    assert body["session_id"] == "s-1"

    def broken(request):
        raise httpx.ConnectError("down", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(broken), base_url="http://api") as client:
        sender = DetachedTaskSender(client=client, timeout=1.0)
        sender.send(BEACON_PATH, {"session_id": "s-1"})
        await sender.drain()
