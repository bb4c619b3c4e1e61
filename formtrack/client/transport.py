"""
transport.py — how the Session Logger reaches the Ingestion API.

SessionTransport   awaited request/response calls (create, log, update)
BestEffortSender   fire-and-forget delivery used during teardown

HttpSessionTransport wraps httpx.AsyncClient and normalizes every network or
HTTP failure into TransientDeliveryFailure, so the logger has exactly one
exception type to catch.

DetachedTaskSender is the non-browser rendition of navigator.sendBeacon: the
payload is handed to a background task with its own timeout, and nothing
ever reports back whether it arrived.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

import httpx

from formtrack.config import settings
from formtrack.exceptions import TransientDeliveryFailure
from formtrack.ingestion.schemas import (
    CreateSessionRequest,
    CreateSessionResponse,
    FieldLogBatch,
    SessionUpdate,
)

logger = logging.getLogger(__name__)

SESSIONS_PATH = "/api/sessions"
FIELD_LOG_PATH = "/api/sessions/log"
BEACON_PATH = "/api/sessions/beacon"


class SessionTransport(Protocol):
    async def create_session(self, request: CreateSessionRequest) -> CreateSessionResponse: ...

    async def append_field_logs(self, batch: FieldLogBatch) -> None: ...

    async def update_session(self, update: SessionUpdate) -> None: ...


class BestEffortSender(Protocol):
    def send(self, endpoint: str, payload: dict[str, Any]) -> None: ...


class HttpSessionTransport:
    """SessionTransport over HTTP. The httpx client is owned by the caller when injected."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=timeout if timeout is not None else settings.client_request_timeout_seconds,
        )

    async def _request(self, method: str, path: str, body: dict[str, Any]) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=body)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise TransientDeliveryFailure(f"{method} {path} failed: {type(exc).__name__}") from exc
        return response

    async def create_session(self, request: CreateSessionRequest) -> CreateSessionResponse:
        response = await self._request(
            "POST", SESSIONS_PATH, request.model_dump(mode="json", exclude_none=True)
        )
        try:
            return CreateSessionResponse.model_validate(response.json())
        except ValueError as exc:
            raise TransientDeliveryFailure("Unreadable create-session response") from exc

    async def append_field_logs(self, batch: FieldLogBatch) -> None:
        await self._request("POST", FIELD_LOG_PATH, batch.model_dump(mode="json"))

    async def update_session(self, update: SessionUpdate) -> None:
        await self._request("PUT", SESSIONS_PATH, update.to_payload())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class DetachedTaskSender:
    """
    BestEffortSender backed by detached asyncio tasks.

    send() never blocks and never raises; each payload gets its own
    short-lived client and timeout. Tasks are referenced until done so the
    event loop does not drop them.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url or settings.api_base_url
        self._timeout = timeout if timeout is not None else settings.teardown_timeout_seconds
        self._client = client
        self._tasks: set[asyncio.Task] = set()

    def send(self, endpoint: str, payload: dict[str, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(endpoint, payload))
        except RuntimeError:
            logger.debug("No running event loop; beacon to %s not sent", endpoint)
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, endpoint: str, payload: dict[str, Any]) -> None:
        body = json.dumps(payload)
        headers = {"Content-Type": "text/plain;charset=UTF-8"}
        try:
            if self._client is not None:
                await asyncio.wait_for(
                    self._client.post(endpoint, content=body, headers=headers),
                    timeout=self._timeout,
                )
            else:
                async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout) as client:
                    await client.post(endpoint, content=body, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as exc:
            logger.debug("Beacon to %s not delivered: %s", endpoint, type(exc).__name__)

    async def drain(self) -> None:
        """Wait for outstanding beacons (tests and orderly shutdown only)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
