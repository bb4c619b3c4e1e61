"""
exceptions.py — error taxonomy shared by the ingestion API, the analytics
read surface and the client SDK.

Server-side errors are rendered by the handlers registered in main.py into the
standard {error: {code, message, details}} envelope. UpstreamUnavailable and
TransientDeliveryFailure never reach an HTTP response: the geolocation lookup
and the client SDK catch them and degrade.
"""
from __future__ import annotations

from typing import Any, Optional


class FormtrackError(Exception):
    """Base class; carries the envelope code and HTTP status."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class ValidationError(FormtrackError):
    """Malformed or missing required request input. Raised before any side effect."""

    code = "VALIDATION_ERROR"
    status_code = 400


class Unauthorized(FormtrackError):
    """Privileged operation attempted without sufficient credentials."""

    code = "FORBIDDEN"
    status_code = 403


class NotFound(FormtrackError):
    """Reference to a session (or other entity) that does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class UpstreamUnavailable(FormtrackError):
    """A best-effort external dependency (geolocation) failed or timed out."""

    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503


class TransientDeliveryFailure(FormtrackError):
    """Client-side network failure delivering field logs or a snapshot."""

    code = "DELIVERY_FAILED"
    status_code = 503
