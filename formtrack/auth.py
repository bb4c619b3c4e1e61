"""
auth.py — privileged-caller predicate.

The real identity layer lives outside formtrack. What the ingestion and
analytics routes need is a yes/no answer: is this caller allowed to delete
sessions and read per-session detail? Callers prove it with the shared
X-Admin-Token header. An empty settings.admin_token means nobody is privileged.
"""
import logging
import secrets
from typing import Optional

from fastapi import Header

from formtrack.config import settings
from formtrack.exceptions import Unauthorized

logger = logging.getLogger(__name__)


def is_privileged(token: Optional[str]) -> bool:
    expected = settings.admin_token
    if not expected or not token:
        return False
    return secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


async def require_admin(
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    """FastAPI dependency — raises Unauthorized before the route body runs."""
    if not is_privileged(x_admin_token):
        logger.warning("Rejected privileged request (token %s)", "missing" if not x_admin_token else "invalid")
        raise Unauthorized("Unauthorized")
