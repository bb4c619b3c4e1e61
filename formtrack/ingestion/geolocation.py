"""
geolocation.py — best-effort IP → GeoLocation lookup.

The upstream (ip-api.com JSON endpoint by default) is treated as unreliable:
every failure mode — timeout, transport error, non-2xx, "status": "fail",
unparseable body — becomes UpstreamUnavailable, which the create-session route
catches and turns into "geo fields absent". Private and loopback addresses are
never sent upstream.
"""
from __future__ import annotations

import ipaddress
import logging
from typing import Optional

import httpx
import redis.asyncio as aioredis
from pydantic import ValidationError as PydanticValidationError

from formtrack.cache import get_geo_cache, set_geo_cache
from formtrack.config import settings
from formtrack.exceptions import UpstreamUnavailable
from formtrack.ingestion.schemas import GeoLocation

logger = logging.getLogger(__name__)


def is_public_ip(ip_address: Optional[str]) -> bool:
    if not ip_address:
        return False
    try:
        return ipaddress.ip_address(ip_address).is_global
    except ValueError:
        return False


def _parse_ip_api(body) -> GeoLocation:
    if not isinstance(body, dict):
        raise UpstreamUnavailable("Geolocation lookup returned a non-object body")
    if body.get("status") != "success":
        raise UpstreamUnavailable(f"Geolocation lookup rejected: {body.get('message', 'unknown')}")
    try:
        return GeoLocation(
            country=body.get("country"),
            country_code=body.get("countryCode"),
            region=body.get("regionName"),
            city=body.get("city"),
            isp=body.get("isp"),
            org=body.get("org"),
            timezone=body.get("timezone"),
            lat=body.get("lat"),
            lon=body.get("lon"),
        )
    except PydanticValidationError as exc:
        raise UpstreamUnavailable("Geolocation lookup returned malformed fields") from exc


class GeoLocator:
    """
    Async geolocation client with a short timeout and an optional Redis cache.

    The httpx client is injectable so tests can supply httpx.MockTransport.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        redis_client: Optional[aioredis.Redis] = None,
        lookup_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._http = http_client
        self._redis = redis_client
        self._lookup_url = lookup_url or settings.geo_lookup_url
        self._timeout = timeout if timeout is not None else settings.geo_timeout_seconds

    async def _fetch(self, ip_address: str) -> dict:
        url = self._lookup_url.format(ip=ip_address)
        try:
            if self._http is not None:
                response = await self._http.get(url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            raise UpstreamUnavailable(f"Geolocation lookup failed: {type(exc).__name__}") from exc

    async def lookup(self, ip_address: str) -> GeoLocation:
        """Resolve an IP. Raises UpstreamUnavailable on any failure."""
        cached = await get_geo_cache(self._redis, ip_address)
        if cached is not None:
            try:
                return GeoLocation.model_validate(cached)
            except PydanticValidationError:
                logger.warning("Discarding invalid geo cache entry")

        geo = _parse_ip_api(await self._fetch(ip_address))
        await set_geo_cache(self._redis, ip_address, geo.model_dump(mode="json"))
        return geo

    async def lookup_or_none(self, ip_address: Optional[str]) -> Optional[GeoLocation]:
        """Degrading wrapper used by ingestion: failure means 'no geo data'."""
        if not is_public_ip(ip_address):
            return None
        try:
            return await self.lookup(ip_address)
        except UpstreamUnavailable as exc:
            logger.warning("Geolocation unavailable, continuing without it: %s", exc.message)
            return None
