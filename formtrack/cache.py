"""
cache.py — Redis caching layer for formtrack.

Namespace conventions:
  geo:{sha256(ip)}    → GeoLocation dict for a client IP    TTL 24h (settings.geo_cache_ttl_seconds)

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x)
  - Pool created once in lifespan, stored on app.state.redis (None when Redis is down)
  - Helper functions take the client as a param — no module-level global state
  - Keys hash the IP so raw addresses never appear in Redis key listings
  - Cache errors are logged and treated as misses; ingestion never fails on Redis
"""
import hashlib
import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from formtrack.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
GEO_PREFIX = "geo"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_geo_key(ip_address: str) -> str:
    """Build Redis key for a geolocation lookup: geo:{sha256hex(ip)}"""
    digest = hashlib.sha256(ip_address.strip().encode("utf-8")).hexdigest()
    return f"{GEO_PREFIX}:{digest}"


# ---------------------------------------------------------------------------
# Pool factory — called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup — stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", settings.redis_url)
    return client


# ---------------------------------------------------------------------------
# Geolocation cache helpers
# ---------------------------------------------------------------------------

async def get_geo_cache(
    client: Optional[aioredis.Redis], ip_address: str
) -> Optional[dict]:
    """Return a cached GeoLocation dict, or None on miss / no client / Redis error."""
    if client is None:
        return None
    key = make_geo_key(ip_address)
    try:
        raw = await client.get(key)
    except RedisError as exc:
        logger.warning("Geo cache read failed key=%s: %s", key, exc)
        return None
    if raw is None:
        return None
    try:
        cached = json.loads(raw)
    except ValueError:
        logger.warning("Geo cache entry undecodable key=%s", key)
        return None
    if not isinstance(cached, dict):
        return None
    logger.debug("Geo cache hit key=%s", key)
    return cached


async def set_geo_cache(
    client: Optional[aioredis.Redis], ip_address: str, geo: dict
) -> None:
    """Store a GeoLocation dict with the configured TTL."""
    if client is None:
        return
    key = make_geo_key(ip_address)
    try:
        await client.setex(key, settings.geo_cache_ttl_seconds, json.dumps(geo))
    except RedisError as exc:
        logger.warning("Geo cache write failed key=%s: %s", key, exc)
        return
    logger.debug("Geo lookup cached key=%s ttl=%ds", key, settings.geo_cache_ttl_seconds)
