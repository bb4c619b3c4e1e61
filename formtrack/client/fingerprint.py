"""
fingerprint.py — Fingerprint Collector.

Derives a stable pseudo-identity and referral context from the client
environment. Pure functions: same ClientEnvironment in, same result out.
Signals the environment cannot provide come back as None (or "" for probe
hashes); nothing here raises on missing data.
"""
from __future__ import annotations

import hashlib
import re
from typing import List, Optional
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, Field

from formtrack.ingestion.schemas import (
    DeviceInfo,
    Fingerprint,
    ReferralData,
    TrafficSource,
)

# host substring → query parameter carrying the search terms
SEARCH_ENGINES: dict[str, str] = {
    "google": "q",
    "bing": "q",
    "yahoo": "p",
    "duckduckgo": "q",
    "baidu": "wd",
    "yandex": "text",
}

SOCIAL_PLATFORMS: list[str] = [
    "facebook", "twitter", "x.com", "linkedin", "instagram",
    "pinterest", "reddit", "tiktok", "youtube",
]

PAID_MEDIUMS = frozenset({"cpc", "ppc", "paid"})

_MOBILE_UA = re.compile(r"Mobi|Android", re.IGNORECASE)


class ClientEnvironment(BaseModel):
    """What the host page can observe about its environment."""
    location: str = Field(..., description="Current page URL.")
    referrer: str = ""
    user_agent: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    window_width: Optional[int] = None
    window_height: Optional[int] = None
    pixel_ratio: Optional[float] = None
    color_depth: Optional[int] = None
    max_touch_points: Optional[int] = None
    has_touch_events: Optional[bool] = None
    cpu_cores: Optional[int] = None
    device_memory: Optional[float] = None
    gpu: Optional[str] = None
    do_not_track: Optional[str] = None
    cookies_enabled: Optional[bool] = None
    connection_type: Optional[str] = None
    connection_downlink: Optional[float] = None
    timezone: Optional[str] = None
    timezone_offset: Optional[int] = None
    languages: List[str] = Field(default_factory=list)
    platform: Optional[str] = None
    # raw output of the canvas / WebGL / audio probes, None when unsupported
    canvas_probe: Optional[str] = None
    webgl_probe: Optional[str] = None
    audio_probe: Optional[str] = None


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(digits[r])
    return "".join(reversed(out))


def probe_hash(value: Optional[str]) -> str:
    """Short 32-bit rolling hash of a probe output, base 36. "" when absent."""
    if not value:
        return ""
    h = 0
    for ch in value:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    # reinterpret as signed 32-bit, then take the magnitude
    if h >= 0x80000000:
        h -= 0x100000000
    return _base36(abs(h))


def collect_fingerprint(env: ClientEnvironment) -> Fingerprint:
    touch = None
    if env.has_touch_events is not None or env.max_touch_points is not None:
        touch = bool(env.has_touch_events) or (env.max_touch_points or 0) > 0
    return Fingerprint(
        screen_width=env.screen_width,
        screen_height=env.screen_height,
        window_width=env.window_width,
        window_height=env.window_height,
        pixel_ratio=env.pixel_ratio,
        color_depth=env.color_depth,
        touch_support=touch,
        max_touch_points=env.max_touch_points,
        cpu_cores=env.cpu_cores,
        device_memory=env.device_memory,
        gpu=env.gpu,
        do_not_track=None if env.do_not_track is None else env.do_not_track == "1",
        cookies_enabled=env.cookies_enabled,
        connection_type=env.connection_type,
        connection_downlink=env.connection_downlink,
        timezone=env.timezone,
        timezone_offset=env.timezone_offset,
        languages=list(env.languages),
        platform=env.platform,
        canvas_hash=probe_hash(env.canvas_probe),
        webgl_hash=probe_hash(env.webgl_probe),
        audio_hash=probe_hash(env.audio_probe),
    )


def _key_part(value) -> str:
    return "" if value is None else str(value)


def generate_fingerprint_hash(fp: Fingerprint) -> str:
    """SHA-256 hex over the stable subset of the fingerprint."""
    key = "|".join(
        _key_part(v)
        for v in (
            fp.screen_width, fp.screen_height, fp.pixel_ratio, fp.color_depth,
            fp.cpu_cores, fp.device_memory, fp.gpu, fp.timezone, fp.platform,
            ",".join(fp.languages), fp.canvas_hash, fp.webgl_hash, fp.audio_hash,
        )
    )
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _first(params: dict[str, list[str]], name: str) -> Optional[str]:
    values = params.get(name)
    return values[0] if values else None


def collect_referral_data(env: ClientEnvironment) -> ReferralData:
    location = urlparse(env.location)
    params = parse_qs(location.query)
    utm_source = _first(params, "utm_source")
    utm_medium = _first(params, "utm_medium")

    traffic_source = TrafficSource.direct
    search_query = None
    social_platform = None

    if env.referrer:
        try:
            ref = urlparse(env.referrer)
            host = (ref.hostname or "").lower()
        except ValueError:
            ref, host = None, ""
        if not host:
            traffic_source = TrafficSource.referral
        else:
            for engine, param in SEARCH_ENGINES.items():
                if engine in host:
                    traffic_source = TrafficSource.organic
                    search_query = _first(parse_qs(ref.query), param)
                    break
            for platform in SOCIAL_PLATFORMS:
                if platform in host:
                    traffic_source = TrafficSource.social
                    social_platform = "twitter" if platform == "x.com" else platform
                    break
            if traffic_source == TrafficSource.direct:
                traffic_source = TrafficSource.referral

    # campaign tagging beats referrer inference
    if utm_source:
        medium = (utm_medium or "").lower()
        if medium in PAID_MEDIUMS:
            traffic_source = TrafficSource.paid
        elif medium == "email":
            traffic_source = TrafficSource.email
        elif medium == "social":
            traffic_source = TrafficSource.social

    return ReferralData(
        full_referrer=env.referrer,
        utm_source=utm_source,
        utm_medium=utm_medium,
        utm_campaign=_first(params, "utm_campaign"),
        utm_term=_first(params, "utm_term"),
        utm_content=_first(params, "utm_content"),
        landing_page=location.path or "/",
        search_query=search_query,
        traffic_source=traffic_source,
        social_platform=social_platform,
    )


def collect_device_info(env: ClientEnvironment) -> DeviceInfo:
    return DeviceInfo(
        browser=env.user_agent,
        screen_width=env.screen_width,
        screen_height=env.screen_height,
        mobile=bool(env.user_agent and _MOBILE_UA.search(env.user_agent)),
        language=env.languages[0] if env.languages else None,
        platform=env.platform,
    )
