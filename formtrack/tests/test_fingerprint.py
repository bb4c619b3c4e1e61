"""
Unit tests for formtrack/client/fingerprint.py — Fingerprint Collector.
"""
import pytest

from formtrack.client.fingerprint import (
    ClientEnvironment,
    collect_device_info,
    collect_fingerprint,
    collect_referral_data,
    generate_fingerprint_hash,
    probe_hash,
)
from formtrack.ingestion.schemas import TrafficSource

LANDING = "https://invoices.example.com/create"


def env(**overrides) -> ClientEnvironment:
    base = dict(
        location=LANDING,
        user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/130.0",
        screen_width=1920,
        screen_height=1080,
        pixel_ratio=2.0,
        color_depth=24,
        cpu_cores=8,
        device_memory=16,
        gpu="ANGLE (Intel Iris Xe)",
        timezone="Europe/Berlin",
        timezone_offset=-120,
        languages=["de-DE", "en"],
        platform="Linux x86_64",
        canvas_probe="data:image/png;base64,AAAA",
        webgl_probe="webgl-params",
        audio_probe="124.04347527516074",
    )
    base.update(overrides)
    return ClientEnvironment(**base)


# ---------------------------------------------------------------------------
# Fingerprint
# ---------------------------------------------------------------------------

def test_probe_hash_is_short_base36():
    assert probe_hash(None) == ""
    assert probe_hash("") == ""
    assert probe_hash("a") == "2p"          # 97 in base 36
    assert probe_hash("canvas") == probe_hash("canvas")
    assert probe_hash("canvas") != probe_hash("canvaz")


def test_missing_signals_come_back_empty():
    fp = collect_fingerprint(ClientEnvironment(location=LANDING))
    assert fp.screen_width is None
    assert fp.touch_support is None
    assert fp.do_not_track is None
    assert fp.languages == []
    assert (fp.canvas_hash, fp.webgl_hash, fp.audio_hash) == ("", "", "")


def test_touch_support_from_touch_points():
    assert collect_fingerprint(env(max_touch_points=5)).touch_support is True
    assert collect_fingerprint(env(max_touch_points=0, has_touch_events=False)).touch_support is False


def test_fingerprint_hash_is_deterministic_sha256():
    first = generate_fingerprint_hash(collect_fingerprint(env()))
    second = generate_fingerprint_hash(collect_fingerprint(env()))
    assert first == second
    assert len(first) == 64
    int(first, 16)


def test_fingerprint_hash_ignores_window_size_but_not_screen():
    base = generate_fingerprint_hash(collect_fingerprint(env(window_width=800)))
    resized = generate_fingerprint_hash(collect_fingerprint(env(window_width=1200)))
    other_screen = generate_fingerprint_hash(collect_fingerprint(env(screen_width=2560)))
    assert base == resized
    assert base != other_screen


# ---------------------------------------------------------------------------
# Referral
# ---------------------------------------------------------------------------

def test_no_referrer_is_direct():
    ref = collect_referral_data(env(referrer=""))
    assert ref.traffic_source == TrafficSource.direct
    assert ref.landing_page == "/create"


def test_search_engine_referrer_extracts_query():
    ref = collect_referral_data(env(referrer="https://www.google.com/search?q=free+invoice+maker"))
    assert ref.traffic_source == TrafficSource.organic
    assert ref.search_query == "free invoice maker"


@pytest.mark.parametrize(
    "referrer, query",
    [
        ("https://search.yahoo.com/search?p=receipt+template", "receipt template"),
        ("https://www.baidu.com/s?wd=fapiao", "fapiao"),
        ("https://yandex.ru/search/?text=schet", "schet"),
    ],
)
def test_engine_specific_query_parameter(referrer, query):
    assert collect_referral_data(env(referrer=referrer)).search_query == query


def test_social_referrer_names_platform():
    ref = collect_referral_data(env(referrer="https://x.com/someone/status/1"))
    assert ref.traffic_source == TrafficSource.social
    assert ref.social_platform == "twitter"

    ref = collect_referral_data(env(referrer="https://www.linkedin.com/feed/"))
    assert ref.social_platform == "linkedin"


def test_other_referrer_is_referral():
    ref = collect_referral_data(env(referrer="https://blog.example.org/best-tools"))
    assert ref.traffic_source == TrafficSource.referral
    assert ref.full_referrer == "https://blog.example.org/best-tools"


def test_utm_medium_overrides_referrer():
    location = LANDING + "?utm_source=newsletter&utm_medium=email&utm_campaign=october"
    ref = collect_referral_data(env(location=location, referrer="https://www.google.com/"))
    assert ref.traffic_source == TrafficSource.email
    assert ref.utm_source == "newsletter"
    assert ref.utm_campaign == "october"


@pytest.mark.parametrize("medium", ["cpc", "ppc", "paid"])
def test_paid_mediums(medium):
    location = f"{LANDING}?utm_source=google&utm_medium={medium}"
    assert collect_referral_data(env(location=location)).traffic_source == TrafficSource.paid


def test_utm_without_source_does_not_override():
    location = LANDING + "?utm_medium=cpc"
    assert collect_referral_data(env(location=location)).traffic_source == TrafficSource.direct


# ---------------------------------------------------------------------------
# Device info
# ---------------------------------------------------------------------------

def test_device_info_detects_mobile():
    android = "Mozilla/5.0 (Linux; Android 14; Pixel 8) Chrome/129.0 Mobile Safari/537.36"
    info = collect_device_info(env(user_agent=android))
    assert info.mobile is True
    assert info.language == "de-DE"
    assert info.screen_width == 1920

    assert collect_device_info(env()).mobile is False
    assert collect_device_info(ClientEnvironment(location=LANDING)).mobile is False
