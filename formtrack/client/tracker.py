"""
tracker.py — Behavioral Tracker.

Accumulates interaction signals for exactly one form session, in memory.

Field state machine (per field name):
    idle --on_field_focus--> focused --on_field_blur--> idle
                                 (duration appended to field_timings)

Passive listeners are attached to the EventHub on construction and detached
by destroy(). Event handlers never raise: a malformed event is logged at
DEBUG and dropped, so analytics can never break the host form.

get_snapshot() is a read: counters keep growing across calls, which is what
lets the server simply overwrite the previous snapshot.
"""
from __future__ import annotations

import functools
import logging
import time
from collections import deque
from typing import Callable, Optional

from pydantic import BaseModel

from formtrack.client.events import DomEvent, EventHub
from formtrack.config import settings
from formtrack.ingestion.schemas import (
    BehavioralSnapshot,
    ClickPoint,
    FieldTiming,
    MousePoint,
)

logger = logging.getLogger(__name__)

TYPING_GAP_MAX_MS = 2000
TYPING_SAMPLES_PER_FIELD = 50


class TrackerConfig(BaseModel):
    """Tunables. Rage-click thresholds are heuristics, not fixed rules."""
    rage_click_count: int = settings.rage_click_count
    rage_click_window_ms: int = settings.rage_click_window_ms
    rage_click_radius_px: int = settings.rage_click_radius_px
    heatmap_capacity: int = settings.heatmap_capacity
    click_map_capacity: int = settings.click_map_capacity
    mouse_sample_interval_ms: int = settings.mouse_sample_interval_ms


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


def _never_raises(handler: Callable[["BehavioralTracker", DomEvent], None]):
    @functools.wraps(handler)
    def wrapper(self: "BehavioralTracker", event: DomEvent) -> None:
        try:
            handler(self, event)
        except Exception:
            logger.debug("Ignored malformed %r event", getattr(event, "type", None), exc_info=True)
    return wrapper


class BehavioralTracker:
    def __init__(
        self,
        hub: EventHub,
        config: Optional[TrackerConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        page_load_time: int = 0,
    ):
        self._hub = hub
        self._config = config or TrackerConfig()
        self._clock = clock or _monotonic_ms
        self._start = self._clock()
        self._page_load_time = page_load_time

        self._field_timings: list[FieldTiming] = []
        self._open_focus: dict[str, float] = {}
        self._edit_counts: dict[str, int] = {}
        self._field_order: list[str] = []
        self._paste_events: list[str] = []
        self._typing_speeds: dict[str, list[int]] = {}
        self._last_edit_at: dict[str, float] = {}

        self._scroll_depth = 0
        self._tab_switches = 0
        self._hidden = False
        self._rage_clicks = 0
        self._copy_events = 0
        self._right_click_events = 0
        self._validation_errors = 0

        # ring buffers: oldest samples fall off once full
        self._mouse_positions: deque[MousePoint] = deque(maxlen=self._config.heatmap_capacity)
        self._clicks: deque[ClickPoint] = deque(maxlen=self._config.click_map_capacity)
        self._last_mouse_sample: Optional[float] = None

        self._last_click_at: Optional[float] = None
        self._last_click_x = 0.0
        self._last_click_y = 0.0
        self._rapid_clicks = 0

        self._listeners = [
            ("mousemove", self._on_mouse_move),
            ("click", self._on_click),
            ("scroll", self._on_scroll),
            ("visibilitychange", self._on_visibility_change),
            ("paste", self._on_paste),
            ("copy", self._on_copy),
            ("contextmenu", self._on_context_menu),
            ("invalid", self._on_invalid),
        ]
        for event_type, listener in self._listeners:
            hub.add_listener(event_type, listener)

    def _elapsed(self) -> int:
        return max(0, round(self._clock() - self._start))

    # -----------------------------------------------------------------------
    # Field lifecycle — called by the form
    # -----------------------------------------------------------------------

    def on_field_focus(self, field_name: str) -> None:
        if not field_name:
            return
        self._open_focus[field_name] = self._clock()
        if not self._field_order or self._field_order[-1] != field_name:
            self._field_order.append(field_name)

    def on_field_blur(self, field_name: str) -> None:
        """No-op when there is no open focus for the field (double blur, out of order)."""
        started = self._open_focus.pop(field_name, None)
        if started is None:
            return
        duration = max(0, round(self._clock() - started))
        self._field_timings.append(FieldTiming(field_name=field_name, duration=duration))

    def on_field_edit(self, field_name: str) -> None:
        if not field_name:
            return
        self._edit_counts[field_name] = self._edit_counts.get(field_name, 0) + 1

        now = self._clock()
        previous = self._last_edit_at.get(field_name)
        if previous is not None:
            gap = round(now - previous)
            if 0 < gap < TYPING_GAP_MAX_MS:
                samples = self._typing_speeds.setdefault(field_name, [])
                if len(samples) < TYPING_SAMPLES_PER_FIELD:
                    samples.append(gap)
        self._last_edit_at[field_name] = now

    def on_validation_error(self) -> None:
        self._validation_errors += 1

    # -----------------------------------------------------------------------
    # Passive listeners
    # -----------------------------------------------------------------------

    @_never_raises
    def _on_mouse_move(self, event: DomEvent) -> None:
        if event.client_x is None or event.client_y is None:
            return
        now = self._clock()
        if (
            self._last_mouse_sample is not None
            and now - self._last_mouse_sample < self._config.mouse_sample_interval_ms
        ):
            return
        self._last_mouse_sample = now
        self._mouse_positions.append(
            MousePoint(x=round(event.client_x), y=round(event.client_y), t=self._elapsed())
        )

    @_never_raises
    def _on_click(self, event: DomEvent) -> None:
        if event.client_x is None or event.client_y is None:
            return
        now = self._clock()
        x, y = event.client_x, event.client_y
        target = (event.target.tag if event.target and event.target.tag else "unknown").lower()
        self._clicks.append(ClickPoint(x=round(x), y=round(y), target=target, t=self._elapsed()))

        cfg = self._config
        if (
            self._last_click_at is not None
            and now - self._last_click_at < cfg.rage_click_window_ms
            and abs(x - self._last_click_x) < cfg.rage_click_radius_px
            and abs(y - self._last_click_y) < cfg.rage_click_radius_px
        ):
            self._rapid_clicks += 1
            if self._rapid_clicks >= cfg.rage_click_count:
                self._rage_clicks += 1
                self._rapid_clicks = 0
        else:
            self._rapid_clicks = 1
        self._last_click_at = now
        self._last_click_x = x
        self._last_click_y = y

    @_never_raises
    def _on_scroll(self, event: DomEvent) -> None:
        if event.scroll_top is None or event.scroll_height is None or event.viewport_height is None:
            return
        scrollable = event.scroll_height - event.viewport_height
        if scrollable <= 0:
            return
        depth = min(100, max(0, round(event.scroll_top / scrollable * 100)))
        if depth > self._scroll_depth:
            self._scroll_depth = depth

    @_never_raises
    def _on_visibility_change(self, event: DomEvent) -> None:
        if event.hidden is None:
            return
        if event.hidden:
            self._hidden = True
        elif self._hidden:
            self._hidden = False
            self._tab_switches += 1

    @_never_raises
    def _on_paste(self, event: DomEvent) -> None:
        target = event.target
        if target is None:
            return
        key = target.name or target.data_field or target.tag
        if key:
            self._paste_events.append(key)

    @_never_raises
    def _on_copy(self, event: DomEvent) -> None:
        self._copy_events += 1

    @_never_raises
    def _on_context_menu(self, event: DomEvent) -> None:
        self._right_click_events += 1

    @_never_raises
    def _on_invalid(self, event: DomEvent) -> None:
        self._validation_errors += 1

    # -----------------------------------------------------------------------
    # Read / teardown
    # -----------------------------------------------------------------------

    def get_snapshot(self) -> BehavioralSnapshot:
        """Point-in-time copy of everything accumulated so far. Resets nothing."""
        return BehavioralSnapshot(
            field_timings=[t.model_copy() for t in self._field_timings],
            edit_counts=dict(self._edit_counts),
            field_order=list(self._field_order),
            paste_events=list(self._paste_events),
            typing_speeds={field: list(gaps) for field, gaps in self._typing_speeds.items()},
            scroll_depth=self._scroll_depth,
            tab_switches=self._tab_switches,
            rage_clicks=self._rage_clicks,
            copy_events=self._copy_events,
            right_click_events=self._right_click_events,
            validation_errors=self._validation_errors,
            duration=self._elapsed(),
            page_load_time=self._page_load_time,
            mouse_heatmap=[p.model_copy() for p in self._mouse_positions],
            click_map=[c.model_copy() for c in self._clicks],
        )

    def destroy(self) -> None:
        """Detach every passive listener. Safe to call more than once."""
        for event_type, listener in self._listeners:
            self._hub.remove_listener(event_type, listener)
        self._listeners = []
