"""
events.py — minimal DOM-style event plumbing for the client SDK.

The tracker never talks to a real browser. It subscribes to an EventHub the
host application feeds with DomEvent objects (from a webview bridge, a
replayed recording, or a test). Listener semantics follow the DOM:
add/remove by (type, handler) identity, dispatch in registration order.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class EventTargetInfo(BaseModel):
    """The element an event fired on. Any attribute may be missing."""
    tag: Optional[str] = None
    name: Optional[str] = None
    data_field: Optional[str] = None


class DomEvent(BaseModel):
    """
    One UI event. Only the attributes relevant to `type` are set:

      mousemove / click / contextmenu   client_x, client_y, target
      scroll                            scroll_top, scroll_height, viewport_height
      visibilitychange                  hidden
      paste / copy / invalid            target
    """
    type: str
    target: Optional[EventTargetInfo] = None
    client_x: Optional[float] = None
    client_y: Optional[float] = None
    scroll_top: Optional[float] = None
    scroll_height: Optional[float] = None
    viewport_height: Optional[float] = None
    hidden: Optional[bool] = None


Listener = Callable[[DomEvent], None]


class EventHub:
    """In-process stand-in for `document` / `window` event registration."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def add_listener(self, event_type: str, listener: Listener) -> None:
        if listener not in self._listeners[event_type]:
            self._listeners[event_type].append(listener)

    def remove_listener(self, event_type: str, listener: Listener) -> None:
        try:
            self._listeners[event_type].remove(listener)
        except ValueError:
            pass

    def listener_count(self, event_type: Optional[str] = None) -> int:
        if event_type is not None:
            return len(self._listeners.get(event_type, []))
        return sum(len(handlers) for handlers in self._listeners.values())

    def dispatch(self, event: DomEvent) -> None:
        # copy: a handler may remove itself while we iterate
        for listener in list(self._listeners.get(event.type, [])):
            listener(event)
