"""
Event collector: the per-page-load tracker.

Mirrors what the browser script does on the marketing pages: one instance per
page load, fires session_start + page_view on construction, keeps counters
(page views, clicks, max scroll depth) and reports scroll milestones, clicks,
shares and exits to the tracking endpoint.

Browser signals come in through the on_* handlers so the state machine can be
driven from a headless client, a load simulator or tests.
"""

from __future__ import annotations

import logging
import random
import string
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

import requests

from maison.analytics.device import device_type_from_width, parse_user_agent
from maison.analytics.entry_point import classify_entry_point

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "page_view",
    "subscription",
    "share",
    "exit",
    "click",
    "scroll",
    "session_start",
    "session_end",
)

SCROLL_THRESHOLDS = (25, 50, 75, 90, 100)

_BASE36 = string.digits + string.ascii_lowercase


def generate_session_id(now_ms: Optional[int] = None) -> str:
    """<epoch ms>-<9 base36 chars>"""
    ms = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(random.choice(_BASE36) for _ in range(9))
    return f"{ms}-{suffix}"


class Transport(Protocol):
    def send(self, payload: Dict[str, Any]) -> None: ...

    def beacon(self, payload: Dict[str, Any]) -> None: ...


class HttpTransport:
    """
    POSTs events to /api/track.
    - send(): regular request, errors logged and swallowed
    - beacon(): fire-and-forget on a daemon thread, for page teardown
    """

    def __init__(self, endpoint: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = session or requests.Session()

    def send(self, payload: Dict[str, Any]) -> None:
        try:
            self._session.post(self.endpoint, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.debug("Tracking send failed: %s", e)

    def beacon(self, payload: Dict[str, Any]) -> None:
        def _fire() -> None:
            try:
                # same content type as navigator.sendBeacon with a string body
                requests.post(
                    self.endpoint,
                    json=payload,
                    headers={"Content-Type": "text/plain;charset=UTF-8"},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                logger.debug("Tracking beacon dropped: %s", e)

        threading.Thread(target=_fire, name="tracking-beacon", daemon=True).start()

    def close(self) -> None:
        self._session.close()


class MemoryTransport:
    """Keeps every payload in order. Handy for simulations and tests."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.beacons: List[Dict[str, Any]] = []

    def send(self, payload: Dict[str, Any]) -> None:
        self.sent.append(payload)

    def beacon(self, payload: Dict[str, Any]) -> None:
        self.beacons.append(payload)

    def events(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if event_type is None:
            return list(self.sent)
        return [p for p in self.sent if p.get("eventType") == event_type]


class EventCollector:
    def __init__(
        self,
        transport: Transport,
        page_url: str,
        referrer: str = "",
        user_agent: str = "",
        *,
        page_title: str = "",
        language: str = "",
        timezone: str = "",
        screen_resolution: str = "",
        viewport_width: Optional[int] = None,
        viewport_height: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        session_id: Optional[str] = None,
    ):
        self.transport = transport
        self.page_url = page_url
        self.referrer = referrer or ""
        self.user_agent = user_agent or ""
        self.page_title = page_title
        self.language = language
        self.timezone = timezone
        self.screen_resolution = screen_resolution
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self._clock = clock

        now = self._clock()
        self.session_id = session_id or generate_session_id(int(now * 1000))
        self.session_start_time = now
        self.last_activity_time = now

        self.page_view_count = 0
        self.click_count = 0
        self.max_scroll_depth = 0
        self._fired_thresholds: set[int] = set()
        self._ended = False

        # derived once per page load
        self.entry = classify_entry_point(self.referrer, self.page_url)
        ua_info = parse_user_agent(self.user_agent)
        self._browser = ua_info.browser
        self._os = ua_info.os
        self._device_type = (
            device_type_from_width(self.viewport_width) if self.viewport_width is not None else ua_info.type
        )

        self.track_event("session_start", {})
        self.track_page_view()

    # -------------------------
    # Public API
    # -------------------------
    def track_page_view(self, page_url: Optional[str] = None, page_title: Optional[str] = None) -> None:
        if page_url:
            self.page_url = page_url
        if page_title is not None:
            self.page_title = page_title
        self.page_view_count += 1
        self._emit("page_view", {"pageTitle": self.page_title})

    def track_subscription(self, email: str, extra: Optional[Dict[str, Any]] = None) -> None:
        data = {
            "email": email,
            "timeToSubscribe": self.time_on_site(),
            "pagesViewedBeforeSubscribe": self.page_view_count,
            "scrollDepthBeforeSubscribe": self.max_scroll_depth,
        }
        data.update(extra or {})
        self._emit("subscription", data)

    def track_event(self, event_type: str, extra: Optional[Dict[str, Any]] = None) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        self._emit(event_type, dict(extra or {}))

    def time_on_site(self) -> int:
        return int(self._clock() - self.session_start_time)

    # -------------------------
    # Browser signals
    # -------------------------
    def on_activity(self) -> None:
        self.last_activity_time = self._clock()

    def on_scroll(self, percent: float) -> List[int]:
        """
        percent: scrollTop / (scrollHeight - innerHeight) * 100.
        Returns the milestones reported by this call.
        """
        self.on_activity()
        depth = max(0, min(100, int(round(percent))))
        if depth <= self.max_scroll_depth:
            return []

        self.max_scroll_depth = depth
        reached = []
        for threshold in SCROLL_THRESHOLDS:
            if depth >= threshold and threshold not in self._fired_thresholds:
                self._fired_thresholds.add(threshold)
                reached.append(threshold)
                self._emit("scroll", {"scrollDepth": threshold})
        return reached

    def on_click(
        self,
        element: str = "",
        link_text: str = "",
        link_url: Optional[str] = None,
        share_method: Optional[str] = None,
    ) -> None:
        self.on_activity()
        self.click_count += 1
        self._emit(
            "click",
            {"element": element, "linkText": (link_text or "").strip()[:50], "linkUrl": link_url},
        )
        # elements marked with data-share
        if share_method:
            self._emit("share", {"shareMethod": share_method, "shareUrl": self.page_url})

    def on_native_share(self, title: str = "", url: str = "") -> None:
        self._emit("share", {"shareMethod": "native", "shareTitle": title, "shareUrl": url})

    def on_mouse_leave(self, client_y: float) -> bool:
        if client_y > 0:
            return False
        self._emit(
            "exit",
            {"exitType": "mouse_leave", "timeOnPage": int(self._clock() - self.last_activity_time)},
        )
        return True

    def on_unload(self) -> None:
        if self._ended:
            return
        self._ended = True
        payload = self._payload(
            "session_end",
            {
                "timeOnSite": self.time_on_site(),
                "pagesViewed": self.page_view_count,
                "finalScrollDepth": self.max_scroll_depth,
            },
        )
        # page is going away: no response will be awaited
        self.transport.beacon(payload)

    # -------------------------
    # Internals
    # -------------------------
    def _payload(self, event_type: str, event_data: Dict[str, Any]) -> Dict[str, Any]:
        now = self._clock()
        payload: Dict[str, Any] = {
            "sessionId": self.session_id,
            "eventType": event_type,
            "timestamp": int(now * 1000),
            "pageUrl": self.page_url,
            "referrer": self.referrer,
            "userAgent": self.user_agent,
            "language": self.language,
            "timezone": self.timezone,
            "screenResolution": self.screen_resolution,
            "viewportSize": (
                f"{self.viewport_width}x{self.viewport_height}"
                if self.viewport_width is not None and self.viewport_height is not None
                else ""
            ),
            "timeOnSite": int(now - self.session_start_time),
            "pagesViewed": self.page_view_count,
            "scrollDepth": self.max_scroll_depth,
            "clickEvents": self.click_count,
            "deviceType": self._device_type,
            "browser": self._browser,
            "os": self._os,
            "eventData": event_data,
        }
        payload.update(self.entry.as_payload())
        if event_data.get("email"):
            payload["email"] = event_data["email"]
        return payload

    def _emit(self, event_type: str, event_data: Dict[str, Any]) -> None:
        try:
            self.transport.send(self._payload(event_type, event_data))
        except Exception:
            # tracking must never break the page
            logger.exception("Analytics tracking error (%s)", event_type)
