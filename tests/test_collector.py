from __future__ import annotations

import re

import pytest

from maison.analytics.collector import EventCollector, MemoryTransport, generate_session_id


class Clock:
    def __init__(self, t: float = 1_700_000_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


class BrokenTransport:
    def send(self, payload):
        raise RuntimeError("network gone")

    def beacon(self, payload):
        raise RuntimeError("network gone")


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def transport():
    return MemoryTransport()


@pytest.fixture()
def collector(transport, clock):
    return EventCollector(
        transport,
        page_url="https://maison.example/collections",
        referrer="https://www.google.com/search?q=silk+scarves",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36",
        screen_resolution="1920x1080",
        viewport_width=1440,
        viewport_height=900,
        clock=clock,
    )


# ---------------------------------------------------------------------
# Page load
# ---------------------------------------------------------------------

def test_session_id_shape():
    sid = generate_session_id(1_700_000_000_123)
    assert re.fullmatch(r"1700000000123-[0-9a-z]{9}", sid)


def test_construction_fires_session_start_then_page_view(collector, transport):
    types = [p["eventType"] for p in transport.sent]
    assert types == ["session_start", "page_view"]
    assert collector.page_view_count == 1


def test_payload_carries_session_context(collector, transport):
    p = transport.events("page_view")[0]

    assert p["sessionId"] == collector.session_id
    assert p["timestamp"] == 1_700_000_000_000
    assert p["pageUrl"] == "https://maison.example/collections"
    assert p["pagesViewed"] == 1
    assert p["deviceType"] == "desktop"
    assert p["browser"] == "Chrome"
    assert p["os"] == "Windows"
    assert p["viewportSize"] == "1440x900"
    assert p["entryPoint"] == "search"
    assert p["searchQuery"] == "silk scarves"


def test_viewport_width_decides_device_type(transport, clock):
    c = EventCollector(transport, "https://maison.example/", viewport_width=500, viewport_height=800, clock=clock)
    assert transport.events("page_view")[0]["deviceType"] == "mobile"
    assert c.page_view_count == 1


# ---------------------------------------------------------------------
# Scroll milestones
# ---------------------------------------------------------------------

def test_scroll_milestones_fire_once_each(collector, transport):
    assert collector.on_scroll(10) == []
    assert collector.on_scroll(30) == [25]
    assert collector.on_scroll(60) == [50]
    assert collector.on_scroll(95) == [75, 90]
    assert collector.on_scroll(40) == []
    assert collector.on_scroll(100) == [100]
    assert collector.on_scroll(100) == []

    depths = [p["eventData"]["scrollDepth"] for p in transport.events("scroll")]
    assert depths == [25, 50, 75, 90, 100]
    assert collector.max_scroll_depth == 100


def test_scroll_jump_reports_every_crossed_milestone(collector):
    assert collector.on_scroll(100) == [25, 50, 75, 90, 100]


# ---------------------------------------------------------------------
# Clicks, shares, exits
# ---------------------------------------------------------------------

def test_click_counts_and_share_marker(collector, transport):
    collector.on_click(element="A", link_text="  Request access  ", link_url="/subscribe")
    collector.on_click(element="BUTTON", link_text="Share", share_method="whatsapp")

    assert collector.click_count == 2
    clicks = transport.events("click")
    assert clicks[0]["eventData"]["linkText"] == "Request access"
    assert clicks[1]["clickEvents"] == 2

    share = transport.events("share")[0]
    assert share["eventData"] == {"shareMethod": "whatsapp", "shareUrl": "https://maison.example/collections"}


def test_mouse_leave_only_at_top_edge(collector, transport, clock):
    assert collector.on_mouse_leave(12) is False
    clock.t += 30
    assert collector.on_mouse_leave(0) is True

    exit_event = transport.events("exit")[0]
    assert exit_event["eventData"] == {"exitType": "mouse_leave", "timeOnPage": 30}


def test_unload_sends_one_beacon(collector, transport, clock):
    collector.on_scroll(55)
    clock.t += 42
    collector.on_unload()
    collector.on_unload()

    assert len(transport.beacons) == 1
    end = transport.beacons[0]
    assert end["eventType"] == "session_end"
    assert end["eventData"] == {"timeOnSite": 42, "pagesViewed": 1, "finalScrollDepth": 55}
    assert transport.events("session_end") == []


# ---------------------------------------------------------------------
# Subscription / generic events
# ---------------------------------------------------------------------

def test_subscription_event_carries_email_and_behaviour(collector, transport, clock):
    collector.on_scroll(80)
    clock.t += 95
    collector.track_subscription("ana@example.com")

    p = transport.events("subscription")[0]
    assert p["email"] == "ana@example.com"
    assert p["eventData"]["timeToSubscribe"] == 95
    assert p["eventData"]["pagesViewedBeforeSubscribe"] == 1
    assert p["eventData"]["scrollDepthBeforeSubscribe"] == 80


def test_track_page_view_updates_counter_and_url(collector, transport):
    collector.track_page_view("https://maison.example/atelier", "Atelier")

    assert collector.page_view_count == 2
    last = transport.events("page_view")[-1]
    assert last["pageUrl"] == "https://maison.example/atelier"
    assert last["pagesViewed"] == 2
    assert last["eventData"] == {"pageTitle": "Atelier"}


def test_unknown_event_type_is_rejected(collector):
    with pytest.raises(ValueError):
        collector.track_event("purchase")


def test_transport_errors_never_reach_the_page(clock):
    c = EventCollector(BrokenTransport(), "https://maison.example/", clock=clock)
    c.on_scroll(50)
    c.on_click(element="A")
    assert c.page_view_count == 1
    assert c.click_count == 1
