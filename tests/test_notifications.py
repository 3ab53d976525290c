from __future__ import annotations

import logging
from datetime import datetime

import requests

from maison.analytics.device import DeviceInfo
from maison.services.geolocation import LocationRecord
from maison.services.notifications import (
    NotificationDispatcher,
    SlackNotifier,
    SubscriptionNotice,
    VisitorNotice,
    build_subscription_message,
    build_visitor_message,
)

HOOK = "https://hooks.slack.test/services/T000/B000/XXXX"

PARIS = LocationRecord(ip="81.2.69.160", country="France", city="Paris", latitude=48.8566, longitude=2.3522)


def _notice(**kw):
    base = dict(
        session_id="s-1",
        ip_address="81.2.69.160",
        location=PARIS,
        device=DeviceInfo(type="desktop", browser="Firefox", os="macOS"),
        page_url="https://maison.example/",
        timestamp=datetime(2026, 3, 1, 9, 30),
        local_time="03/01/2026, 13:30:00",
        is_new_visitor=True,
    )
    base.update(kw)
    return VisitorNotice(**base)


# ---------------------------------------------------------------------
# Message shape
# ---------------------------------------------------------------------

def test_visitor_message_blocks():
    msg = build_visitor_message(_notice(user_agent="UA", referer="https://vogue.com/"))

    assert msg["text"] == "👀 New Visitor: 81.2.69.160 from Paris, France"
    header = msg["blocks"][0]
    assert header["type"] == "header"
    assert header["text"]["text"] == "👀 New Visitor"

    texts = [b["text"]["text"] for b in msg["blocks"] if b.get("type") == "section" and "text" in b]
    assert "*Page:* https://maison.example/" in texts
    assert any("https://www.google.com/maps?q=48.8566,2.3522&z=10" in t for t in texts)
    assert any("*Referer:* https://vogue.com/" in t for t in texts)
    assert msg["blocks"][-1] == {"type": "divider"}


def test_unusual_title_wins_over_new():
    msg = build_visitor_message(_notice(is_unusual_pattern=True, pattern_alerts=["High page count: 25 pages visited"]))
    assert msg["blocks"][0]["text"]["text"] == "🚨 Unusual Visitor Pattern"
    assert any("High page count" in b.get("text", {}).get("text", "") for b in msg["blocks"])


def test_message_without_location_says_unknown():
    msg = build_visitor_message(_notice(location=None, is_new_visitor=False, is_daily_visitor=True))
    assert msg["text"] == "🔁 Returning Visitor: 81.2.69.160 from Unknown"
    assert not any("google.com/maps" in str(b) for b in msg["blocks"])


def test_subscription_message():
    msg = build_subscription_message(SubscriptionNotice(email="ana@example.com", ip_address="81.2.69.160", location=PARIS))
    assert msg["text"] == "🎉 New Subscription: ana@example.com"
    assert msg["blocks"][0]["text"]["text"] == "🎉 New Email Subscription"


# ---------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------

def test_missing_webhook_means_no_io(http):
    slack = SlackNotifier(session=http)

    assert slack.send_visitor_notification(_notice()) is False
    assert slack.send_subscription_notification(SubscriptionNotice(email="a@b.co", ip_address="x")) is False
    assert http.calls == []
    assert slack.last_delivery is None


def test_successful_post(http):
    http.route("POST", HOOK, text="ok")
    slack = SlackNotifier(visitor_webhook_url=HOOK, timeout=4.0, session=http)

    assert slack.send_visitor_notification(_notice()) is True

    (call,) = http.calls
    assert call.json["text"].startswith("👀 New Visitor")
    assert call.kwargs["timeout"] == 4.0
    assert slack.last_delivery.ok is True
    assert slack.last_delivery.kind == "visitor"


def test_non_2xx_is_recorded(http):
    http.route("POST", HOOK, status=404, text="no_service")
    slack = SlackNotifier(visitor_webhook_url=HOOK, session=http)

    assert slack.send_visitor_notification(_notice()) is False
    assert slack.last_delivery.status_code == 404
    assert slack.last_delivery.body == "no_service"


def test_transport_error_is_recorded(http):
    http.route("POST", HOOK, error=requests.Timeout("read timed out"))
    slack = SlackNotifier(subscription_webhook_url=HOOK, session=http)

    ok = slack.send_subscription_notification(SubscriptionNotice(email="a@b.co", ip_address="1.1.1.1"))

    assert ok is False
    assert slack.last_delivery.kind == "subscription"
    assert "timed out" in slack.last_delivery.error


# ---------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------

def test_inline_dispatcher_runs_immediately():
    seen = []
    d = NotificationDispatcher(async_mode=False)

    assert d.submit(seen.append, "job") is None
    assert seen == ["job"]


def test_failing_job_is_logged_not_raised(caplog):
    def _explode():
        raise RuntimeError("boom")

    d = NotificationDispatcher(async_mode=False)
    with caplog.at_level(logging.ERROR):
        d.submit(_explode)

    assert "Notification job failed" in caplog.text


def test_async_dispatcher_drains_on_close():
    seen = []
    d = NotificationDispatcher(async_mode=True, max_workers=1)

    future = d.submit(seen.append, "later")
    d.close(wait=True)

    assert future is not None
    assert future.done()
    assert seen == ["later"]
    assert d.submit(seen.append, "too late") is None
