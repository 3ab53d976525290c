from __future__ import annotations

import json

import requests
from sqlalchemy import func, select

from maison.models import TrackingEvent, Visitor, db


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _event(event_type="page_view", **extra):
    payload = {
        "sessionId": "1700000000000-abc123xyz",
        "eventType": event_type,
        "timestamp": 1_700_000_000_000,
        "pageUrl": "https://maison.example/collections",
        "referrer": "https://www.google.com/search?q=maison",
        "userAgent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0 Safari/537.36",
        "timeOnSite": 12,
        "pagesViewed": 1,
        "scrollDepth": 0,
        "clickEvents": 0,
        "eventData": {},
    }
    payload.update(extra)
    return payload


def _events():
    db.session.expire_all()
    return db.session.execute(select(TrackingEvent).order_by(TrackingEvent.id)).scalars().all()


def _visitor_count():
    return db.session.execute(select(func.count(Visitor.id))).scalar_one()


# ---------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------

def test_page_view_is_stored_with_location(client, http):
    r = client.post("/api/track", json=_event(), headers={"X-Forwarded-For": "8.8.8.8, 10.0.0.1"})

    assert r.status_code == 200
    assert r.get_json() == {"success": True, "received": True, "stored": True}

    (row,) = _events()
    assert row.event_type == "page_view"
    assert row.ip_address == "8.8.8.8"
    assert row.country == "United Arab Emirates"
    assert row.location_string == "Dubai, Dubai, United Arab Emirates"
    assert row.browser == "Chrome"
    assert row.referer == "https://www.google.com/search?q=maison"
    assert row.client_timestamp.year == 2023
    assert row.event_data["timeOnSite"] == 12

    # one lookup shared by the event row and the visitor upsert
    assert len(http.calls_to("http://ip-api.com/")) == 1


def test_page_view_also_upserts_the_visitor(client):
    client.post("/api/track", json=_event(), headers={"X-Forwarded-For": "8.8.8.8"})
    client.post("/api/track", json=_event(pageUrl="https://maison.example/atelier"), headers={"X-Forwarded-For": "8.8.8.8"})

    db.session.expire_all()
    v = db.session.execute(select(Visitor)).scalar_one()
    assert v.visit_count == 2
    assert v.pages_visited == ["https://maison.example/collections", "https://maison.example/atelier"]


def test_non_page_view_events_do_not_touch_visitors(client):
    r = client.post("/api/track", json=_event("scroll", eventData={"scrollDepth": 50}))

    assert r.get_json()["stored"] is True
    assert _visitor_count() == 0
    assert _events()[0].event_data["scrollDepth"] == 50


def test_beacon_text_plain_body_is_accepted(client):
    r = client.post(
        "/api/track",
        data=json.dumps(_event("session_end")),
        content_type="text/plain;charset=UTF-8",
    )

    assert r.status_code == 200
    assert r.get_json()["stored"] is True
    assert _events()[0].event_type == "session_end"


def test_unreadable_body_is_a_500(client):
    r = client.post("/api/track", data="{not json", content_type="application/json")

    assert r.status_code == 500
    assert r.get_json()["success"] is False
    assert _events() == []


def test_unknown_event_type_is_acknowledged_not_stored(client, http):
    r = client.post("/api/track", json=_event("purchase"), headers={"X-Forwarded-For": "8.8.8.8"})

    assert r.status_code == 200
    assert r.get_json() == {"success": True, "received": True, "stored": False}
    assert _events() == []
    assert http.calls == []


def test_missing_session_id_is_not_stored(client):
    payload = _event()
    del payload["sessionId"]
    r = client.post("/api/track", json=payload)

    assert r.status_code == 200
    assert r.get_json()["stored"] is False


def test_storage_failure_still_answers_200(client):
    TrackingEvent.__table__.drop(db.engine)

    r = client.post("/api/track", json=_event("click"))

    assert r.status_code == 200
    assert r.get_json() == {"success": True, "received": True, "stored": False}

    TrackingEvent.__table__.create(db.engine)


def test_subscription_event_email_is_normalized(client):
    client.post(
        "/api/track",
        json=_event("subscription", eventData={"email": "Ana@Example.COM", "timeToSubscribe": 30}),
    )

    row = _events()[0]
    assert row.email == "ana@example.com"
    assert row.event_data["timeToSubscribe"] == 30


def test_client_ip_falls_back_to_x_real_ip(client):
    client.post("/api/track", json=_event("click"), headers={"X-Real-IP": "1.1.1.1"})
    assert _events()[0].ip_address == "1.1.1.1"


def test_private_ip_is_stored_without_location(client, http):
    client.post("/api/track", json=_event("click"))

    row = _events()[0]
    assert row.ip_address == "127.0.0.1"
    assert row.country is None
    assert http.calls == []


def test_get_reports_liveness(client):
    r = client.get("/api/track")
    assert r.status_code == 200
    assert r.get_json()["message"] == "Tracking endpoint active"


def test_geolocation_outage_still_stores_the_event(client, http):
    http.route("GET", "http://ip-api.com/json/", error=requests.ConnectionError("down"))

    r = client.post("/api/track", json=_event(), headers={"X-Forwarded-For": "8.8.8.8"})

    assert r.status_code == 200
    assert r.get_json() == {"success": True, "received": True, "stored": True}
    row = _events()[0]
    assert row.ip_address == "8.8.8.8"
    assert row.country is None
    assert row.latitude is None
    assert len(http.calls_to("http://ip-api.com/")) == 1
