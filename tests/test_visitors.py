from __future__ import annotations

from datetime import timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from maison.models import IPLabel, Visitor, db, utcnow
from maison.services.visitor_service import VisitorService


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

SESSION = "1700000000000-k3j4h5g6f"


def _visit(client, page="/", session_id=SESSION, ip="8.8.8.8", **extra):
    body = {
        "sessionId": session_id,
        "pageUrl": page,
        "userAgent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile Safari/604.1",
        "referrer": "https://l.instagram.com/",
        "screenResolution": "390x844",
    }
    body.update(extra)
    return client.post("/api/visitors", json=body, headers={"X-Forwarded-For": ip})


def _visitor(session_id=SESSION):
    db.session.expire_all()
    return db.session.execute(select(Visitor).where(Visitor.session_id == session_id)).scalar_one()


def _slack_posts(http, services):
    return http.calls_to(services.settings.visitor_webhook_url, "POST")


# ---------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------

def test_first_visit_creates_the_row(client):
    r = _visit(client)

    assert r.status_code == 200
    data = r.get_json()
    assert data["success"] is True
    assert data["isNewVisitor"] is True
    assert data["visitor"]["visit_count"] == 1
    assert data["visitor"]["pages_visited"] == ["/"]
    assert data["visitor"]["country"] == "United Arab Emirates"
    assert data["visitor"]["device_type"] == "mobile"
    assert data["visitor"]["entry_point"] == "social"


def test_repeat_visits_increment_and_append(client):
    _visit(client, "/")
    first = _visitor().first_visit

    r = _visit(client, "/collections")
    _visit(client, "/collections")

    assert r.get_json()["isNewVisitor"] is False
    v = _visitor()
    assert v.visit_count == 3
    assert v.pages_visited == ["/", "/collections", "/collections"]
    assert v.first_visit == first
    assert v.last_visit >= first
    assert db.session.execute(select(func.count(Visitor.id))).scalar_one() == 1


def test_missing_page_url_keeps_pages(client):
    _visit(client, "/")
    client.post("/api/visitors", json={"sessionId": SESSION}, headers={"X-Forwarded-For": "8.8.8.8"})

    v = _visitor()
    assert v.visit_count == 2
    assert v.pages_visited == ["/"]


def test_failed_lookup_keeps_the_known_location(client, http):
    _visit(client, "/", ip="8.8.8.8")
    _visit(client, "/atelier", ip="10.0.0.7")

    v = _visitor()
    assert v.ip_address == "10.0.0.7"
    assert v.country == "United Arab Emirates"
    assert v.city == "Dubai"


def test_separate_sessions_get_separate_rows(client):
    _visit(client, session_id="s-1")
    _visit(client, session_id="s-2")

    assert db.session.execute(select(func.count(Visitor.id))).scalar_one() == 2


def test_session_id_is_required(client):
    r = client.post("/api/visitors", json={"pageUrl": "/"})
    assert r.status_code == 400
    assert r.get_json()["success"] is False

    r = client.post("/api/visitors", data="nope", content_type="application/json")
    assert r.status_code == 400


def test_store_failure_is_a_500_without_notification(client, http, services, monkeypatch):
    def _boom(self, *args, **kwargs):
        raise SQLAlchemyError("database unavailable")

    monkeypatch.setattr(VisitorService, "_upsert_on_conflict", _boom)

    r = _visit(client)

    assert r.status_code == 500
    assert r.get_json() == {"success": False, "error": "Failed to track visitor"}
    assert _slack_posts(http, services) == []


# ---------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------

def test_new_visitor_notifies_once(client, http, services):
    _visit(client, "/")
    _visit(client, "/collections")

    posts = _slack_posts(http, services)
    assert len(posts) == 1
    assert posts[0].json["text"].startswith("👀 New Visitor: 8.8.8.8 from Dubai")
    assert posts[0].kwargs["timeout"] == services.settings.slack_timeout


def test_returning_on_a_later_day_notifies(client, http, services):
    _visit(client, "/")
    db.session.execute(
        update(Visitor).where(Visitor.session_id == SESSION).values(first_visit=utcnow() - timedelta(days=2))
    )
    db.session.commit()

    _visit(client, "/lookbook")

    posts = _slack_posts(http, services)
    assert len(posts) == 2
    assert posts[1].json["text"].startswith("🔁 Returning Visitor")


def test_unusual_pattern_notifies_with_alerts(client, http, services):
    services.visitors.alert_visits = 3

    for page in ("/", "/a", "/b"):
        _visit(client, page)

    posts = _slack_posts(http, services)
    assert len(posts) == 2
    unusual = posts[1].json
    assert unusual["text"].startswith("🚨 Unusual Visitor Pattern")
    alert_blocks = [b for b in unusual["blocks"] if "Pattern alerts" in b.get("text", {}).get("text", "")]
    assert "High visit count: 3 visits in this session" in alert_blocks[0]["text"]["text"]


def test_ip_label_is_attached_to_the_notification(client, http, services):
    db.session.add(IPLabel(ip_address="8.8.8.8", label="Studio Office"))
    db.session.commit()

    _visit(client)

    text = _slack_posts(http, services)[0].json["text"]
    assert "Studio Office (8.8.8.8)" in text


def test_slack_failure_does_not_fail_the_request(client, http, services):
    http.route("POST", services.settings.visitor_webhook_url, status=500, text="invalid_payload")

    r = _visit(client)

    assert r.status_code == 200
    assert services.slack.last_delivery.ok is False
    assert services.slack.last_delivery.status_code == 500


# ---------------------------------------------------------------------
# Admin listing
# ---------------------------------------------------------------------

def test_listing_requires_admin(client):
    r = client.get("/api/visitors")
    assert r.status_code == 403
    assert r.get_json() == {"success": False, "error": "forbidden"}
    assert r.headers["Cache-Control"].startswith("no-store")


def test_listing_pages_through_visitors(client, admin_headers):
    for sid in ("s-1", "s-2", "s-3"):
        _visit(client, session_id=sid)

    r = client.get("/api/visitors?limit=2&offset=0", headers=admin_headers)

    assert r.status_code == 200
    data = r.get_json()
    assert data["total"] == 3
    assert data["limit"] == 2
    assert len(data["visitors"]) == 2

    r = client.get("/api/visitors?limit=abc&offset=-5", headers=admin_headers)
    data = r.get_json()
    assert data["limit"] == 100
    assert data["offset"] == 0
    assert len(data["visitors"]) == 3
