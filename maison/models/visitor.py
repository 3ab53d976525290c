# maison/models/visitor.py
from __future__ import annotations

from typing import Any, Dict

from maison.models import JSONType, db, utcnow


class Visitor(db.Model):
    """
    One row per sessionId.
    - visit_count only goes up
    - pages_visited is append-only (duplicates allowed)
    - first_visit is set on insert and never rewritten
    Sole writer: VisitorService (atomic upsert on session_id).
    """

    __tablename__ = "visitors"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(100), nullable=False, unique=True, index=True)
    ip_address = db.Column(db.String(45), nullable=True, index=True)

    # Location
    country = db.Column(db.String(100), nullable=True, index=True)
    country_code = db.Column(db.String(2), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    region = db.Column(db.String(100), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    timezone = db.Column(db.String(50), nullable=True)

    # Device
    device_type = db.Column(db.String(20), nullable=True)
    browser = db.Column(db.String(50), nullable=True)
    os = db.Column(db.String(50), nullable=True)
    screen_resolution = db.Column(db.String(20), nullable=True)

    # Visits
    pages_visited = db.Column(JSONType, nullable=False, default=list)
    visit_count = db.Column(db.Integer, nullable=False, default=1)
    first_visit = db.Column(db.DateTime, nullable=False, default=utcnow)
    last_visit = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    local_time = db.Column(db.String(50), nullable=True)  # formatted in REPORT_TIMEZONE

    user_agent = db.Column(db.Text, nullable=True)
    referer = db.Column(db.Text, nullable=True)
    entry_point = db.Column(db.String(50), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Visitor {self.session_id} visits={self.visit_count}>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "ip_address": self.ip_address,
            "country": self.country,
            "country_code": self.country_code,
            "city": self.city,
            "region": self.region,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timezone": self.timezone,
            "device_type": self.device_type,
            "browser": self.browser,
            "os": self.os,
            "screen_resolution": self.screen_resolution,
            "pages_visited": list(self.pages_visited or []),
            "visit_count": self.visit_count,
            "local_time": self.local_time,
            "first_visit": self.first_visit.isoformat() if self.first_visit else None,
            "last_visit": self.last_visit.isoformat() if self.last_visit else None,
            "user_agent": self.user_agent,
            "referer": self.referer,
            "entry_point": self.entry_point,
        }
