# maison/models/tracking_event.py
from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import Index

from maison.models import JSONType, db, utcnow


class TrackingEvent(db.Model):
    """
    One discrete client action (page_view, scroll, click, subscription, ...).
    Append-only: rows are written by the ingest endpoint and never touched again.
    Location columns are frozen at write time.
    """

    __tablename__ = "tracking_events"

    id = db.Column(db.Integer, primary_key=True)

    session_id = db.Column(db.String(100), nullable=False, index=True)
    event_type = db.Column(db.String(50), nullable=False, index=True)

    # User
    email = db.Column(db.String(255), nullable=True, index=True)
    ip_address = db.Column(db.String(45), nullable=True)

    # Location (from IP, at write time)
    country = db.Column(db.String(100), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    region = db.Column(db.String(100), nullable=True)
    location_string = db.Column(db.Text, nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    # Event
    event_data = db.Column(JSONType, nullable=True, default=dict)
    page_url = db.Column(db.Text, nullable=True)
    referer = db.Column(db.Text, nullable=True)
    user_agent = db.Column(db.Text, nullable=True)

    # Device
    device_type = db.Column(db.String(20), nullable=True)
    browser = db.Column(db.String(50), nullable=True)
    os = db.Column(db.String(50), nullable=True)

    client_timestamp = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<TrackingEvent {self.event_type} #{self.id}>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "event_type": self.event_type,
            "email": self.email,
            "ip_address": self.ip_address,
            "country": self.country,
            "city": self.city,
            "region": self.region,
            "location_string": self.location_string,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "event_data": self.event_data or {},
            "page_url": self.page_url,
            "referer": self.referer,
            "device_type": self.device_type,
            "browser": self.browser,
            "os": self.os,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


Index("ix_tracking_events_type_created", TrackingEvent.event_type, TrackingEvent.created_at)
