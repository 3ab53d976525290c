# maison/models/subscription.py
from __future__ import annotations

from typing import Any, Dict

from maison.models import db, utcnow


class Subscription(db.Model):
    """
    "Request access" sign-up. One row per email (unique).
    Location, device, attribution and behaviour are a snapshot taken
    when the form was submitted.
    """

    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    ip_address = db.Column(db.String(45), nullable=True)

    # Location
    country = db.Column(db.String(100), nullable=True, index=True)
    country_code = db.Column(db.String(2), nullable=True)
    city = db.Column(db.String(100), nullable=True, index=True)
    region = db.Column(db.String(100), nullable=True)
    region_code = db.Column(db.String(10), nullable=True)
    timezone = db.Column(db.String(50), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    location_string = db.Column(db.Text, nullable=True)

    # Attribution
    user_agent = db.Column(db.Text, nullable=True)
    referer = db.Column(db.Text, nullable=True)
    entry_point = db.Column(db.String(50), nullable=True)
    search_query = db.Column(db.Text, nullable=True)
    campaign_source = db.Column(db.String(100), nullable=True)
    campaign_medium = db.Column(db.String(100), nullable=True)
    campaign_name = db.Column(db.String(100), nullable=True)

    # Device
    device_type = db.Column(db.String(20), nullable=True)
    browser = db.Column(db.String(50), nullable=True)
    os = db.Column(db.String(50), nullable=True)
    screen_resolution = db.Column(db.String(20), nullable=True)

    # Behaviour at subscribe time
    session_id = db.Column(db.String(100), nullable=True)
    time_to_subscribe = db.Column(db.Integer, nullable=True)  # seconds
    pages_viewed = db.Column(db.Integer, nullable=True)
    scroll_depth = db.Column(db.Integer, nullable=True)

    # MailerLite
    mailerlite_subscriber_id = db.Column(db.String(100), nullable=True)
    mailerlite_group_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Subscription {self.email}>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "ip_address": self.ip_address,
            "country": self.country,
            "country_code": self.country_code,
            "city": self.city,
            "region": self.region,
            "region_code": self.region_code,
            "timezone": self.timezone,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "location_string": self.location_string,
            "user_agent": self.user_agent,
            "referer": self.referer,
            "entry_point": self.entry_point,
            "search_query": self.search_query,
            "campaign_source": self.campaign_source,
            "campaign_medium": self.campaign_medium,
            "campaign_name": self.campaign_name,
            "device_type": self.device_type,
            "browser": self.browser,
            "os": self.os,
            "time_to_subscribe": self.time_to_subscribe,
            "pages_viewed": self.pages_viewed,
            "scroll_depth": self.scroll_depth,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
