from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from maison.analytics.collector import EVENT_TYPES
from maison.analytics.device import resolve_device
from maison.analytics.result import Result
from maison.models import TrackingEvent, db
from maison.services.geolocation import GeoResolver, LocationRecord
from maison.services.visitor_service import VisitorService, VisitRequest

logger = logging.getLogger(__name__)


def _client_timestamp(raw: Any) -> Optional[datetime]:
    """Collector sends epoch milliseconds."""
    if raw in (None, ""):
        return None
    try:
        ms = float(raw)
        return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _str(data: Mapping[str, Any], key: str, max_len: Optional[int] = None) -> Optional[str]:
    v = data.get(key)
    if v in (None, ""):
        return None
    s = str(v)
    return s[:max_len] if max_len else s


class TrackingService:
    """
    Server side of /api/track.
    One tracking_events row per accepted event, location frozen at write time.
    Best effort: ingest() reports problems through Result, it does not raise.
    """

    def __init__(self, geo: GeoResolver, visitors: Optional[VisitorService] = None):
        self.geo = geo
        self.visitors = visitors

    def ingest(self, data: Mapping[str, Any], ip_address: str) -> Result[TrackingEvent]:
        session_id = (_str(data, "sessionId") or "").strip()[:100]
        event_type = (_str(data, "eventType") or "").strip()

        if not session_id or event_type not in EVENT_TYPES:
            logger.info("Tracking event ignored (sessionId=%r, eventType=%r)", session_id, event_type)
            return Result.failure("invalid_input", "sessionId and a known eventType are required")

        location = self.geo.resolve(ip_address)
        result = self._store(data, session_id, event_type, ip_address, location)

        if event_type == "page_view" and self.visitors is not None:
            visit = self.visitors.upsert(VisitRequest.from_payload(data, ip_address), location=location)
            if not visit.ok:
                logger.warning("Visitor upsert skipped for %s: %s", session_id, visit.error)

        return result

    def _store(
        self,
        data: Mapping[str, Any],
        session_id: str,
        event_type: str,
        ip_address: str,
        location: Optional[LocationRecord],
    ) -> Result[TrackingEvent]:
        event_data = data.get("eventData")
        if not isinstance(event_data, dict):
            event_data = {}

        device = resolve_device(
            _str(data, "userAgent"),
            _str(data, "deviceType"),
            _str(data, "browser"),
            _str(data, "os"),
            _str(data, "screenResolution"),
        )
        email = _str(data, "email") or (str(event_data["email"]) if event_data.get("email") else None)

        row = TrackingEvent(
            session_id=session_id,
            event_type=event_type,
            email=(email or "").strip().lower()[:255] or None,
            ip_address=(ip_address or "unknown")[:45],
            country=location.country if location else None,
            city=location.city if location else None,
            region=location.region if location else None,
            location_string=location.location_string if location else None,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
            event_data=self._event_data(data, event_data),
            page_url=_str(data, "pageUrl"),
            referer=_str(data, "referrer") or _str(data, "referer"),
            user_agent=_str(data, "userAgent"),
            device_type=device.type,
            browser=device.browser,
            os=device.os,
            client_timestamp=_client_timestamp(data.get("timestamp")),
        )

        try:
            db.session.add(row)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception("⚠️ Tracking event not stored (%s, session %s)", event_type, session_id)
            return Result.failure("persistence", "tracking event not stored", e)

        logger.debug("📊 Tracking event %s stored for %s", event_type, session_id)
        return Result.success(row)

    @staticmethod
    def _event_data(data: Mapping[str, Any], event_data: Dict[str, Any]) -> Dict[str, Any]:
        """eventData plus the session counters the collector reports on every event."""
        out = dict(event_data)
        for key in (
            "timeOnSite",
            "pagesViewed",
            "scrollDepth",
            "clickEvents",
            "entryPoint",
            "searchQuery",
            "campaignSource",
            "campaignMedium",
            "campaignName",
            "language",
            "timezone",
            "viewportSize",
        ):
            if key in data and key not in out and data[key] not in (None, ""):
                out[key] = data[key]
        return out
