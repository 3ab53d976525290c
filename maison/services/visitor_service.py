from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import cast, func, literal, literal_column, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError

from maison.analytics.device import DeviceInfo, resolve_device
from maison.analytics.entry_point import classify_entry_point
from maison.analytics.result import Result
from maison.models import IPLabel, Visitor, db, utcnow
from maison.services.geolocation import GeoResolver, LocationRecord
from maison.services.notifications import NotificationDispatcher, SlackNotifier, VisitorNotice
from maison.utils.clock import format_local_time, local_date

logger = logging.getLogger(__name__)

# columns taken from the latest lookup only when it produced a value
_LOCATION_COLUMNS = ("country", "country_code", "city", "region", "latitude", "longitude", "timezone")

# upsert(location=...) default: not looked up yet. None means looked up, nothing found.
_UNRESOLVED: Any = object()


@dataclass
class VisitRequest:
    session_id: str
    ip_address: str = "unknown"
    page_url: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    screen_resolution: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    entry_point: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any], ip_address: str) -> "VisitRequest":
        """camelCase body of /api/visitors or /api/track."""

        def _s(*keys: str) -> Optional[str]:
            for k in keys:
                v = data.get(k)
                if v not in (None, ""):
                    return str(v)
            return None

        return cls(
            session_id=(_s("sessionId") or "").strip()[:100],
            ip_address=ip_address or "unknown",
            page_url=_s("pageUrl"),
            user_agent=_s("userAgent"),
            referer=_s("referer", "referrer"),
            screen_resolution=_s("screenResolution"),
            device_type=_s("deviceType"),
            browser=_s("browser"),
            os=_s("os"),
            entry_point=_s("entryPoint"),
        )


@dataclass
class VisitOutcome:
    visitor: Visitor
    is_new_visitor: bool
    is_daily_visitor: bool = False
    is_unusual_pattern: bool = False
    pattern_alerts: List[str] = field(default_factory=list)
    ip_label: Optional[str] = None
    notification_queued: bool = False

    @property
    def notification_worthy(self) -> bool:
        return self.is_new_visitor or self.is_daily_visitor or self.is_unusual_pattern


class VisitorService:
    """
    Sole writer of the visitors table.

    upsert() is a single INSERT ... ON CONFLICT (session_id) DO UPDATE on
    PostgreSQL and SQLite, so concurrent page loads of the same session can
    neither create two rows nor lose an increment. Other dialects get a
    SELECT ... FOR UPDATE read-modify-write.
    """

    def __init__(
        self,
        geo: GeoResolver,
        notifier: Optional[SlackNotifier] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        *,
        report_timezone: str = "Asia/Dubai",
        alert_visits: int = 10,
        alert_pages: int = 20,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.geo = geo
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.report_timezone = report_timezone
        self.alert_visits = alert_visits
        self.alert_pages = alert_pages
        self._clock = clock

    # -------------------------
    # Public
    # -------------------------
    def upsert(self, req: VisitRequest, location: Optional[LocationRecord] = _UNRESOLVED) -> Result[VisitOutcome]:
        if not req.session_id:
            return Result.failure("invalid_input", "sessionId required")

        if location is _UNRESOLVED:
            location = self.geo.resolve(req.ip_address)
        device = resolve_device(req.user_agent, req.device_type, req.browser, req.os, req.screen_resolution)
        now = self._clock()
        values = self._row_values(req, location, device, now)

        try:
            dialect = db.session.get_bind().dialect.name
            if dialect in ("postgresql", "sqlite"):
                visitor_id, visit_count, first_visit = self._upsert_on_conflict(dialect, values, req.page_url, now)
            else:
                visitor_id, visit_count, first_visit = self._upsert_locked(values, req.page_url, now)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception("Visitor upsert failed for session %s", req.session_id)
            return Result.failure("persistence", "visitor upsert failed", e)

        visitor = db.session.get(Visitor, visitor_id, populate_existing=True)
        outcome = self._evaluate(visitor, visit_count, first_visit, now)
        outcome.ip_label = self.label_for(req.ip_address)

        if outcome.notification_worthy:
            outcome.notification_queued = self._dispatch(outcome, req, location, device, now)

        return Result.success(outcome)

    def label_for(self, ip_address: Optional[str]) -> Optional[str]:
        if not ip_address or ip_address == "unknown":
            return None
        try:
            return db.session.execute(
                select(IPLabel.label).where(IPLabel.ip_address == ip_address)
            ).scalar_one_or_none()
        except SQLAlchemyError:
            db.session.rollback()
            logger.warning("IP label lookup failed for %s", ip_address)
            return None

    def list_visitors(self, limit: int = 100, offset: int = 0) -> Tuple[List[Visitor], int]:
        total = db.session.execute(select(func.count(Visitor.id))).scalar_one()
        rows = (
            db.session.execute(
                select(Visitor).order_by(Visitor.last_visit.desc(), Visitor.id.desc()).limit(limit).offset(offset)
            )
            .scalars()
            .all()
        )
        return list(rows), int(total)

    # -------------------------
    # Write paths
    # -------------------------
    def _row_values(
        self,
        req: VisitRequest,
        location: Optional[LocationRecord],
        device: DeviceInfo,
        now: datetime,
    ) -> Dict[str, Any]:
        entry_point = req.entry_point or classify_entry_point(req.referer, req.page_url).entry_point
        values: Dict[str, Any] = {
            "session_id": req.session_id,
            "ip_address": (req.ip_address or "unknown")[:45],
            "device_type": device.type,
            "browser": device.browser,
            "os": device.os,
            "screen_resolution": device.screen_resolution,
            "pages_visited": [req.page_url] if req.page_url else [],
            "visit_count": 1,
            "first_visit": now,
            "last_visit": now,
            "local_time": format_local_time(now, self.report_timezone),
            "user_agent": req.user_agent,
            "referer": req.referer,
            "entry_point": entry_point[:50],
            "created_at": now,
            "updated_at": now,
        }
        for col in _LOCATION_COLUMNS:
            values[col] = getattr(location, col, None) if location else None
        if values["country_code"]:
            values["country_code"] = values["country_code"][:2]
        return values

    def _upsert_on_conflict(
        self,
        dialect: str,
        values: Dict[str, Any],
        page_url: Optional[str],
        now: datetime,
    ) -> Tuple[int, int, datetime]:
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(Visitor).values(**values)
        excluded = stmt.excluded
        table = Visitor.__table__.c

        set_: Dict[str, Any] = {
            "visit_count": table.visit_count + 1,
            "last_visit": excluded.last_visit,
            "local_time": excluded.local_time,
            "ip_address": excluded.ip_address,
            "device_type": excluded.device_type,
            "browser": excluded.browser,
            "os": excluded.os,
            "screen_resolution": excluded.screen_resolution,
            "user_agent": func.coalesce(excluded.user_agent, table.user_agent),
            "referer": func.coalesce(excluded.referer, table.referer),
            "updated_at": now,
        }
        for col in _LOCATION_COLUMNS:
            set_[col] = func.coalesce(excluded[col], table[col])

        if page_url:
            if dialect == "postgresql":
                set_["pages_visited"] = func.coalesce(table.pages_visited, literal_column("'[]'::jsonb")).op("||")(
                    cast(literal([page_url], type_=JSONB), JSONB)
                )
            else:
                set_["pages_visited"] = func.json_insert(
                    func.coalesce(table.pages_visited, literal_column("'[]'")), "$[#]", page_url
                )

        stmt = stmt.on_conflict_do_update(index_elements=[table.session_id], set_=set_).returning(
            table.id, table.visit_count, table.first_visit
        )
        row = db.session.execute(stmt).one()
        return row.id, row.visit_count, row.first_visit

    def _upsert_locked(
        self,
        values: Dict[str, Any],
        page_url: Optional[str],
        now: datetime,
    ) -> Tuple[int, int, datetime]:
        visitor = db.session.execute(
            select(Visitor).where(Visitor.session_id == values["session_id"]).with_for_update()
        ).scalar_one_or_none()

        if visitor is None:
            visitor = Visitor(**values)
            db.session.add(visitor)
            db.session.flush()
            return visitor.id, visitor.visit_count, visitor.first_visit

        visitor.visit_count = (visitor.visit_count or 0) + 1
        visitor.last_visit = now
        visitor.updated_at = now
        for key in ("local_time", "ip_address", "device_type", "browser", "os", "screen_resolution"):
            setattr(visitor, key, values[key])
        for key in _LOCATION_COLUMNS + ("user_agent", "referer"):
            if values[key] is not None:
                setattr(visitor, key, values[key])
        if page_url:
            visitor.pages_visited = list(visitor.pages_visited or []) + [page_url]
        db.session.flush()
        return visitor.id, visitor.visit_count, visitor.first_visit

    # -------------------------
    # Notification
    # -------------------------
    def _evaluate(self, visitor: Visitor, visit_count: int, first_visit: datetime, now: datetime) -> VisitOutcome:
        is_new = visit_count == 1
        is_daily = (not is_new) and local_date(first_visit, self.report_timezone) < local_date(
            now, self.report_timezone
        )

        alerts: List[str] = []
        if visit_count >= self.alert_visits:
            alerts.append(f"High visit count: {visit_count} visits in this session")
        pages = len(visitor.pages_visited or []) if visitor is not None else 0
        if pages >= self.alert_pages:
            alerts.append(f"High page count: {pages} pages visited")

        return VisitOutcome(
            visitor=visitor,
            is_new_visitor=is_new,
            is_daily_visitor=is_daily,
            is_unusual_pattern=bool(alerts),
            pattern_alerts=alerts,
        )

    def _dispatch(
        self,
        outcome: VisitOutcome,
        req: VisitRequest,
        location: Optional[LocationRecord],
        device: DeviceInfo,
        now: datetime,
    ) -> bool:
        if self.notifier is None or self.dispatcher is None:
            return False

        visitor = outcome.visitor
        notice = VisitorNotice(
            session_id=req.session_id,
            ip_address=req.ip_address,
            location=location,
            device=device,
            ip_label=outcome.ip_label,
            page_url=req.page_url,
            user_agent=req.user_agent,
            referer=req.referer,
            entry_point=visitor.entry_point if visitor is not None else None,
            timestamp=now,
            local_time=visitor.local_time if visitor is not None else None,
            pages_visited=len(visitor.pages_visited or []) if visitor is not None else 1,
            visit_count=visitor.visit_count if visitor is not None else 1,
            is_new_visitor=outcome.is_new_visitor,
            is_daily_visitor=outcome.is_daily_visitor,
            is_unusual_pattern=outcome.is_unusual_pattern,
            pattern_alerts=list(outcome.pattern_alerts),
        )
        self.dispatcher.submit(self.notifier.send_visitor_notification, notice)
        return True
