from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import Select, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from maison.models import IPLabel, Subscription, db, utcnow

logger = logging.getLogger(__name__)

MAX_LIMIT = 1000
DEFAULT_LIMIT = 100
MAP_LIMIT = 1000

# world view when there is nothing to center on
DEFAULT_MAP_CENTER = (20.0, 0.0)

CSV_COLUMNS = (
    "id",
    "email",
    "ip_address",
    "country",
    "country_code",
    "city",
    "region",
    "latitude",
    "longitude",
    "location_string",
    "entry_point",
    "search_query",
    "campaign_source",
    "campaign_medium",
    "campaign_name",
    "device_type",
    "browser",
    "os",
    "time_to_subscribe",
    "pages_viewed",
    "scroll_depth",
    "created_at",
)


def clamp_limit(raw: Any, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    try:
        v = int(raw)
    except (TypeError, ValueError):
        return default
    return max(1, min(v, maximum))


def clamp_offset(raw: Any) -> int:
    try:
        return max(0, int(raw))
    except (TypeError, ValueError):
        return 0


def parse_date(raw: Any, end_of_day: bool = False) -> Optional[datetime]:
    """
    'YYYY-MM-DD' or any ISO-8601 datetime ('Z' accepted) -> naive UTC.
    Plain dates used as an upper bound cover the whole day.
    Raises ValueError on anything else.
    """
    if raw in (None, ""):
        return None
    s = str(raw).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    if end_of_day and len(str(raw).strip()) == 10:
        dt = dt.replace(hour=23, minute=59, second=59, microsecond=999999)
    return dt


@dataclass
class SubscriptionFilter:
    email: Optional[str] = None      # substring, case-insensitive
    country: Optional[str] = None    # exact
    city: Optional[str] = None       # exact
    region: Optional[str] = None     # exact
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, data: Any) -> "SubscriptionFilter":
        """Query args or JSON body. Bad dates raise ValueError."""

        def _s(key: str) -> Optional[str]:
            v = data.get(key)
            v = str(v).strip() if v is not None else ""
            return v or None

        return cls(
            email=_s("email"),
            country=_s("country"),
            city=_s("city"),
            region=_s("region"),
            start=parse_date(data.get("startDate")),
            end=parse_date(data.get("endDate"), end_of_day=True),
        )

    def apply(self, stmt: Select) -> Select:
        if self.email:
            stmt = stmt.where(func.lower(Subscription.email).contains(self.email.lower(), autoescape=True))
        if self.country:
            stmt = stmt.where(Subscription.country == self.country)
        if self.city:
            stmt = stmt.where(Subscription.city == self.city)
        if self.region:
            stmt = stmt.where(Subscription.region == self.region)
        if self.start:
            stmt = stmt.where(Subscription.created_at >= self.start)
        if self.end:
            stmt = stmt.where(Subscription.created_at <= self.end)
        return stmt


class ReportingService:
    """Read side of the admin dashboards. Aggregates run in SQL over the full filtered set."""

    # -------------------------
    # Subscriptions
    # -------------------------
    def list_subscriptions(
        self,
        filters: SubscriptionFilter,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
    ) -> Dict[str, Any]:
        rows = (
            db.session.execute(
                filters.apply(select(Subscription))
                .order_by(Subscription.created_at.desc(), Subscription.id.desc())
                .limit(limit)
                .offset(offset)
            )
            .scalars()
            .all()
        )
        total = db.session.execute(filters.apply(select(func.count(Subscription.id)))).scalar_one()

        return {
            "total": int(total),
            "count": len(rows),
            "limit": limit,
            "offset": offset,
            "subscriptions": [r.to_dict() for r in rows],
            "byCountry": self._group_counts(filters, Subscription.country),
            "byCity": self._group_counts(filters, Subscription.city),
        }

    def search_subscriptions(self, filters: SubscriptionFilter, limit: int = DEFAULT_LIMIT) -> List[Subscription]:
        return list(
            db.session.execute(
                filters.apply(select(Subscription))
                .order_by(Subscription.created_at.desc(), Subscription.id.desc())
                .limit(limit)
            )
            .scalars()
            .all()
        )

    def _group_counts(self, filters: SubscriptionFilter, column: Any) -> Dict[str, int]:
        label = func.coalesce(column, "Unknown")
        n = func.count(Subscription.id)
        stmt = filters.apply(select(label.label("k"), n.label("n"))).group_by(label).order_by(n.desc(), label)
        return {row.k: int(row.n) for row in db.session.execute(stmt)}

    def map_points(self, limit: int = MAP_LIMIT) -> Dict[str, Any]:
        stmt = (
            select(
                Subscription.id,
                Subscription.email,
                Subscription.latitude,
                Subscription.longitude,
                Subscription.city,
                Subscription.country,
                Subscription.region,
                Subscription.location_string,
                Subscription.created_at,
            )
            .where(
                Subscription.latitude.is_not(None),
                Subscription.longitude.is_not(None),
                Subscription.latitude != 0,
                Subscription.longitude != 0,
            )
            .order_by(Subscription.created_at.desc())
            .limit(min(limit, MAP_LIMIT))
        )
        points = [
            {
                "id": r.id,
                "email": r.email,
                "latitude": r.latitude,
                "longitude": r.longitude,
                "city": r.city,
                "country": r.country,
                "region": r.region,
                "location_string": r.location_string,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in db.session.execute(stmt)
        ]
        center, zoom = self._map_view(points)
        return {"count": len(points), "subscriptions": points, "center": center, "zoom": zoom}

    @staticmethod
    def _map_view(points: List[Dict[str, Any]]) -> Tuple[List[float], int]:
        if not points:
            return [DEFAULT_MAP_CENTER[0], DEFAULT_MAP_CENTER[1]], 2
        lats = [p["latitude"] for p in points]
        lons = [p["longitude"] for p in points]
        center = [round(sum(lats) / len(lats), 4), round(sum(lons) / len(lons), 4)]
        return center, (10 if len(points) == 1 else 3)

    def export_csv(self, filters: SubscriptionFilter) -> str:
        rows = db.session.execute(
            filters.apply(select(Subscription)).order_by(Subscription.created_at.desc(), Subscription.id.desc())
        ).scalars()

        buf = io.StringIO()
        w = csv.writer(buf)
        w.writerow(CSV_COLUMNS)
        for s in rows:
            d = s.to_dict()
            w.writerow(["" if d.get(col) is None else d.get(col) for col in CSV_COLUMNS])
        return buf.getvalue()

    # -------------------------
    # IP labels
    # -------------------------
    def list_labels(self) -> List[IPLabel]:
        return list(db.session.execute(select(IPLabel).order_by(IPLabel.label, IPLabel.ip_address)).scalars().all())

    def upsert_label(self, ip_address: str, label: str, notes: Optional[str] = None) -> IPLabel:
        """Insert or overwrite the label of an IP. Raises SQLAlchemyError after rollback."""
        ip_address = ip_address.strip()[:45]
        label = label.strip()[:120]
        now = utcnow()
        values = {"ip_address": ip_address, "label": label, "notes": notes, "created_at": now, "updated_at": now}

        try:
            dialect = db.session.get_bind().dialect.name
            if dialect in ("postgresql", "sqlite"):
                insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
                stmt = insert(IPLabel).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[IPLabel.__table__.c.ip_address],
                    set_={"label": stmt.excluded.label, "notes": stmt.excluded.notes, "updated_at": now},
                )
                db.session.execute(stmt)
            else:
                row = db.session.execute(
                    select(IPLabel).where(IPLabel.ip_address == ip_address).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    db.session.add(IPLabel(**values))
                else:
                    row.label = label
                    row.notes = notes
                    row.updated_at = now
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("IP label upsert failed for %s", ip_address)
            raise

        return db.session.execute(
            select(IPLabel).where(IPLabel.ip_address == ip_address).execution_options(populate_existing=True)
        ).scalar_one()

    def delete_label(self, ip_address: str) -> bool:
        row = db.session.execute(select(IPLabel).where(IPLabel.ip_address == ip_address.strip())).scalar_one_or_none()
        if row is None:
            return False
        try:
            db.session.delete(row)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("IP label delete failed for %s", ip_address)
            raise
        return True
