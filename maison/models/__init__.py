# maison/models/__init__.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# ==========================================================
# Maison: Models HUB
# - one global db
# - init_models(app) + optional create_all (dev)
# - exports: from maison.models import Visitor, Subscription, ...
# ==========================================================

db = SQLAlchemy()

# JSONB on Postgres (supports ||), plain JSON text elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC, same as what the DB hands back for TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_models(app: Flask, auto_create_tables: bool = False) -> Dict[str, Any]:
    """
    db.init_app + (optionally) create tables.
    """
    db.init_app(app)

    out: Dict[str, Any] = {"ok": True, "models": sorted(_MODELS)}

    if auto_create_tables:
        with app.app_context():
            db.create_all()
            out["created"] = True

    return out


from maison.models.subscription import Subscription  # noqa: E402
from maison.models.visitor import Visitor  # noqa: E402
from maison.models.tracking_event import TrackingEvent  # noqa: E402
from maison.models.ip_label import IPLabel  # noqa: E402

_MODELS = {
    "Subscription": Subscription,
    "Visitor": Visitor,
    "TrackingEvent": TrackingEvent,
    "IPLabel": IPLabel,
}

__all__ = [
    "db",
    "JSONType",
    "utcnow",
    "init_models",
    "Subscription",
    "Visitor",
    "TrackingEvent",
    "IPLabel",
]
