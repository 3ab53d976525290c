"""Maison · Routes Package

Blueprints registered by create_app():
- tracking_bp   → /api/track, /api/visitors (collector ingest + visitor upsert)
- subscribe_bp  → /api/subscribe ("request access" form)
- admin_bp      → /api/subscriptions*, /api/ip-labels, /admin/* dashboards
"""

from __future__ import annotations

from .tracking_routes import tracking_bp
from .subscribe_routes import subscribe_bp
from .admin_routes import admin_bp

__all__ = ["tracking_bp", "subscribe_bp", "admin_bp"]
