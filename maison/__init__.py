# maison/__init__.py: Maison site (analytics pipeline)
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import click
from flask import Flask, jsonify, request
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from maison.config import AnalyticsSettings, get_config, resolve_settings
from maison.models import db, init_models, utcnow
from maison.services import AnalyticsServices, build_services, get_services, init_services

# pool options SQLite's pool classes reject
_POOL_ONLY_OPTIONS = ("pool_size", "max_overflow", "pool_timeout")


# ============================================================
# Logging
# ============================================================

def _setup_logging(app: Flask) -> None:
    """
    Same logging locally and in prod.
    Honors LOG_LEVEL.
    """
    lvl = str(app.config.get("LOG_LEVEL") or "").strip().upper()
    if lvl in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
        level = getattr(logging, lvl)
    else:
        level = logging.DEBUG if app.debug else logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s",
        )
    app.logger.setLevel(level)


def _safe_init(app: Flask, label: str, fn: Callable[[], Any]) -> Any:
    try:
        out = fn()
        app.logger.info("✅ %s initialized", label)
        return out
    except Exception as e:
        app.logger.warning("⚠️ %s could not be initialized: %s", label, e, exc_info=app.debug)
        return None


def _engine_options(uri: str, options: Dict[str, Any]) -> Dict[str, Any]:
    if not uri.startswith("sqlite"):
        return dict(options)
    return {k: v for k, v in options.items() if k not in _POOL_ONLY_OPTIONS}


def _is_api(path: str) -> bool:
    return path.startswith("/api/") or path == "/api"


# ============================================================
# App Factory
# ============================================================

def create_app(
    config_name: Optional[str] = None,
    *,
    settings: Optional[AnalyticsSettings] = None,
    services: Optional[AnalyticsServices] = None,
    config_overrides: Optional[Dict[str, Any]] = None,
) -> Flask:
    """
    config_name: development | testing | production (default: ENV / FLASK_ENV)
    settings / services: injected by tests; otherwise resolved from the environment.
    The caller owns the services container and closes it (run.py / wsgi.py).
    """
    app = Flask(__name__, template_folder="templates")

    app.config.from_object(get_config(config_name))
    if config_overrides:
        app.config.update(config_overrides)
    app.debug = bool(app.config.get("DEBUG"))

    # Render/Railway proxy: scheme/host + X-Forwarded-For
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    _setup_logging(app)
    app.logger.info("🚀 create_app() ENV=%s DEBUG=%s", app.config["ENV"], app.debug)

    if app.config.get("ENV") == "production" and not app.config.get("SECRET_KEY"):
        app.logger.warning("⚠️ SECRET_KEY not set in production; admin sessions will not work")

    # -------------------------
    # Database
    # -------------------------
    uri = str(app.config.get("SQLALCHEMY_DATABASE_URI") or "")
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = _engine_options(uri, app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})

    init_models(app, auto_create_tables=bool(app.config.get("AUTO_CREATE_TABLES")) and app.config["ENV"] == "development")

    # -------------------------
    # Extensions (safe)
    # -------------------------
    if app.config.get("ENABLE_COMPRESS"):
        def _compress():
            from flask_compress import Compress
            Compress(app)

        _safe_init(app, "Flask-Compress", _compress)

    if app.config.get("ENABLE_TALISMAN"):
        def _talisman():
            from flask_talisman import Talisman

            # dashboards pull Leaflet + tiles from CDNs
            Talisman(
                app,
                force_https=bool(app.config.get("FORCE_HTTPS")),
                content_security_policy=None,
            )

        _safe_init(app, "Flask-Talisman", _talisman)

    def _migrate():
        from flask_migrate import Migrate
        Migrate(app, db)

    _safe_init(app, "Flask-Migrate", _migrate)

    # -------------------------
    # Analytics services
    # -------------------------
    if services is None:
        services = build_services(settings or resolve_settings())
    init_services(app, services)

    # -------------------------
    # Blueprints
    # -------------------------
    from maison.routes import admin_bp, subscribe_bp, tracking_bp

    registered: List[str] = []
    for bp in (tracking_bp, subscribe_bp, admin_bp):
        app.register_blueprint(bp)
        registered.append(bp.name)
        app.logger.info("🔗 Blueprint registered: %s", bp.name)

    # -------------------------
    # Base routes
    # -------------------------
    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "env": app.config["ENV"],
            "debug": bool(app.debug),
            "blueprints": registered,
            "time": utcnow().isoformat(timespec="seconds") + "Z",
        }

    @app.errorhandler(404)
    def not_found(_e):
        if _is_api(request.path):
            return jsonify(success=False, error="not_found", path=request.path), 404
        return "Not Found", 404

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return jsonify(success=False, error="method_not_allowed"), 405

    @app.errorhandler(500)
    def server_error(e):
        app.logger.exception("🔥 Error 500: %s", e)
        if _is_api(request.path):
            return jsonify(success=False, error="server_error"), 500
        return "Internal Server Error", 500

    @app.errorhandler(Exception)
    def unhandled(e):
        if isinstance(e, HTTPException):
            return e
        db.session.rollback()
        return server_error(e)

    _register_cli(app)
    return app


# ============================================================
# CLI (flask --app wsgi <command>)
# ============================================================

def _register_cli(app: Flask) -> None:
    @app.cli.command("init-db")
    def cli_init_db():
        """Create the analytics tables."""
        db.create_all()
        click.echo("✅ Tables created: " + ", ".join(sorted(db.metadata.tables)))

    @app.cli.command("check-db")
    def cli_check_db():
        """Connectivity + table presence."""
        try:
            db.session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            click.echo(f"❌ Database not reachable: {e}")
            raise SystemExit(1)

        present = set(inspect(db.engine).get_table_names())
        missing = sorted(set(db.metadata.tables) - present)
        click.echo(f"✅ Connected ({db.engine.dialect.name})")
        for name in sorted(db.metadata.tables):
            click.echo(f"  {'✅' if name in present else '❌'} {name}")
        if missing:
            click.echo("Run `flask --app wsgi init-db` to create the missing tables.")
            raise SystemExit(1)

    @app.cli.command("test-slack")
    def cli_test_slack():
        """Send a sample visitor notification to the configured webhook."""
        from maison.analytics.device import DeviceInfo
        from maison.services.geolocation import LocationRecord
        from maison.services.notifications import VisitorNotice
        from maison.utils.clock import format_local_time

        services = get_services(app)
        if not services.settings.visitor_webhook_url:
            click.echo("❌ No visitor webhook configured (SLACK_COMINGSOON_WEBHOOK_URL, "
                       "SLACK_COMINGSOON_WEBHOOK, SLACK_VISITOR_WEBHOOK_URL, SLACK_WEBHOOK_URL)")
            raise SystemExit(1)

        now = utcnow()
        notice = VisitorNotice(
            session_id="cli-test",
            ip_address="127.0.0.1",
            ip_label="Test",
            location=LocationRecord(ip="127.0.0.1", country="Test Country", city="Test City"),
            device=DeviceInfo(type="desktop", browser="Test Browser", os="Test OS"),
            user_agent="Test User Agent",
            referer="https://test.example",
            timestamp=now,
            local_time=format_local_time(now, services.settings.report_timezone),
            is_new_visitor=True,
        )
        ok = services.slack.send_visitor_notification(notice)
        click.echo(f"Webhook source: {services.settings.visitor_webhook_source}")
        click.echo(f"Last delivery: {services.slack.last_delivery}")
        click.echo("✅ Test notification sent" if ok else "❌ Test notification failed")
        if not ok:
            raise SystemExit(1)

    @app.cli.command("test-email")
    @click.argument("to_email")
    def cli_test_email(to_email: str):
        """Send a test email through the configured provider."""
        services = get_services(app)
        click.echo(f"Provider: {services.email.provider or 'none'}")
        ok = services.email.send_html(
            to_email,
            "Maison · test email",
            "<p>If you can read this, outbound email is configured.</p>",
        )
        click.echo("✅ Email sent" if ok else "❌ Email not sent (see logs)")
        if not ok:
            raise SystemExit(1)


__all__ = ["create_app", "db"]
