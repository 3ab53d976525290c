from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

import requests
from flask import Flask, current_app

from maison.config import AnalyticsSettings, resolve_settings
from maison.services.email_service import EmailService
from maison.services.geolocation import GeoResolver
from maison.services.notifications import NotificationDispatcher, SlackNotifier
from maison.services.reporting import ReportingService
from maison.services.subscription_service import MailerLiteClient, SubscriptionService
from maison.services.tracking_service import TrackingService
from maison.services.visitor_service import VisitorService

log = logging.getLogger("services")

EXTENSION_KEY = "analytics"

__version__ = "1.0.0"


@dataclass
class AnalyticsServices:
    """
    Everything the analytics pipeline shares across requests.
    Built once per app (create_app) or injected by tests;
    close() belongs to whoever owns the process (run.py / wsgi.py).
    """

    settings: AnalyticsSettings
    geo: GeoResolver
    slack: SlackNotifier
    email: EmailService
    mailerlite: MailerLiteClient
    dispatcher: NotificationDispatcher
    visitors: VisitorService
    tracking: TrackingService
    subscriptions: SubscriptionService
    reporting: ReportingService

    def __post_init__(self) -> None:
        self._closed = False
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True

        # drain queued notifications before their HTTP sessions go away
        self.dispatcher.close(wait=True)
        for name, closer in (
            ("geo", self.geo.close),
            ("slack", self.slack.close),
            ("email", self.email.close),
            ("mailerlite", self.mailerlite.close),
        ):
            try:
                closer()
            except Exception:
                log.exception("Error closing %s", name)
        log.info("Analytics services closed")


def build_services(
    settings: Optional[AnalyticsSettings] = None,
    session: Optional[requests.Session] = None,
) -> AnalyticsServices:
    """session: one shared HTTP session for every outbound client (tests pass a fake)."""
    settings = settings or resolve_settings()

    geo = GeoResolver(
        google_api_key=settings.google_geolocation_api_key,
        timeout=settings.geo_timeout,
        cache_ttl=settings.geo_cache_ttl,
        session=session,
    )
    slack = SlackNotifier(
        visitor_webhook_url=settings.visitor_webhook_url,
        subscription_webhook_url=settings.subscription_webhook_url,
        timeout=settings.slack_timeout,
        session=session,
    )
    email = EmailService(settings.email, session=session)
    mailerlite = MailerLiteClient(
        form_url=settings.mailerlite_form_url,
        api_key=settings.mailerlite_api_key,
        group_id=settings.mailerlite_group_id,
        session=session,
    )
    dispatcher = NotificationDispatcher(async_mode=settings.notify_async)

    visitors = VisitorService(
        geo,
        slack,
        dispatcher,
        report_timezone=settings.report_timezone,
        alert_visits=settings.visitor_alert_visits,
        alert_pages=settings.visitor_alert_pages,
    )
    tracking = TrackingService(geo, visitors)
    subscriptions = SubscriptionService(
        geo,
        mailerlite,
        slack,
        email,
        dispatcher,
        notify_to=settings.email.notify_to,
        report_timezone=settings.report_timezone,
    )

    if not settings.visitor_webhook_url:
        log.info("📱 No visitor Slack webhook configured, visitor notifications disabled")
    else:
        log.info("📱 Visitor notifications via %s", settings.visitor_webhook_source)
    if not settings.email.configured:
        log.info("📧 No email provider configured")
    else:
        log.info("📧 Email provider: %s", settings.email.provider)

    return AnalyticsServices(
        settings=settings,
        geo=geo,
        slack=slack,
        email=email,
        mailerlite=mailerlite,
        dispatcher=dispatcher,
        visitors=visitors,
        tracking=tracking,
        subscriptions=subscriptions,
        reporting=ReportingService(),
    )


def init_services(app: Flask, services: Optional[AnalyticsServices] = None) -> AnalyticsServices:
    services = services or build_services()
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services(app: Optional[Flask] = None) -> AnalyticsServices:
    app = app or current_app
    services = app.extensions.get(EXTENSION_KEY)
    if services is None:
        raise RuntimeError("Analytics services not initialized (create_app)")
    return services


__all__ = [
    "__version__",
    "AnalyticsServices",
    "build_services",
    "init_services",
    "get_services",
]
