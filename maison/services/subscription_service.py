from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Tuple

import requests
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from maison.analytics.device import resolve_device
from maison.analytics.entry_point import classify_entry_point
from maison.analytics.result import Result
from maison.models import Subscription, db, utcnow
from maison.services.email_service import EmailService, subscription_email_html
from maison.services.geolocation import GeoResolver, LocationRecord
from maison.services.notifications import NotificationDispatcher, SlackNotifier, SubscriptionNotice
from maison.utils.clock import format_local_time

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MAILERLITE_GROUP_URL = "https://api.mailerlite.com/api/v2/groups/{group_id}/subscribers"
MAILERLITE_SOURCE = "Website Subscription"


def normalize_email(email: Any) -> str:
    return str(email or "").strip().lower()


def validate_email(email: Any) -> Optional[str]:
    """Normalized address, or None when it does not look like one."""
    email = normalize_email(email)
    if not email or len(email) > 255 or not EMAIL_RE.match(email):
        return None
    return email


def _str(data: Mapping[str, Any], key: str, max_len: Optional[int] = None) -> Optional[str]:
    v = data.get(key)
    if v in (None, ""):
        return None
    s = str(v)
    return s[:max_len] if max_len else s


def _clip(v: Optional[str], max_len: int) -> Optional[str]:
    return v[:max_len] if v else None


def _int(v: Any) -> Optional[int]:
    if v in (None, ""):
        return None
    try:
        return int(float(v))
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass(frozen=True)
class MailerLiteResult:
    ok: bool
    subscriber_id: Optional[str] = None
    group_id: Optional[int] = None
    message: str = ""


class MailerLiteClient:
    """
    Forwards sign-ups to MailerLite.
    Form action URL first (no key needed), else API key + group.
    """

    def __init__(
        self,
        form_url: str = "",
        api_key: str = "",
        group_id: str = "",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.form_url = (form_url or "").strip()
        self.api_key = (api_key or "").strip()
        self.group_id = (group_id or "").strip()
        self.timeout = timeout
        self._session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.form_url or (self.api_key and self.group_id))

    def close(self) -> None:
        self._session.close()

    def subscribe(self, email: str) -> MailerLiteResult:
        if self.form_url:
            return self._via_form(email)
        if self.api_key and self.group_id:
            return self._via_api(email)
        logger.info("MailerLite not configured (MAILERLITE_FORM_URL or MAILERLITE_API_KEY + MAILERLITE_GROUP_ID)")
        return MailerLiteResult(ok=False, message="not configured")

    def _via_form(self, email: str) -> MailerLiteResult:
        try:
            resp = self._session.post(
                self.form_url,
                data={"email": email, "fields[source]": MAILERLITE_SOURCE},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("MailerLite form submission failed: %s", e)
            return MailerLiteResult(ok=False, message=str(e))

        if not resp.ok:
            logger.warning("MailerLite form submission error %s: %s", resp.status_code, (resp.text or "")[:300])
            return MailerLiteResult(ok=False, message=f"HTTP {resp.status_code}")
        return MailerLiteResult(ok=True)

    def _via_api(self, email: str) -> MailerLiteResult:
        group = _int(self.group_id)
        try:
            resp = self._session.post(
                MAILERLITE_GROUP_URL.format(group_id=self.group_id),
                json={"email": email, "name": "", "fields": {"source": MAILERLITE_SOURCE}},
                headers={"X-MailerLite-ApiKey": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("MailerLite API request failed: %s", e)
            return MailerLiteResult(ok=False, group_id=group, message=str(e))

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if resp.ok:
            sid = payload.get("id")
            return MailerLiteResult(ok=True, subscriber_id=str(sid) if sid else None, group_id=group)

        message = str((payload.get("error") or {}).get("message") or resp.text or "")[:300]
        if resp.status_code == 400 and "already" in message:
            return MailerLiteResult(ok=True, group_id=group, message="already subscribed")

        logger.warning("MailerLite API error %s: %s", resp.status_code, message)
        return MailerLiteResult(ok=False, group_id=group, message=message)


@dataclass
class SubscribeOutcome:
    subscription: Optional[Subscription]
    already: bool = False
    mailerlite_ok: bool = False


class SubscriptionService:
    """
    "Request access" sign-ups.
    - one row per email, repeats are acknowledged without a new row
    - enrichment: geolocation, device, entry point, behaviour at submit time
    - side effects (MailerLite, Slack, admin email) never fail the sign-up
    """

    def __init__(
        self,
        geo: GeoResolver,
        mailerlite: Optional[MailerLiteClient] = None,
        notifier: Optional[SlackNotifier] = None,
        email: Optional[EmailService] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        *,
        notify_to: str = "",
        report_timezone: str = "Asia/Dubai",
        clock: Callable[[], Any] = utcnow,
    ):
        self.geo = geo
        self.mailerlite = mailerlite
        self.notifier = notifier
        self.email = email
        self.dispatcher = dispatcher
        self.notify_to = (notify_to or "").strip()
        self.report_timezone = report_timezone
        self._clock = clock

    def subscribe(self, data: Mapping[str, Any], ip_address: str) -> Result[SubscribeOutcome]:
        email = validate_email(data.get("email"))
        if not email:
            return Result.failure("invalid_input", "Invalid email address")

        try:
            existing = db.session.execute(
                select(Subscription).where(Subscription.email == email)
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception("Subscription lookup failed for %s", email)
            return Result.failure("persistence", "subscription lookup failed", e)

        if existing is not None:
            logger.info("Already subscribed: %s", email)
            return Result.success(SubscribeOutcome(subscription=existing, already=True))

        sub, location = self._build(email, data, ip_address)
        try:
            db.session.add(sub)
            db.session.commit()
        except IntegrityError:
            # concurrent submit of the same address won the unique index
            db.session.rollback()
            logger.info("Already subscribed (concurrent insert): %s", email)
            return Result.success(SubscribeOutcome(subscription=None, already=True))
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception("Subscription insert failed for %s", email)
            return Result.failure("persistence", "subscription not stored", e)

        logger.info("🎉 New subscription: %s (%s)", email, sub.location_string or "Unknown")

        mailerlite_ok = self._forward_to_mailerlite(sub)
        self._notify(sub, location, mailerlite_ok)
        return Result.success(SubscribeOutcome(subscription=sub, already=False, mailerlite_ok=mailerlite_ok))

    # -------------------------
    # Internals
    # -------------------------
    def _build(
        self, email: str, data: Mapping[str, Any], ip_address: str
    ) -> Tuple[Subscription, Optional[LocationRecord]]:
        location = self.geo.resolve(ip_address)
        country_code = (location.country_code or "")[:2] if location else ""
        user_agent = _str(data, "userAgent", 1000)
        referer = _str(data, "referrer", 2000) or _str(data, "referer", 2000)
        device = resolve_device(
            user_agent,
            _str(data, "deviceType"),
            _str(data, "browser"),
            _str(data, "os"),
            _str(data, "screenResolution"),
        )
        entry = classify_entry_point(referer, _str(data, "pageUrl", 2000))

        sub = Subscription(
            email=email,
            ip_address=(ip_address or "unknown")[:45],
            country=location.country if location else None,
            country_code=country_code or None,
            city=location.city if location else None,
            region=location.region if location else None,
            region_code=location.region_code if location else None,
            timezone=location.timezone if location else None,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
            location_string=location.location_string if location else None,
            user_agent=user_agent,
            referer=referer,
            entry_point=_clip(_str(data, "entryPoint") or entry.entry_point, 50),
            search_query=_str(data, "searchQuery", 500) or entry.search_query,
            campaign_source=_clip(_str(data, "campaignSource") or entry.campaign_source, 100),
            campaign_medium=_clip(_str(data, "campaignMedium") or entry.campaign_medium, 100),
            campaign_name=_clip(_str(data, "campaignName") or entry.campaign_name, 100),
            device_type=device.type,
            browser=device.browser,
            os=device.os,
            screen_resolution=device.screen_resolution,
            session_id=_str(data, "sessionId", 100),
            time_to_subscribe=_int(data.get("timeToSubscribe")),
            pages_viewed=_int(data.get("pagesViewed")),
            scroll_depth=_int(data.get("scrollDepth")),
        )
        return sub, location

    def _forward_to_mailerlite(self, sub: Subscription) -> bool:
        if self.mailerlite is None or not self.mailerlite.configured:
            return False

        result = self.mailerlite.subscribe(sub.email)
        if result.subscriber_id or result.group_id:
            sub.mailerlite_subscriber_id = result.subscriber_id
            sub.mailerlite_group_id = result.group_id
            try:
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                logger.warning("Could not store MailerLite ids for %s", sub.email)
        return result.ok

    def _notify(self, sub: Subscription, location: Optional[LocationRecord], mailerlite_ok: bool) -> None:
        if self.dispatcher is None:
            return

        now = sub.created_at or self._clock()
        snapshot = sub.to_dict()

        if self.notifier is not None:
            notice = SubscriptionNotice(
                email=sub.email,
                ip_address=sub.ip_address or "unknown",
                location=location,
                device=resolve_device(sub.user_agent, sub.device_type, sub.browser, sub.os, sub.screen_resolution),
                user_agent=sub.user_agent,
                referer=sub.referer,
                timestamp=now,
                local_time=format_local_time(now, self.report_timezone),
                pages_visited=sub.pages_viewed or 1,
                mailerlite_success=mailerlite_ok,
            )
            self.dispatcher.submit(self.notifier.send_subscription_notification, notice)

        if self.email is not None and self.notify_to:
            self.dispatcher.submit(
                self.email.send_html,
                self.notify_to,
                f"New Maison registration: {sub.email}",
                subscription_email_html(snapshot),
            )
