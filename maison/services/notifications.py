from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from maison.analytics.device import DeviceInfo
from maison.services.geolocation import LocationRecord, format_location

logger = logging.getLogger(__name__)


# =============================================================================
# Payloads
# =============================================================================

@dataclass
class VisitorNotice:
    session_id: str
    ip_address: str
    location: Optional[LocationRecord] = None
    device: DeviceInfo = field(default_factory=DeviceInfo)
    ip_label: Optional[str] = None
    page_url: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    entry_point: Optional[str] = None
    timestamp: Optional[datetime] = None
    local_time: Optional[str] = None
    pages_visited: int = 1
    visit_count: int = 1
    is_new_visitor: bool = False
    is_daily_visitor: bool = False
    is_unusual_pattern: bool = False
    pattern_alerts: List[str] = field(default_factory=list)


@dataclass
class SubscriptionNotice:
    email: str
    ip_address: str
    location: Optional[LocationRecord] = None
    device: DeviceInfo = field(default_factory=DeviceInfo)
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    timestamp: Optional[datetime] = None
    local_time: Optional[str] = None
    pages_visited: int = 1
    mailerlite_success: bool = False


@dataclass(frozen=True)
class Delivery:
    """Outcome of the last webhook attempt, kept for diagnostics (CLI, tests)."""

    ok: bool
    kind: str
    status_code: Optional[int] = None
    body: str = ""
    error: str = ""


# =============================================================================
# Slack
# =============================================================================

def _field(label: str, value: Any) -> Dict[str, str]:
    return {"type": "mrkdwn", "text": f"*{label}:*\n{value}"}


def _coordinates(location: Optional[LocationRecord]) -> str:
    if location and location.has_coordinates:
        return f"{location.latitude}, {location.longitude}"
    return "N/A"


def _details_blocks(user_agent: Optional[str], referer: Optional[str]) -> List[Dict[str, Any]]:
    details = []
    if user_agent:
        ua = user_agent[:100] + ("..." if len(user_agent) > 100 else "")
        details.append(f"*User Agent:* {ua}")
    if referer:
        details.append(f"*Referer:* {referer}")
    if not details:
        return []
    return [
        {"type": "section", "text": {"type": "mrkdwn", "text": "*Additional Details:*"}},
        {"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(details)}},
    ]


def _map_block(location: Optional[LocationRecord]) -> List[Dict[str, Any]]:
    url = location.map_url if location else None
    if not url:
        return []
    return [{"type": "section", "text": {"type": "mrkdwn", "text": f"📍 <{url}|View on Google Maps>"}}]


def build_visitor_message(notice: VisitorNotice) -> Dict[str, Any]:
    if notice.is_unusual_pattern:
        title = "🚨 Unusual Visitor Pattern"
    elif notice.is_new_visitor:
        title = "👀 New Visitor"
    elif notice.is_daily_visitor:
        title = "🔁 Returning Visitor"
    else:
        title = "👣 Visitor Activity"

    location = format_location(notice.location)
    who = f"{notice.ip_label} ({notice.ip_address})" if notice.ip_label else notice.ip_address

    fields = [
        _field("IP Address", f"`{notice.ip_address}`"),
        _field("Label", notice.ip_label or "-"),
        _field("Location", location),
        _field("Coordinates", _coordinates(notice.location)),
        _field("Time", notice.timestamp.isoformat(timespec="seconds") if notice.timestamp else "N/A"),
        _field("Local Time", notice.local_time or "N/A"),
        _field("Device", f"{notice.device.type} • {notice.device.browser}"),
        _field("OS", notice.device.os),
        _field("Visits", notice.visit_count),
        _field("Pages Visited", notice.pages_visited),
    ]

    blocks: List[Dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": title, "emoji": True}},
        {"type": "section", "fields": fields},
    ]
    if notice.page_url:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*Page:* {notice.page_url}"}})
    if notice.pattern_alerts:
        alerts = "\n".join(f"• {a}" for a in notice.pattern_alerts)
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*Pattern alerts:*\n{alerts}"}})
    blocks.extend(_map_block(notice.location))
    blocks.extend(_details_blocks(notice.user_agent, notice.referer))
    blocks.append({"type": "divider"})

    return {"text": f"{title}: {who} from {location}", "blocks": blocks}


def build_subscription_message(notice: SubscriptionNotice) -> Dict[str, Any]:
    fields = [
        _field("Email", notice.email),
        _field("Status", "✅ Success" if notice.mailerlite_success else "⚠️ Partial"),
        _field("Location", format_location(notice.location)),
        _field("IP Address", f"`{notice.ip_address}`"),
        _field("Coordinates", _coordinates(notice.location)),
        _field("Time", notice.timestamp.isoformat(timespec="seconds") if notice.timestamp else "N/A"),
        _field("Local Time", notice.local_time or "N/A"),
        _field("Device", f"{notice.device.type} • {notice.device.browser}"),
        _field("OS", notice.device.os),
        _field("Pages Visited", notice.pages_visited or 1),
    ]
    blocks: List[Dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": "🎉 New Email Subscription", "emoji": True}},
        {"type": "section", "fields": fields},
    ]
    blocks.extend(_map_block(notice.location))
    blocks.extend(_details_blocks(notice.user_agent, notice.referer))
    blocks.append({"type": "divider"})

    return {"text": f"🎉 New Subscription: {notice.email}", "blocks": blocks}


class SlackNotifier:
    """
    Incoming-webhook sender.
    - URLs resolved once at startup (AnalyticsSettings); missing -> False, no I/O
    - one attempt per call, explicit timeout
    - failures end up in last_delivery, never raised
    """

    def __init__(
        self,
        visitor_webhook_url: str = "",
        subscription_webhook_url: str = "",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.visitor_webhook_url = (visitor_webhook_url or "").strip()
        self.subscription_webhook_url = (subscription_webhook_url or "").strip()
        self.timeout = timeout
        self._session = session or requests.Session()
        self.last_delivery: Optional[Delivery] = None

    def send_visitor_notification(self, notice: VisitorNotice) -> bool:
        return self._post("visitor", self.visitor_webhook_url, build_visitor_message(notice))

    def send_subscription_notification(self, notice: SubscriptionNotice) -> bool:
        return self._post("subscription", self.subscription_webhook_url, build_subscription_message(notice))

    def close(self) -> None:
        self._session.close()

    def _post(self, kind: str, url: str, message: Dict[str, Any]) -> bool:
        if not url:
            logger.info("📱 Slack %s webhook not configured, skipping notification", kind)
            return False

        try:
            resp = self._session.post(url, json=message, timeout=self.timeout)
        except requests.RequestException as e:
            self.last_delivery = Delivery(ok=False, kind=kind, error=str(e))
            logger.warning("❌ Slack %s notification failed: %s", kind, e)
            return False

        body = (resp.text or "")[:500]
        self.last_delivery = Delivery(ok=resp.ok, kind=kind, status_code=resp.status_code, body=body)
        if not resp.ok:
            logger.warning("❌ Slack %s notification failed: %s %s", kind, resp.status_code, body)
            return False

        logger.info("✅ Slack %s notification sent", kind)
        return True


# =============================================================================
# Dispatcher
# =============================================================================

class NotificationDispatcher:
    """
    Runs notification jobs off the request thread.
    async_mode=False runs them inline (tests, CLI).
    A failing job is logged; it never reaches the caller.
    """

    def __init__(self, async_mode: bool = True, max_workers: int = 2):
        self.async_mode = async_mode
        self._executor: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify") if async_mode else None
        )

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Optional[Future]:
        if self._executor is None:
            self._run(fn, *args, **kwargs)
            return None
        try:
            return self._executor.submit(self._run, fn, *args, **kwargs)
        except RuntimeError:
            # executor already shut down (process exiting)
            logger.warning("Notification dropped, dispatcher closed: %s", getattr(fn, "__name__", fn))
            return None

    def close(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    @staticmethod
    def _run(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception:
            logger.exception("Notification job failed: %s", getattr(fn, "__name__", fn))
            return None
