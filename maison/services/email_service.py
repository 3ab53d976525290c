from __future__ import annotations

import html as html_lib
import logging
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import requests

from maison.config import EmailSettings

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"

_TAG_RE = re.compile(r"<[^>]*>")


def html_to_text(html: str) -> str:
    return _TAG_RE.sub("", html or "")


class EmailService:
    """
    Outbound email through the first configured provider:
      RESEND_API_KEY -> SENDGRID_API_KEY -> EMAIL_WEBHOOK_URL -> SMTP_HOST
    - The provider is picked once (EmailSettings), not per message.
    - Never raises: not configured / provider error -> logs and returns False.
    """

    def __init__(
        self,
        settings: Optional[EmailSettings] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ):
        self.settings = settings or EmailSettings()
        self.timeout = timeout
        self._session = session or requests.Session()

    @property
    def provider(self) -> str:
        return self.settings.provider

    def ready(self) -> bool:
        return self.settings.configured

    def close(self) -> None:
        self._session.close()

    # -------------------------
    # Public
    # -------------------------
    def send_html(self, to_email: str, subject: str, html: str, text: Optional[str] = None) -> bool:
        if not self.ready():
            logger.warning(
                "⚠️ No email service configured (RESEND_API_KEY, SENDGRID_API_KEY, EMAIL_WEBHOOK_URL or SMTP_*). Not sent: %s",
                subject,
            )
            return False

        text = text or html_to_text(html)
        sender = {
            "resend": self._send_resend,
            "sendgrid": self._send_sendgrid,
            "webhook": self._send_webhook,
            "smtp": self._send_smtp,
        }[self.provider]

        try:
            ok = sender(to_email, subject, html, text)
        except requests.RequestException as e:
            logger.warning("❌ Email via %s failed for %s: %s", self.provider, to_email, e)
            return False

        if ok:
            logger.info("✅ Email sent via %s to %s", self.provider, to_email)
        return ok

    # -------------------------
    # Providers
    # -------------------------
    def _post_json(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> bool:
        resp = self._session.post(url, json=payload, headers=headers or {}, timeout=self.timeout)
        if resp.ok:
            return True
        body = (resp.text or "")[:500]
        logger.warning("❌ %s API error %s: %s", self.provider, resp.status_code, body)
        if self.provider == "resend" and ("domain" in body or "verify" in body):
            logger.warning("Resend rejected the sender domain; verify it or use onboarding@resend.dev")
        return False

    def _send_resend(self, to_email: str, subject: str, html: str, text: str) -> bool:
        return self._post_json(
            RESEND_URL,
            {
                "from": self.settings.resend_from,
                "to": to_email,
                "subject": subject,
                "html": html,
                "text": text,
            },
            headers={"Authorization": f"Bearer {self.settings.credential}"},
        )

    def _send_sendgrid(self, to_email: str, subject: str, html: str, text: str) -> bool:
        return self._post_json(
            SENDGRID_URL,
            {
                "personalizations": [{"to": [{"email": to_email}]}],
                "from": {"email": self.settings.sendgrid_from, "name": self.settings.from_name},
                "subject": subject,
                "content": [
                    {"type": "text/plain", "value": text},
                    {"type": "text/html", "value": html},
                ],
            },
            headers={"Authorization": f"Bearer {self.settings.credential}"},
        )

    def _send_webhook(self, to_email: str, subject: str, html: str, text: str) -> bool:
        return self._post_json(
            self.settings.credential,
            {"to": to_email, "subject": subject, "html": html, "text": text},
        )

    def _send_smtp(self, to_email: str, subject: str, html: str, text: str) -> bool:
        cfg = self.settings.smtp
        if not cfg.ready:
            logger.warning("SMTP_HOST set but SMTP_FROM_EMAIL/SMTP_PORT missing. Not sent: %s", subject)
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{cfg.from_name} <{cfg.from_email}>"
        msg["To"] = to_email

        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))

        try:
            with smtplib.SMTP(cfg.host, cfg.port, timeout=self.timeout) as s:
                if cfg.use_tls:
                    s.starttls()
                if cfg.username:
                    s.login(cfg.username, cfg.password)
                s.sendmail(cfg.from_email, [to_email], msg.as_string())
            return True
        except (smtplib.SMTPException, OSError):
            logger.exception("Error sending email to %s", to_email)
            return False


# =============================================================================
# Templates
# =============================================================================

def subscription_email_html(data: Dict[str, Any]) -> str:
    """Admin alert for a new "request access" sign-up."""
    rows = [
        ("Email", data.get("email")),
        ("Location", data.get("location_string") or "Unknown"),
        ("IP Address", data.get("ip_address")),
        ("Device", " / ".join(x for x in (data.get("device_type"), data.get("browser"), data.get("os")) if x)),
        ("Entry point", data.get("entry_point")),
        ("Referer", data.get("referer")),
        ("Subscribed at", data.get("created_at")),
    ]
    fields = "".join(
        f'<div class="field"><div class="label">{html_lib.escape(label)}</div>'
        f'<div class="value">{html_lib.escape(str(value or "-"))}</div></div>'
        for label, value in rows
    )
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background-color: #d4c5a0; color: #000; padding: 20px; text-align: center; }}
    .content {{ background-color: #f9f9f9; padding: 20px; }}
    .field {{ margin-bottom: 15px; }}
    .label {{ font-weight: bold; color: #666; font-size: 12px; text-transform: uppercase; letter-spacing: 1px; }}
    .value {{ margin-top: 5px; color: #333; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h1>New Maison Registration</h1></div>
    <div class="content">{fields}</div>
  </div>
</body>
</html>
"""
