from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest
import requests
from sqlalchemy.pool import StaticPool

from maison import create_app
from maison.config import AnalyticsSettings
from maison.models import db
from maison.services import build_services

VISITOR_HOOK = "https://hooks.slack.test/services/visitor"
SUBSCRIPTION_HOOK = "https://hooks.slack.test/services/subscriptions"
MAILERLITE_FORM = "https://assets.mailerlite.test/jsonp/1/subscribe"
ADMIN_KEY = "test-admin-key"

DUBAI = {
    "status": "success",
    "country": "United Arab Emirates",
    "countryCode": "AE",
    "region": "DU",
    "regionName": "Dubai",
    "city": "Dubai",
    "lat": 25.2048,
    "lon": 55.2708,
    "timezone": "Asia/Dubai",
    "isp": "Etisalat",
}


# ---------------------------------------------------------------------
# Fake HTTP (stands in for requests.Session in every outbound client)
# ---------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or (json.dumps(payload) if payload is not None else "")

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


@dataclass
class Call:
    method: str
    url: str
    kwargs: Dict[str, Any] = field(default_factory=dict)

    @property
    def json(self) -> Any:
        return self.kwargs.get("json")


class FakeSession:
    """
    Records every request and answers from a route table (URL prefix match).
    Latest route wins. No route -> requests.ConnectionError, like a dead host.
    """

    def __init__(self) -> None:
        self.calls: List[Call] = []
        self.routes: List[tuple] = []
        self.closed = False

    def route(
        self,
        method: str,
        prefix: str,
        status: int = 200,
        json: Any = None,
        text: str = "",
        error: Optional[Exception] = None,
    ) -> None:
        answer = error if error is not None else FakeResponse(status, json, text)
        self.routes.insert(0, (method.upper(), prefix, answer))

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._handle("GET", url, kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._handle("POST", url, kwargs)

    def close(self) -> None:
        self.closed = True

    def calls_to(self, prefix: str, method: Optional[str] = None) -> List[Call]:
        return [
            c for c in self.calls
            if c.url.startswith(prefix) and (method is None or c.method == method.upper())
        ]

    def _handle(self, method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        self.calls.append(Call(method, url, kwargs))
        for m, prefix, answer in self.routes:
            if m == method and url.startswith(prefix):
                if isinstance(answer, Exception):
                    raise answer
                return answer
        raise requests.ConnectionError(f"no route for {method} {url}")


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture(scope="session")
def _env():
    os.environ.setdefault("ENV", "testing")
    os.environ.setdefault("FLASK_ENV", "testing")
    os.environ.setdefault("SECRET_KEY", "dev-secret")
    yield


@pytest.fixture()
def http():
    """
    Default world: ip-api.com places everyone in Dubai, Slack and MailerLite
    accept. Tests add routes to change that.
    """
    s = FakeSession()
    s.route("GET", "http://ip-api.com/json/", json=DUBAI)
    s.route("POST", VISITOR_HOOK, text="ok")
    s.route("POST", SUBSCRIPTION_HOOK, text="ok")
    s.route("POST", MAILERLITE_FORM, json={"success": True})
    return s


@pytest.fixture()
def settings():
    return AnalyticsSettings(
        visitor_webhook_url=VISITOR_HOOK,
        visitor_webhook_source="SLACK_VISITOR_WEBHOOK_URL",
        subscription_webhook_url=SUBSCRIPTION_HOOK,
        mailerlite_form_url=MAILERLITE_FORM,
        admin_api_key=ADMIN_KEY,
        notify_async=False,
    )


@pytest.fixture()
def services(settings, http):
    services = build_services(settings, session=http)
    yield services
    services.close()


@pytest.fixture()
def app(_env, services):
    # sqlite:// + StaticPool => a single live connection shared by the app and the test
    app = create_app(
        "testing",
        services=services,
        config_overrides={
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "SQLALCHEMY_ENGINE_OPTIONS": {
                "connect_args": {"check_same_thread": False},
                "poolclass": StaticPool,
            },
        },
    )

    with app.app_context():
        db.session.rollback()
        db.drop_all()
        db.create_all()

        yield app

        db.session.rollback()
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}
