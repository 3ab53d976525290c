from __future__ import annotations

import hmac
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Dict, Optional, TypeVar, cast

from flask import current_app, jsonify, request, session

F = TypeVar("F", bound=Callable[..., Any])

ADMIN_SESSION_KEY = "admin_logged_in"

_TRUE = {"1", "true", "yes", "y", "on"}

_NO_STORE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-store, max-age=0, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str


def _is_truthy(v: Any) -> bool:
    if v is True:
        return True
    if v is False or v is None:
        return False
    if isinstance(v, str):
        return v.strip().lower() in _TRUE
    return bool(v)


def _admin_key() -> str:
    services = current_app.extensions.get("analytics")
    if services is not None:
        return services.settings.admin_api_key
    return str(current_app.config.get("ADMIN_API_KEY") or "").strip()


def _is_development() -> bool:
    return str(current_app.config.get("ENV") or "").lower() in {"development", "dev"}


def gate_decision() -> GateDecision:
    """
    Who may read the admin reports:
      - session['admin_logged_in'] (set by whatever login flow fronts the site)
      - X-Admin-Key header or ?key= equal to ADMIN_API_KEY
      - no key configured: open in development only
    """
    if _is_truthy(session.get(ADMIN_SESSION_KEY)):
        return GateDecision(True, "session")

    key = _admin_key()
    if key:
        got = (request.headers.get("X-Admin-Key") or request.args.get("key") or "").strip()
        if got and hmac.compare_digest(got.encode("utf-8"), key.encode("utf-8")):
            return GateDecision(True, "api_key")
        return GateDecision(False, "bad_key")

    if _is_development():
        return GateDecision(True, "dev_open")
    return GateDecision(False, "no_key_configured")


def _no_store_headers(resp: Any) -> Any:
    for k, v in _NO_STORE_HEADERS.items():
        resp.headers[k] = v
    resp.headers.setdefault("Vary", "Cookie")
    return resp


def admin_required(fn: F) -> F:
    @wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        decision = gate_decision()
        if not decision.allowed:
            current_app.logger.info("Admin gate denied %s (%s)", request.path, decision.reason)
            resp = jsonify(success=False, error="forbidden")
            resp.status_code = 403
            return _no_store_headers(resp)

        resp = current_app.make_response(fn(*args, **kwargs))
        return _no_store_headers(resp)

    return cast(F, wrapper)
