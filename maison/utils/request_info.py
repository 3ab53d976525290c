from __future__ import annotations

import json
from typing import Any, Dict, Optional

from flask import Request, request


def client_ip(req: Optional[Request] = None) -> str:
    """
    Client address as seen behind a proxy chain:
      X-Forwarded-For (first hop) -> X-Real-IP -> remote_addr -> "unknown"
    """
    req = req or request
    forwarded = (req.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (req.headers.get("X-Real-IP") or "").strip()
    if real_ip:
        return real_ip
    return req.remote_addr or "unknown"


def read_json_body(req: Optional[Request] = None) -> Dict[str, Any]:
    """
    JSON object from the body whatever the Content-Type.
    sendBeacon posts strings as text/plain, so get_json(force=True) is not
    enough on its own for every client. Raises ValueError on anything that
    is not a JSON object.
    """
    req = req or request
    raw = req.get_data(cache=True, as_text=True)
    if not raw or not raw.strip():
        raise ValueError("empty body")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("body is not a JSON object")
    return data
