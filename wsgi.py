# wsgi.py: Maison (gunicorn entry point: `gunicorn wsgi:app`)
from __future__ import annotations

import atexit
import logging
import os
import sys
import time
from typing import Any, Dict, Tuple

from dotenv import find_dotenv, load_dotenv
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

# =============================================================================
# Env (.env only fills what the platform did not set)
# =============================================================================
_env_path = find_dotenv(usecwd=True)
if _env_path:
    load_dotenv(_env_path, override=False)

if not os.getenv("ENV") and os.getenv("FLASK_ENV"):
    os.environ["ENV"] = os.getenv("FLASK_ENV", "production")

_ALLOWED_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

ENV = (os.getenv("ENV") or "production").strip().lower()
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper().strip()
if LOG_LEVEL not in _ALLOWED_LOG_LEVELS:
    LOG_LEVEL = "INFO"

# =============================================================================
# Logging (gunicorn may already have handlers)
# =============================================================================
root = logging.getLogger()
if not root.handlers:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s",
    )
else:
    root.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

log = logging.getLogger("wsgi")
log.info("🚀 Maison WSGI boot | ENV=%s", ENV)
log.info("Python=%s | Platform=%s", sys.version.split()[0], sys.platform)
log.info("ENV flags: DATABASE_URL=%s", "yes" if os.getenv("DATABASE_URL") else "no")

# =============================================================================
# App + services lifecycle
# =============================================================================
from maison import create_app  # noqa: E402
from maison.models import db  # noqa: E402
from maison.services import get_services  # noqa: E402

t0 = time.time()
app = create_app()
log.info("✅ create_app() OK in %.3fs", time.time() - t0)

# worker exit: drain notification jobs, close HTTP sessions
atexit.register(get_services(app).close)


# =============================================================================
# /ready (DB ping)
# =============================================================================
@app.get("/ready")
def ready() -> Tuple[Dict[str, Any], int]:
    t = time.time()
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db.session.rollback()
        return {
            "ok": False,
            "service": "maison",
            "env": ENV,
            "db": "degraded",
            "error": f"{type(e).__name__}: {e}"[:220],
            "latency_s": time.time() - t,
        }, 503
    return {"ok": True, "service": "maison", "env": ENV, "db": "ok", "latency_s": time.time() - t}, 200
