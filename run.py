from __future__ import annotations

import logging
import os
import sys

from dotenv import find_dotenv, load_dotenv

# ==========================================================
# Maison: run.py (local dev server)
# - loads .env when present
# - PORT from Render / HOST+PORT locally
# - refuses to start prod without SECRET_KEY
# - closes the analytics services on exit
# ==========================================================


def _bool_env(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _setup_logging(level_name: str = "INFO") -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s",
        )
    root.setLevel(level)


def main() -> None:
    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(env_path, override=False)

    # compat: FLASK_ENV -> ENV
    if not os.getenv("ENV") and os.getenv("FLASK_ENV"):
        os.environ["ENV"] = os.getenv("FLASK_ENV", "production")

    env = (os.getenv("ENV") or "production").strip().lower()
    debug = _bool_env("DEBUG", env == "development")

    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "5000"))
    if os.getenv("RENDER") or os.getenv("RENDER_EXTERNAL_HOSTNAME"):
        host = "0.0.0.0"
        port = int(os.getenv("PORT", "10000"))

    _setup_logging(os.getenv("LOG_LEVEL", "DEBUG" if debug else "INFO"))
    log = logging.getLogger("maison")

    log.info("🚀 Starting Maison")
    log.info("ENV=%s DEBUG=%s HOST=%s PORT=%s", env, debug, host, port)
    log.info("Python=%s | Platform=%s", sys.version.split()[0], sys.platform)

    secret = os.getenv("SECRET_KEY", "").strip()
    if env == "production" and (not secret or secret in {"dev", "dev-secret", "dev_maison_fallback"}):
        raise RuntimeError("A strong SECRET_KEY is required in production (Render environment or .env).")

    # late import: env vars must be loaded before config classes are evaluated
    from maison import create_app
    from maison.services import get_services

    app = create_app()
    services = get_services(app)
    try:
        # reloader would build a second set of services in the child
        app.run(host=host, port=port, debug=debug, use_reloader=False)
    finally:
        services.close()


if __name__ == "__main__":
    main()
