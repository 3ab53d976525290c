from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple


# =============================================================================
# Utils
# =============================================================================

_TRUTHY = {"1", "true", "yes", "y", "on"}
_FALSY = {"0", "false", "no", "n", "off"}


def truthy(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    v = value.strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    return default


def env_str(key: str, default: str = "", environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    return (env.get(key) or default).strip()


def env_int(key: str, default: int, environ: Optional[Mapping[str, str]] = None) -> int:
    env = os.environ if environ is None else environ
    raw = env.get(key)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def env_float(key: str, default: float, environ: Optional[Mapping[str, str]] = None) -> float:
    env = os.environ if environ is None else environ
    raw = env.get(key)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def first_env(keys: Sequence[str], environ: Optional[Mapping[str, str]] = None) -> Tuple[str, str]:
    """
    First non-empty variable of an ordered chain.
    Returns (value, key) or ("", "") when nothing is configured.
    """
    env = os.environ if environ is None else environ
    for key in keys:
        value = (env.get(key) or "").strip()
        if value:
            return value, key
    return "", ""


def normalize_database_url(raw: Optional[str], environ: Optional[Mapping[str, str]] = None) -> str:
    """
    DATABASE_URL wins. Otherwise DB_HOST/DB_* are assembled into a postgres URL.
    Heroku/Render hand out 'postgres://', SQLAlchemy expects 'postgresql://'.
    """
    env = os.environ if environ is None else environ

    if not raw or not raw.strip():
        host = (env.get("DB_HOST") or "").strip()
        if not host:
            return "sqlite:///maison_local.db"
        user = (env.get("DB_USER") or "postgres").strip()
        password = (env.get("DB_PASSWORD") or "").strip()
        port = (env.get("DB_PORT") or "5432").strip()
        name = (env.get("DB_NAME") or "maison").strip()
        return f"postgresql://{user}:{password}@{host}:{port}/{name}"

    url = raw.strip()
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    return url


# =============================================================================
# Ordered fallback chains (first configured wins)
# =============================================================================

VISITOR_WEBHOOK_CHAIN = (
    "SLACK_COMINGSOON_WEBHOOK_URL",
    "SLACK_COMINGSOON_WEBHOOK",
    "SLACK_VISITOR_WEBHOOK_URL",
    "SLACK_WEBHOOK_URL",
)

SUBSCRIPTION_WEBHOOK_CHAIN = ("SLACK_WEBHOOK_URL",)

# provider name -> variable that enables it
EMAIL_PROVIDER_CHAIN = (
    ("resend", "RESEND_API_KEY"),
    ("sendgrid", "SENDGRID_API_KEY"),
    ("webhook", "EMAIL_WEBHOOK_URL"),
    ("smtp", "SMTP_HOST"),
)


@dataclass(frozen=True)
class SMTPSettings:
    host: str = ""
    port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True
    from_email: str = ""
    from_name: str = "Maison"

    @property
    def ready(self) -> bool:
        return bool(self.host and self.port and self.from_email)


@dataclass(frozen=True)
class EmailSettings:
    provider: str = ""          # resend | sendgrid | webhook | smtp | ""
    credential: str = ""        # api key or webhook url of the chosen provider
    source_key: str = ""        # env var that selected the provider
    resend_from: str = "onboarding@resend.dev"
    sendgrid_from: str = "noreply@maison.example"
    from_name: str = "Maison"
    notify_to: str = ""
    smtp: SMTPSettings = field(default_factory=SMTPSettings)

    @property
    def configured(self) -> bool:
        return bool(self.provider)


@dataclass(frozen=True)
class AnalyticsSettings:
    """
    Everything the analytics pipeline reads from the environment,
    resolved once when the app is created.
    """

    visitor_webhook_url: str = ""
    visitor_webhook_source: str = ""
    subscription_webhook_url: str = ""
    slack_timeout: float = 10.0

    email: EmailSettings = field(default_factory=EmailSettings)

    google_geolocation_api_key: str = ""
    geo_timeout: float = 5.0
    geo_cache_ttl: int = 600

    mailerlite_form_url: str = ""
    mailerlite_api_key: str = ""
    mailerlite_group_id: str = ""

    admin_api_key: str = ""
    report_timezone: str = "Asia/Dubai"
    visitor_alert_visits: int = 10
    visitor_alert_pages: int = 20
    notify_async: bool = True


def _email_settings(env: Mapping[str, str]) -> EmailSettings:
    provider = ""
    credential = ""
    source_key = ""
    for name, key in EMAIL_PROVIDER_CHAIN:
        value = (env.get(key) or "").strip()
        if value:
            provider, credential, source_key = name, value, key
            break

    from_name = env_str("EMAIL_FROM_NAME", "Maison", env)
    smtp = SMTPSettings(
        host=env_str("SMTP_HOST", "", env),
        port=env_int("SMTP_PORT", 587, env),
        username=env_str("SMTP_USER", "", env),
        password=env_str("SMTP_PASS", "", env),
        use_tls=truthy(env.get("SMTP_TLS"), default=True),
        from_email=env_str("SMTP_FROM_EMAIL", "", env),
        from_name=env_str("SMTP_FROM_NAME", from_name, env),
    )

    return EmailSettings(
        provider=provider,
        credential=credential,
        source_key=source_key,
        resend_from=env_str("RESEND_FROM_EMAIL", "onboarding@resend.dev", env),
        sendgrid_from=env_str("SENDGRID_FROM_EMAIL", "noreply@maison.example", env),
        from_name=from_name,
        notify_to=env_str("NOTIFY_EMAIL_TO", "", env),
        smtp=smtp,
    )


def resolve_settings(environ: Optional[Mapping[str, str]] = None) -> AnalyticsSettings:
    env = os.environ if environ is None else environ

    visitor_url, visitor_key = first_env(VISITOR_WEBHOOK_CHAIN, env)
    subscription_url, _ = first_env(SUBSCRIPTION_WEBHOOK_CHAIN, env)
    group_id, _ = first_env(("MAILERLITE_GROUP_ID", "MAILERLITE_LIST_ID"), env)

    return AnalyticsSettings(
        visitor_webhook_url=visitor_url,
        visitor_webhook_source=visitor_key,
        subscription_webhook_url=subscription_url,
        slack_timeout=env_float("SLACK_TIMEOUT", 10.0, env),
        email=_email_settings(env),
        google_geolocation_api_key=env_str("GOOGLE_GEOLOCATION_API_KEY", "", env),
        geo_timeout=env_float("GEO_TIMEOUT", 5.0, env),
        geo_cache_ttl=max(0, env_int("GEO_CACHE_TTL", 600, env)),
        mailerlite_form_url=env_str("MAILERLITE_FORM_URL", "", env),
        mailerlite_api_key=env_str("MAILERLITE_API_KEY", "", env),
        mailerlite_group_id=group_id,
        admin_api_key=env_str("ADMIN_API_KEY", "", env),
        report_timezone=env_str("REPORT_TIMEZONE", "Asia/Dubai", env),
        visitor_alert_visits=max(2, env_int("VISITOR_ALERT_VISITS", 10, env)),
        visitor_alert_pages=max(2, env_int("VISITOR_ALERT_PAGES", 20, env)),
        notify_async=truthy(env.get("NOTIFY_ASYNC"), default=True),
    )


# =============================================================================
# Config Base
# =============================================================================

class BaseConfig:
    """
    Flask config for the Maison site.
    - Secure by default
    - Tunable through env vars
    """

    ENV: str = env_str("ENV", env_str("FLASK_ENV", "production")).lower()
    DEBUG: bool = False
    TESTING: bool = False

    SITE_URL: str = env_str("SITE_URL", "").rstrip("/")
    PREFERRED_URL_SCHEME: str = "https" if ENV == "production" else "http"

    # -------------------------------------------------------------------------
    # Security / session / cookies
    # -------------------------------------------------------------------------
    SECRET_KEY: str = env_str("SECRET_KEY", "dev_maison_fallback")

    SESSION_COOKIE_HTTPONLY: bool = True
    SESSION_COOKIE_SAMESITE: str = env_str("SESSION_COOKIE_SAMESITE", "Lax")
    SESSION_COOKIE_SECURE: bool = truthy(os.getenv("SESSION_COOKIE_SECURE"), default=(ENV == "production"))

    JSON_SORT_KEYS: bool = False

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    LOG_LEVEL: str = env_str("LOG_LEVEL", "INFO").upper()

    # -------------------------------------------------------------------------
    # Database (SQLAlchemy)
    # -------------------------------------------------------------------------
    SQLALCHEMY_DATABASE_URI: str = normalize_database_url(os.getenv("DATABASE_URL"))
    SQLALCHEMY_TRACK_MODIFICATIONS: bool = False

    # Postgres pool (Supabase/Railway/Neon). SQLite ignores most of it.
    SQLALCHEMY_ENGINE_OPTIONS: Dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_recycle": env_int("DB_POOL_RECYCLE", 280),
        "pool_size": env_int("DB_POOL_SIZE", 5),
        "max_overflow": env_int("DB_MAX_OVERFLOW", 10),
    }

    # -------------------------------------------------------------------------
    # Flask-Talisman / Flask-Compress
    # -------------------------------------------------------------------------
    ENABLE_TALISMAN: bool = truthy(os.getenv("ENABLE_TALISMAN"), default=(ENV == "production"))
    FORCE_HTTPS: bool = truthy(os.getenv("FORCE_HTTPS"), default=(ENV == "production"))
    ENABLE_COMPRESS: bool = truthy(os.getenv("ENABLE_COMPRESS"), default=True)

    # create_all() on boot (dev only)
    AUTO_CREATE_TABLES: bool = truthy(os.getenv("AUTO_CREATE_TABLES"), default=True)


class DevelopmentConfig(BaseConfig):
    ENV = "development"
    DEBUG = True
    LOG_LEVEL = env_str("LOG_LEVEL", "DEBUG").upper()

    SESSION_COOKIE_SECURE = False
    PREFERRED_URL_SCHEME = "http"

    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    ENABLE_TALISMAN = truthy(os.getenv("ENABLE_TALISMAN"), default=False)
    FORCE_HTTPS = False


class TestingConfig(BaseConfig):
    ENV = "testing"
    TESTING = True
    SECRET_KEY = "test-secret"
    SESSION_COOKIE_SECURE = False
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS: Dict[str, Any] = {}
    ENABLE_TALISMAN = False
    FORCE_HTTPS = False
    AUTO_CREATE_TABLES = False


class ProductionConfig(BaseConfig):
    ENV = "production"
    DEBUG = False
    LOG_LEVEL = env_str("LOG_LEVEL", "INFO").upper()

    # no dev fallback in prod
    SECRET_KEY = env_str("SECRET_KEY", "")

    SESSION_COOKIE_SECURE = truthy(os.getenv("SESSION_COOKIE_SECURE"), default=True)


def get_config(env_name: Optional[str] = None):
    """
    Config class by name.
    Priority:
      1) env_name argument
      2) ENV / FLASK_ENV
    """
    env = (env_name or env_str("ENV", env_str("FLASK_ENV", "production"))).lower()
    if env in {"development", "dev"}:
        return DevelopmentConfig
    if env == "testing":
        return TestingConfig
    return ProductionConfig
