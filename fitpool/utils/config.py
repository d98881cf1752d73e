"""Environment-driven application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration.

    Every external adapter is constructed from these values inside
    ``create_app``; nothing reads credentials from module globals.
    """

    app_name: str
    app_version: str
    database_path: Path
    log_level: str
    timezone: str

    admin_token: str | None
    scheduler_api_key: str | None
    admin_session_ttl_minutes: int

    default_max_capacity: int
    default_pool_capacity: int
    max_pools_per_event: int
    assignment_lead_days: int

    unparsable_time_policy: str
    post_event_delay_minutes: int
    default_session_minutes: int

    http_timeout_seconds: float
    delivery_retry_attempts: int
    delivery_retry_backoff_seconds: float
    outbox_max_attempts: int
    outbox_claim_lease_seconds: int

    phone_country_code: str

    whatsapp_access_token: str | None
    whatsapp_phone_number_id: str | None
    whatsapp_api_version: str
    whatsapp_base_url: str
    whatsapp_template_language: str
    whatsapp_user_reminder_template: str
    whatsapp_trainer_reminder_template: str
    whatsapp_help_template: str

    zoom_account_id: str | None
    zoom_client_id: str | None
    zoom_client_secret: str | None
    zoom_host_user: str
    zoom_api_base_url: str
    zoom_oauth_url: str

    razorpay_key_id: str | None
    razorpay_key_secret: str | None
    razorpay_base_url: str

    smtp_host: str | None
    smtp_port: int
    smtp_username: str | None
    smtp_password: str | None
    smtp_use_tls: bool
    email_from_address: str

    invoice_company_name: str
    invoice_company_address: str
    invoice_currency: str

    @property
    def whatsapp_enabled(self) -> bool:
        return bool(self.whatsapp_access_token and self.whatsapp_phone_number_id)

    @property
    def zoom_enabled(self) -> bool:
        return bool(self.zoom_account_id and self.zoom_client_id and self.zoom_client_secret)

    @property
    def razorpay_enabled(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.smtp_host)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process (call ``cache_clear`` in tests)."""
    load_dotenv(PROJECT_ROOT / ".env")
    return Settings(
        app_name=_env_str("FITPOOL_APP_NAME", "FitPool Event Service"),
        app_version=_env_str("FITPOOL_APP_VERSION", "1.0.0"),
        database_path=Path(
            _env_str("FITPOOL_DATABASE_PATH", str(PROJECT_ROOT / "data" / "fitpool.db"))
        ),
        log_level=_env_str("FITPOOL_LOG_LEVEL", "INFO"),
        timezone=_env_str("FITPOOL_TIMEZONE", "Asia/Kolkata"),
        admin_token=_env_optional("ADMIN_TOKEN"),
        scheduler_api_key=_env_optional("SCHEDULER_API_KEY"),
        admin_session_ttl_minutes=_env_int("FITPOOL_ADMIN_SESSION_TTL_MINUTES", 720),
        default_max_capacity=_env_int("FITPOOL_DEFAULT_MAX_CAPACITY", 100),
        default_pool_capacity=_env_int("FITPOOL_DEFAULT_POOL_CAPACITY", 50),
        max_pools_per_event=_env_int("FITPOOL_MAX_POOLS_PER_EVENT", 52),
        assignment_lead_days=_env_int("FITPOOL_ASSIGNMENT_LEAD_DAYS", 1),
        unparsable_time_policy=_env_str("FITPOOL_UNPARSABLE_TIME_POLICY", "never"),
        post_event_delay_minutes=_env_int("FITPOOL_POST_EVENT_DELAY_MINUTES", 0),
        default_session_minutes=_env_int("FITPOOL_DEFAULT_SESSION_MINUTES", 60),
        http_timeout_seconds=_env_float("FITPOOL_HTTP_TIMEOUT_SECONDS", 30.0),
        delivery_retry_attempts=_env_int("FITPOOL_DELIVERY_RETRY_ATTEMPTS", 3),
        delivery_retry_backoff_seconds=_env_float("FITPOOL_DELIVERY_RETRY_BACKOFF_SECONDS", 1.0),
        outbox_max_attempts=_env_int("FITPOOL_OUTBOX_MAX_ATTEMPTS", 5),
        outbox_claim_lease_seconds=_env_int("FITPOOL_OUTBOX_CLAIM_LEASE_SECONDS", 600),
        phone_country_code=_env_str("FITPOOL_PHONE_COUNTRY_CODE", "91"),
        whatsapp_access_token=_env_optional("WHATSAPP_TOKEN"),
        whatsapp_phone_number_id=_env_optional("WHATSAPP_PHONE_NUMBER_ID"),
        whatsapp_api_version=_env_str("WHATSAPP_API_VERSION", "v18.0"),
        whatsapp_base_url=_env_str("WHATSAPP_BASE_URL", "https://graph.facebook.com"),
        whatsapp_template_language=_env_str("WHATSAPP_TEMPLATE_LANGUAGE", "en"),
        whatsapp_user_reminder_template=_env_str(
            "WHATSAPP_USER_REMINDER_TEMPLATE", "user_reminder_2"
        ),
        whatsapp_trainer_reminder_template=_env_str(
            "WHATSAPP_TRAINER_REMINDER_TEMPLATE", "trainer_reminder_2"
        ),
        whatsapp_help_template=_env_str("WHATSAPP_HELP_TEMPLATE", "help_troubleshooting"),
        zoom_account_id=_env_optional("ZOOM_ACCOUNT_ID"),
        zoom_client_id=_env_optional("ZOOM_CLIENT_ID"),
        zoom_client_secret=_env_optional("ZOOM_CLIENT_SECRET"),
        zoom_host_user=_env_str("ZOOM_HOST_USER", "me"),
        zoom_api_base_url=_env_str("ZOOM_API_BASE_URL", "https://api.zoom.us/v2"),
        zoom_oauth_url=_env_str("ZOOM_OAUTH_URL", "https://zoom.us/oauth/token"),
        razorpay_key_id=_env_optional("RAZORPAY_KEY_ID"),
        razorpay_key_secret=_env_optional("RAZORPAY_KEY_SECRET"),
        razorpay_base_url=_env_str("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1"),
        smtp_host=_env_optional("SMTP_HOST"),
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_username=_env_optional("SMTP_USERNAME"),
        smtp_password=_env_optional("SMTP_PASSWORD"),
        smtp_use_tls=_env_bool("SMTP_USE_TLS", True),
        email_from_address=_env_str("EMAIL_FROM_ADDRESS", "FitPool <noreply@example.com>"),
        invoice_company_name=_env_str("INVOICE_COMPANY_NAME", "FitPool Fitness"),
        invoice_company_address=_env_str("INVOICE_COMPANY_ADDRESS", "Bangalore, India"),
        invoice_currency=_env_str("INVOICE_CURRENCY", "INR"),
    )
