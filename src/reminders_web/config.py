from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Project Reminders"
    api_prefix: str = "/api/v1"
    reference_timezone: str = "Asia/Bangkok"
    default_time_of_day: str = "09:00"
    max_offset_days: int = 30
    notification_store_backend: str = "inmemory"
    entity_store_backend: str = "inmemory"
    database_url: str = ""
    # Delayed dispatch facility. An empty token selects the mock client.
    dispatch_token: str = ""
    dispatch_base_url: str = "https://qstash.upstash.io"
    dispatch_callback_url: str = "http://localhost:8000/api/v1/reminders/webhooks/deliver"
    dispatch_retries: int = 3
    dispatch_timeout_seconds: int = 15
    # E-mail transport.
    email_enabled: bool = True
    email_sender_type: str = "stub"
    email_api_base_url: str = "https://api.resend.com"
    email_api_key: str = ""
    email_from: str = "Project Reminders <noreply@example.com>"
    email_timeout_seconds: int = 30
    app_base_url: str = "http://localhost:3000"
    callback_signature_mode: str = "log_only"
    callback_signing_secret: str = "dev-callback-secret"
    operator_test_enabled: bool = False
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDERS_APP_NAME", "Project Reminders"),
        api_prefix=os.getenv("REMINDERS_API_PREFIX", "/api/v1"),
        reference_timezone=os.getenv("REMINDER_REFERENCE_TIMEZONE", "Asia/Bangkok"),
        default_time_of_day=os.getenv("REMINDER_DEFAULT_TIME_OF_DAY", "09:00"),
        max_offset_days=_as_int(os.getenv("REMINDER_MAX_OFFSET_DAYS"), 30),
        notification_store_backend=os.getenv("NOTIFICATION_STORE_BACKEND", "inmemory"),
        entity_store_backend=os.getenv("ENTITY_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        dispatch_token=os.getenv("DISPATCH_TOKEN", ""),
        dispatch_base_url=os.getenv("DISPATCH_BASE_URL", "https://qstash.upstash.io"),
        dispatch_callback_url=os.getenv(
            "DISPATCH_CALLBACK_URL",
            "http://localhost:8000/api/v1/reminders/webhooks/deliver",
        ),
        dispatch_retries=_as_int(os.getenv("DISPATCH_RETRIES"), 3),
        dispatch_timeout_seconds=_as_int(os.getenv("DISPATCH_TIMEOUT_SECONDS"), 15),
        email_enabled=_as_bool(os.getenv("EMAIL_ENABLED"), True),
        email_sender_type=_normalize_mode(
            os.getenv("EMAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        email_api_base_url=os.getenv("EMAIL_API_BASE_URL", "https://api.resend.com"),
        email_api_key=os.getenv("EMAIL_API_KEY", ""),
        email_from=os.getenv("EMAIL_FROM", "Project Reminders <noreply@example.com>"),
        email_timeout_seconds=_as_int(os.getenv("EMAIL_TIMEOUT_SECONDS"), 30),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000"),
        callback_signature_mode=_normalize_mode(
            os.getenv("CALLBACK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        callback_signing_secret=os.getenv("CALLBACK_SIGNING_SECRET", "dev-callback-secret"),
        operator_test_enabled=_as_bool(os.getenv("OPERATOR_TEST_ENABLED"), False),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if not settings.dispatch_token.strip():
        issues.append("DISPATCH_TOKEN is empty; reminders are enqueued with the mock dispatch client")
    if settings.email_sender_type == "http" and not settings.email_api_key.strip():
        issues.append("EMAIL_API_KEY is required when EMAIL_SENDER_TYPE=http")
    if settings.callback_signature_mode != "off" and _is_placeholder(
        settings.callback_signing_secret,
        defaults={"dev-callback-secret", "change-me-in-production"},
    ):
        issues.append("CALLBACK_SIGNING_SECRET is empty or uses a development placeholder")
    if settings.notification_store_backend.strip().lower() == "postgres" and not settings.database_url:
        issues.append("DATABASE_URL is required when NOTIFICATION_STORE_BACKEND=postgres")
    if settings.operator_test_enabled:
        issues.append("OPERATOR_TEST_ENABLED=true exposes the operator test surface")
    return tuple(issues)
