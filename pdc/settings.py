from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("PDC_DB_PATH", "pdc.db")

    # Collaborators. Without a router URL the in-process routing table is used.
    router_url: str | None = os.getenv("PDC_ROUTER_URL")
    metrics_url: str = os.getenv("PDC_METRICS_URL", "http://localhost:9100")
    router_timeout_s: float = _env_float("PDC_ROUTER_TIMEOUT_S", 10.0)
    metrics_timeout_s: float = _env_float("PDC_METRICS_TIMEOUT_S", 5.0)

    # Retry policy for router mutations and metric reads
    router_retries: int = _env_int("PDC_ROUTER_RETRIES", 3)
    metric_retries: int = _env_int("PDC_METRIC_RETRIES", 2)
    backoff_base_s: float = _env_float("PDC_BACKOFF_BASE_S", 1.0)
    backoff_cap_s: float = _env_float("PDC_BACKOFF_CAP_S", 4.0)
    # Consecutive cycles with an unreachable metric source before giving up.
    metric_outage_cycles: int = _env_int("PDC_METRIC_OUTAGE_CYCLES", 3)

    # Terminal notifications (optional)
    webhook_url: str | None = os.getenv("PDC_WEBHOOK_URL")
    enable_email: bool = _env_bool("PDC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("PDC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("PDC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("PDC_SMTP_USER")
    smtp_password: str | None = os.getenv("PDC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("PDC_EMAIL_FROM")
    email_to: str | None = os.getenv("PDC_EMAIL_TO")

    # API access. Leave unset to run the API without authentication.
    admin_user: str | None = os.getenv("PDC_ADMIN_USER")
    admin_password: str | None = os.getenv("PDC_ADMIN_PASSWORD")


settings = Settings()
