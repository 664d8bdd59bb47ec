from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from functools import lru_cache

FALLBACK_CURRENCY = "USD"
FX_PROVIDERS = {"live", "static"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./mizan.db"
    default_currency: str = FALLBACK_CURRENCY
    frontend_origin: str = "http://localhost:3000"
    fx_provider: str = "live"
    fx_api_url: str = "https://open.er-api.com/v6/latest"
    fx_cache_ttl_hours: int = 12
    fx_timeout_seconds: float = 8.0
    fx_max_workers: int = 4
    report_epoch: date = date(2024, 1, 1)
    reconcile_tolerance: Decimal = Decimal("0.01")
    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            default_currency=_currency_from_env("DEFAULT_CURRENCY"),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", cls.frontend_origin),
            fx_provider=_fx_provider_from_env("FX_PROVIDER", cls.fx_provider),
            fx_api_url=os.getenv("FX_API_URL", cls.fx_api_url).rstrip("/"),
            fx_cache_ttl_hours=_int_from_env("FX_CACHE_TTL_HOURS", cls.fx_cache_ttl_hours),
            fx_timeout_seconds=_float_from_env("FX_TIMEOUT_SECONDS", cls.fx_timeout_seconds),
            fx_max_workers=max(1, _int_from_env("FX_MAX_WORKERS", cls.fx_max_workers)),
            report_epoch=_date_from_env("REPORT_EPOCH", cls.report_epoch),
            reconcile_tolerance=_decimal_from_env(
                "RECONCILE_TOLERANCE", cls.reconcile_tolerance
            ),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).strip().upper(),
            log_format=os.getenv("LOG_FORMAT", cls.log_format).strip().lower(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def _currency_from_env(name: str) -> str:
    raw = os.getenv(name, FALLBACK_CURRENCY).strip().upper()
    if len(raw) != 3 or not raw.isalpha():
        return FALLBACK_CURRENCY
    return raw


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer.") from exc


def _float_from_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number.") from exc


def _decimal_from_env(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a decimal number.") from exc


def _date_from_env(name: str, default: date) -> date:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return datetime.strptime(raw.strip(), "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError(f"{name} must be in YYYY-MM-DD format.") from exc


def _fx_provider_from_env(name: str, default: str) -> str:
    raw = os.getenv(name, default).strip().lower()
    if raw not in FX_PROVIDERS:
        raise ValueError(f"{name} must be one of: live, static.")
    return raw
