from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from contextvars import copy_context
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Iterable, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from mizan.logging_config import get_logger
from mizan.models import FxRate, utcnow
from mizan.repositories import FxCacheStore, RateProvider

logger = get_logger(__name__)

ONE = Decimal("1")
CENT = Decimal("0.01")

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "CHF": Decimal("0.88"),
    "SAR": Decimal("3.75"),
    "AED": Decimal("3.6725"),
    "EGP": Decimal("48.50"),
}


class FxFetchFailed(RuntimeError):
    """Raised when the upstream provider is unreachable or answers garbage."""


class NoRateAvailable(LookupError):
    """Raised when no live or cached rate exists for a currency pair."""


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def convert(amount: Decimal, rate: Decimal) -> Decimal:
    """Convert without rounding; rounding belongs to presentation."""
    return amount * rate


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD; cross rates are derived
    from that table.
    """

    rates: Mapping[str, Decimal] = None
    source: str = "static"

    def __post_init__(self) -> None:
        table = {
            normalize_currency(code): _coerce_rate(value)
            for code, value in (self.rates or DEFAULT_RATES).items()
        }
        object.__setattr__(self, "rates", table)

    def fetch_rates(self, base: str) -> Mapping[str, Decimal]:
        normalized = normalize_currency(base)
        try:
            base_per_usd = self.rates[normalized]
        except KeyError as exc:
            raise FxFetchFailed(f"Unsupported currency: {normalized}") from exc
        return {code: per_usd / base_per_usd for code, per_usd in self.rates.items()}


@dataclass(frozen=True)
class OpenExchangeRateProvider:
    """Live rates from the open ExchangeRate-API endpoint."""

    base_url: str = "https://open.er-api.com/v6/latest"
    timeout_seconds: float = 8.0
    source: str = "open.er-api.com"

    def fetch_rates(self, base: str) -> Mapping[str, Decimal]:
        normalized = normalize_currency(base)
        url = f"{self.base_url.rstrip('/')}/{normalized}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except HTTPError as exc:
            raise FxFetchFailed(f"FX API returned {exc.code}") from exc
        except (URLError, TimeoutError, OSError, ValueError) as exc:
            raise FxFetchFailed("FX API unavailable") from exc

        if not isinstance(payload, dict):
            raise FxFetchFailed("FX API returned a malformed body")
        if payload.get("result") != "success":
            raise FxFetchFailed(f"FX API returned result: {payload.get('result')}")
        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise FxFetchFailed("FX API response missing rates")

        try:
            parsed = {normalize_currency(code): _coerce_rate(value) for code, value in rates.items()}
        except (ValueError, InvalidOperation) as exc:
            raise FxFetchFailed("FX API returned a malformed rate") from exc
        parsed[normalized] = ONE
        return parsed


@dataclass
class FxRateResolver:
    provider: RateProvider
    cache: FxCacheStore
    ttl: timedelta = timedelta(hours=12)
    max_workers: int = 4
    clock: Callable[[], datetime] = field(default=utcnow)

    def resolve(self, from_currency: str, to_currency: str) -> Decimal:
        """Rate that converts one unit of ``from_currency`` into ``to_currency``."""
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        if source == target:
            return ONE

        now = self.clock()
        cached = self.cache.get_rate(source, target)
        if cached and cached.is_fresh(now):
            logger.debug("FX rate from cache", extra={"base": source, "quote": target})
            return cached.rate

        try:
            rate = self._fetch(source, target)
        except FxFetchFailed as exc:
            logger.error(
                "Failed to fetch FX rate",
                exc_info=exc,
                extra={"base": source, "quote": target},
            )
            return self._fallback(source, target)

        self.cache.upsert_rate(
            FxRate(
                base=source,
                quote=target,
                rate=rate,
                fetched_at=now,
                expires_at=now + self.ttl,
                source=getattr(self.provider, "source", "unknown"),
            )
        )
        logger.info("FX rate fetched and cached", extra={"base": source, "quote": target})
        return rate

    def resolve_many(self, currencies: Iterable[str], to_currency: str) -> dict[str, Decimal]:
        """Resolve every currency into ``to_currency``; any failure propagates."""
        target = normalize_currency(to_currency)
        distinct = sorted({normalize_currency(code) for code in currencies})
        rates = {code: ONE for code in distinct if code == target}
        pending = [code for code in distinct if code != target]
        if len(pending) <= 1 or self.max_workers <= 1:
            for code in pending:
                rates[code] = self.resolve(code, target)
            return rates

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pending))) as pool:
            futures = {
                code: pool.submit(copy_context().run, self.resolve, code, target)
                for code in pending
            }
            for code, future in futures.items():
                rates[code] = future.result()
        return rates

    def _fetch(self, source: str, target: str) -> Decimal:
        rates = self.provider.fetch_rates(source)
        rate = rates.get(target)
        if rate is None or rate <= 0:
            raise FxFetchFailed(f"Rate not found for {source} -> {target}")
        return rate

    def _fallback(self, source: str, target: str) -> Decimal:
        stale = self.cache.get_rate(source, target)
        if stale is None:
            raise NoRateAvailable(f"Unable to get FX rate for {source} -> {target}")
        logger.warning(
            "Using expired FX rate",
            extra={"base": source, "quote": target, "expired_at": stale.expires_at},
        )
        return stale.rate


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    try:
        return Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc


def _coerce_rate(value: Decimal | int | float | str) -> Decimal:
    rate = _coerce_amount(value)
    if not rate.is_finite() or rate <= 0:
        raise ValueError("Rates must be positive numbers.")
    return rate
