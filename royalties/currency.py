"""
Currency normalization against immutable exchange-rate snapshots.

Amounts are converted into the base currency and rounded half-even to the
target currency's minor unit. Rates used are cached per normalizer (one
normalizer per processing run) and can be exported with ``snapshot()`` so a
run can be replayed against exactly the same rates.
"""

import logging
import threading
import time
from datetime import date
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Callable, Iterable, Optional, Protocol

from .errors import RateFetchError, RateUnavailable
from .models import Conversion, ExchangeRate


MINOR_UNITS = {
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0, "KRW": 0,
    "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0, "XOF": 0, "XPF": 0,
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
}
DEFAULT_MINOR_UNITS = 2
ONE = Decimal("1")


def minor_units(currency: str) -> int:
    return MINOR_UNITS.get(currency.upper(), DEFAULT_MINOR_UNITS)


def round_money(amount: Decimal, currency: str) -> Decimal:
    """Banker's rounding to the currency's minor unit."""
    quantum = Decimal(1).scaleb(-minor_units(currency))
    return Decimal(amount).quantize(quantum, rounding=ROUND_HALF_EVEN)


class RateProvider(Protocol):
    def get_rate(self, source_currency: str, target_currency: str, on_date: date) -> Optional[ExchangeRate]:
        ...


class StaticRateProvider:
    """Serves rates from a fixed snapshot set; the latest rate on or before the date wins."""

    def __init__(self, rates: Iterable[ExchangeRate] = ()):
        self._rates: dict[tuple[str, str], list[ExchangeRate]] = {}
        for rate in rates:
            self.add(rate)

    def add(self, rate: ExchangeRate) -> None:
        bucket = self._rates.setdefault((rate.source_currency, rate.target_currency), [])
        bucket.append(rate)
        bucket.sort(key=lambda r: r.effective_date)

    def get_rate(self, source_currency: str, target_currency: str, on_date: date) -> Optional[ExchangeRate]:
        candidates = [
            r for r in self._rates.get((source_currency, target_currency), [])
            if r.effective_date <= on_date
        ]
        return candidates[-1] if candidates else None


class CurrencyNormalizer:
    def __init__(
        self,
        provider: Optional[RateProvider],
        base_currency: str = "USD",
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        timeout_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self.provider = provider or StaticRateProvider()
        self.base_currency = base_currency.upper()
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._monotonic = monotonic
        self.logger = logger or logging.getLogger(__name__)
        self._cache: dict[tuple[str, str, date], ExchangeRate] = {}
        self._lock = threading.Lock()

    def normalize(self, amount: Decimal, source_currency: str, on_date: date) -> Conversion:
        return self.convert(amount, source_currency, self.base_currency, on_date)

    def convert(self, amount: Decimal, source_currency: str, target_currency: str, on_date: date) -> Conversion:
        source_currency = source_currency.upper()
        target_currency = target_currency.upper()
        if source_currency == target_currency:
            return Conversion(
                amount=round_money(amount, target_currency),
                currency=target_currency,
                original_amount=amount,
                original_currency=source_currency,
                rate=ONE,
                rate_date=on_date,
                rate_source="identity",
            )
        rate = self.rate_for(source_currency, target_currency, on_date)
        return Conversion(
            amount=round_money(amount * rate.rate, target_currency),
            currency=target_currency,
            original_amount=amount,
            original_currency=source_currency,
            rate=rate.rate,
            rate_date=rate.effective_date,
            rate_source=rate.source,
        )

    def rate_for(self, source_currency: str, target_currency: str, on_date: date) -> ExchangeRate:
        key = (source_currency, target_currency, on_date)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        rate = self._fetch(source_currency, target_currency, on_date)
        with self._lock:
            # first writer wins so every conversion in a run sees one rate
            return self._cache.setdefault(key, rate)

    def snapshot(self) -> list[ExchangeRate]:
        with self._lock:
            unique = {(r.source_currency, r.target_currency, r.effective_date): r for r in self._cache.values()}
        return [unique[k] for k in sorted(unique)]

    def _fetch(self, source_currency: str, target_currency: str, on_date: date) -> ExchangeRate:
        pair = f"{source_currency}/{target_currency}"
        started = self._monotonic()
        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                self.logger.debug("Rate lookup %s on %s (attempt %d/%d)", pair, on_date, attempt + 1, self.max_attempts)
                rate = self.provider.get_rate(source_currency, target_currency, on_date)
            except RateFetchError as exc:
                last_error = exc
                delay = self.backoff_seconds * (2 ** attempt)
                elapsed = self._monotonic() - started
                if attempt + 1 >= self.max_attempts or elapsed + delay > self.timeout_seconds:
                    break
                self.logger.warning("Rate fetch for %s failed, retrying in %.1fs: %s", pair, delay, exc)
                self._sleep(delay)
                continue

            if rate is None:
                raise RateUnavailable(
                    f"No exchange rate for {pair} on {on_date}",
                    invariant="rate snapshot exists for statement date",
                )
            return rate

        raise RateUnavailable(
            f"Exchange rate for {pair} on {on_date} unavailable after {attempt + 1} attempts: {last_error}",
            invariant="rate snapshot exists for statement date",
        ) from last_error
