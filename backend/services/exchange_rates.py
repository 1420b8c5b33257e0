"""
Currency conversion with a daily database cache.

Lookup order for a pair:
1. Cached row dated today or later
2. Live rate from exchangerate-api.com (cached for the day on success)
3. Static approximate rate table
4. 1.0 with a warning

``get_rate`` never raises. Concurrent callers may both miss the cache and
both write today's row; the insert ignores the duplicate.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import Optional

import httpx

from config import settings
from db.repository import Repository

logger = logging.getLogger(__name__)

LIVE_RATE_SOURCE = "exchangerate-api"

# Approximate rates to USD, only used when the live API is unavailable
FALLBACK_RATES_TO_USD: dict[str, float] = {
    "USD": 1.0,
    "JPY": 0.0067,  # ~150 JPY = 1 USD
    "EUR": 1.08,
    "GBP": 1.27,
    "CNY": 0.14,
    "KRW": 0.00075,  # ~1,330 KRW = 1 USD
    "SGD": 0.74,
    "HKD": 0.13,
    "AUD": 0.65,
    "CAD": 0.73,
    "INR": 0.012,  # ~83 INR = 1 USD
}


class ExchangeRateUnavailable(RuntimeError):
    """Live rate provider failed or did not list the currency."""


def get_fallback_rate(from_currency: str, to_currency: str = "USD") -> float:
    """Static approximate rate; 1.0 (with a warning) for unknown currencies."""
    from_currency = from_currency.upper()
    to_currency = to_currency.upper()
    if from_currency == to_currency:
        return 1.0

    from_usd = FALLBACK_RATES_TO_USD.get(from_currency)
    to_usd = FALLBACK_RATES_TO_USD.get(to_currency)
    if from_usd is None or to_usd is None:
        logger.warning(f"No fallback rate for {from_currency} -> {to_currency}, using 1.0")
        return 1.0
    return from_usd / to_usd


class ExchangeRateService:
    """Resolves currency pairs to rates using the repository as a daily cache."""

    def __init__(
        self,
        repository: Repository,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.repository = repository
        self.api_url = (api_url or settings.EXCHANGE_RATE_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.EXCHANGE_RATE_TIMEOUT_SECONDS
        self._transport = transport

    async def fetch_live_rate(self, from_currency: str, to_currency: str) -> float:
        """Fetch a rate from the external provider."""
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            response = await client.get(f"{self.api_url}/{from_currency}")

        if response.status_code >= 400:
            raise ExchangeRateUnavailable(f"Exchange rate API error: {response.status_code}")

        payload = response.json()
        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise ExchangeRateUnavailable(f"Malformed exchange rate payload for {from_currency}")

        rate = rates.get(to_currency)
        if rate is None:
            raise ExchangeRateUnavailable(
                f"Exchange rate not found for {from_currency} to {to_currency}"
            )
        if isinstance(rate, bool) or not isinstance(rate, (int, float)):
            raise ExchangeRateUnavailable(
                f"Non-numeric exchange rate for {from_currency} to {to_currency}: {rate!r}"
            )
        if not math.isfinite(rate) or rate <= 0:
            raise ExchangeRateUnavailable(
                f"Invalid exchange rate for {from_currency} to {to_currency}: {rate}"
            )
        return float(rate)

    async def get_rate(self, from_currency: str, to_currency: str = "USD") -> float:
        """Rate to multiply an amount in ``from_currency`` by. Never raises."""
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return 1.0

        today = date.today()
        try:
            cached = await self.repository.get_cached_rate(from_currency, to_currency, today)
        except Exception as exc:
            logger.warning(f"Failed to read cached exchange rate {from_currency}->{to_currency}: {exc}")
            cached = None
        if cached is not None:
            logger.debug(f"Using cached exchange rate: {from_currency} -> {to_currency} = {cached}")
            return cached

        try:
            rate = await self.fetch_live_rate(from_currency, to_currency)
        except Exception as exc:
            logger.warning(
                f"Failed to fetch exchange rate for {from_currency} to {to_currency}, "
                f"using fallback: {exc}"
            )
            return get_fallback_rate(from_currency, to_currency)

        try:
            await self.repository.save_rate(
                from_currency, to_currency, today, rate, LIVE_RATE_SOURCE
            )
            logger.info(f"Cached new exchange rate: {from_currency} -> {to_currency} = {rate}")
        except Exception as exc:
            logger.warning(f"Failed to cache exchange rate {from_currency}->{to_currency}: {exc}")

        return rate

    async def convert(
        self, amount: float, from_currency: str, to_currency: str = "USD"
    ) -> tuple[float, float]:
        """Return (converted amount, rate used)."""
        rate = await self.get_rate(from_currency, to_currency)
        return amount * rate, rate
