import asyncio
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Optional, Tuple
from ...config import Config
from ...errors import GatewayError, GatewayUnavailable
from ...models.payment import ExchangeRate
from ...utils.formatters import quantize_money, utcnow
from .http import GatewayHttpClient

COIN_IDS = {
    "BTC": "bitcoin",
    "XMR": "monero",
}

class ExchangeRateService:
    """
    Crypto/fiat rates from CoinGecko, cached for EXCHANGE_RATE_TTL_SECONDS.

    When CoinGecko cannot be reached a cached rate younger than
    EXCHANGE_RATE_MAX_STALE_SECONDS is served instead, marked stale.
    """

    def __init__(self, http=None, fiat: Optional[str] = None,
                 clock: Callable = utcnow):
        self.http = http or GatewayHttpClient("coingecko")
        self.fiat = (fiat or Config.CURRENCY).upper()
        self.clock = clock
        self.ttl = timedelta(seconds=Config.EXCHANGE_RATE_TTL_SECONDS)
        self.max_stale = timedelta(seconds=Config.EXCHANGE_RATE_MAX_STALE_SECONDS)
        self._cache: Dict[str, ExchangeRate] = {}
        self._lock = asyncio.Lock()
        self.logger = logging.getLogger(__name__)

    async def get_rate(self, currency: str) -> ExchangeRate:
        """Units of `currency` per one unit of fiat"""
        currency = currency.upper()
        now = self.clock()

        async with self._lock:
            cached = self._cache.get(currency)
        if cached and now - cached.fetched_at < self.ttl:
            return cached

        try:
            rate = await self._fetch(currency)
        except GatewayUnavailable:
            if cached and now - cached.fetched_at < self.max_stale:
                self.logger.warning(
                    f"Using cached {currency}/{self.fiat} rate from {cached.fetched_at.isoformat()}"
                )
                return cached.model_copy(update={"stale": True})
            raise

        async with self._lock:
            self._cache[currency] = rate
        self.logger.info(f"{currency} rate updated: 1 {self.fiat} = {rate.crypto_per_fiat} {currency}")
        return rate

    async def convert(self, fiat_amount: Decimal, currency: str,
                      places: int) -> Tuple[Decimal, ExchangeRate]:
        """Convert a fiat amount, rounding to the coin's precision"""
        rate = await self.get_rate(currency)
        return quantize_money(fiat_amount * rate.crypto_per_fiat, places), rate

    async def _fetch(self, currency: str) -> ExchangeRate:
        coin_id = COIN_IDS.get(currency)
        if coin_id is None:
            raise ValueError(f"Unsupported crypto currency: {currency}")

        fiat_key = self.fiat.lower()
        response = await self.http.request(
            "GET",
            f"{Config.COINGECKO_API_URL}/simple/price",
            params={"ids": coin_id, "vs_currencies": fiat_key, "precision": "8"},
            headers={"Accept": "application/json"}
        )
        if not response.ok:
            raise GatewayUnavailable(
                f"CoinGecko answered {response.status}", method="coingecko",
                details={"http_status": response.status}
            )

        price = response.json().get(coin_id, {}).get(fiat_key)
        try:
            price = Decimal(str(price))
        except (InvalidOperation, TypeError):
            raise GatewayError("Invalid response from CoinGecko", method="coingecko")
        if not price.is_finite() or price <= 0:
            raise GatewayError("Invalid exchange rate received from CoinGecko", method="coingecko")

        return ExchangeRate(
            currency=currency,
            fiat=self.fiat,
            crypto_per_fiat=Decimal(1) / price,
            fetched_at=self.clock()
        )
