"""
Exchange rate oracle for fiat -> stablecoin -> target asset conversion.

Fiat rate: exchangerate-api (USD base, INR quote), 5s timeout.
Asset rate: Pyth Hermes price feeds, rate = price(from) / price(to).

There is no cache and no fallback: every call returns a fresh quote or raises
OracleError. An approximate rate would misprice a real money movement.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, InvalidOperation
from typing import Dict, Optional

import aiohttp

from config import Config
from services.api_adapter_retry import APIAdapter, ExternalAPIError
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)

# Pyth price feed ids (https://pyth.network/developers/price-feed-ids)
PYTH_PRICE_FEEDS: Dict[str, str] = {
    "USDC": "eaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a",
    "APT": "03ae4db29ed4ae33d323568895aa00337e658e348b37509f5372ae51f0af00d5",
}

# On-chain decimals per asset
ASSET_DECIMALS: Dict[str, int] = {
    "USDC": 6,
    "APT": 8,
}

STABLE_ASSET = "USDC"
FIAT_MINOR_UNITS = Decimal(100)  # paise per rupee


class OracleError(ExternalAPIError):
    """Rate could not be obtained; the calling step must fail"""
    pass


@dataclass(frozen=True)
class FiatRate:
    """Fiat units per one stable unit (e.g. INR per USDC)"""
    rate: Decimal
    timestamp: datetime
    currency: str = "INR"


def fiat_minor_to_major(amount_minor: int) -> Decimal:
    return Decimal(amount_minor) / FIAT_MINOR_UNITS


def convert_fiat_to_stable(fiat_amount: Decimal, fiat_rate: Decimal) -> int:
    """
    Convert a fiat amount (major units) to stablecoin micro-units.

    floor(fiat_amount / fiat_rate * 10^6). Never rounds up.
    """
    if fiat_rate <= 0:
        raise OracleError("oracle", f"Invalid fiat rate {fiat_rate}", retryable=False)
    micro = Decimal(fiat_amount) / Decimal(fiat_rate) * Config.STABLE_UNIT
    return int(micro.to_integral_value(rounding=ROUND_DOWN))


def convert_stable_to_target(stable_units: int, asset_rate: Decimal, target_asset: str) -> int:
    """
    Convert stablecoin micro-units to the target asset's smallest unit.

    asset_rate is target units per one stable unit. Floor-rounded.
    """
    if asset_rate <= 0:
        raise OracleError("oracle", f"Invalid asset rate {asset_rate}", retryable=False)
    target_decimals = ASSET_DECIMALS.get(target_asset.upper(), Config.STABLE_DECIMALS)
    scale = Decimal(10) ** (target_decimals - Config.STABLE_DECIMALS)
    value = Decimal(stable_units) * Decimal(asset_rate) * scale
    return int(value.to_integral_value(rounding=ROUND_DOWN))


class OracleService(APIAdapter):
    """Fresh-quote oracle adapter (no caching, no fallback)"""

    error_class = OracleError

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Clock = system_clock,
        fiat_currency: Optional[str] = None,
    ):
        super().__init__(service_name="oracle", timeout=Config.ORACLE_TIMEOUT_SECONDS, session=session)
        self.clock = clock
        self.fiat_currency = (fiat_currency or Config.FIAT_CURRENCY).upper()
        self.fiat_url = Config.FIAT_RATE_API_URL
        self.hermes_url = Config.PYTH_HERMES_URL.rstrip("/")

    async def get_fiat_rate(self) -> FiatRate:
        """Fiat units per USD stablecoin. Raises OracleError on any upstream problem."""
        data = await self._make_http_request("GET", self.fiat_url)
        raw_rate = (data or {}).get("rates", {}).get(self.fiat_currency)
        if raw_rate is None:
            raise OracleError(self.service_name, f"Rate for {self.fiat_currency} missing from response", retryable=False)

        try:
            rate = Decimal(str(raw_rate))
        except InvalidOperation as e:
            raise OracleError(self.service_name, f"Malformed {self.fiat_currency} rate") from e
        if rate <= 0:
            raise OracleError(self.service_name, f"Non-positive {self.fiat_currency} rate {rate}")

        logger.info(f"💱 FIAT_RATE: 1 USD = {rate} {self.fiat_currency}")
        return FiatRate(rate=rate, timestamp=self.clock.now(), currency=self.fiat_currency)

    async def _fetch_pyth_prices(self, symbols) -> Dict[str, Decimal]:
        feed_to_symbol = {}
        for symbol in symbols:
            feed_id = PYTH_PRICE_FEEDS.get(symbol.upper())
            if not feed_id:
                raise OracleError(self.service_name, f"No price feed for {symbol}", retryable=False)
            feed_to_symbol[feed_id] = symbol.upper()

        params = [("ids[]", feed_id) for feed_id in feed_to_symbol] + [("parsed", "true")]
        data = await self._make_http_request(
            "GET", f"{self.hermes_url}/v2/updates/price/latest", params=params
        )

        prices: Dict[str, Decimal] = {}
        for entry in (data or {}).get("parsed", []):
            symbol = feed_to_symbol.get(str(entry.get("id", "")).lower().removeprefix("0x"))
            if symbol is None:
                continue
            price_data = entry.get("price") or {}
            try:
                prices[symbol] = Decimal(str(price_data["price"])).scaleb(int(price_data["expo"]))
            except (KeyError, InvalidOperation, ValueError, TypeError) as e:
                raise OracleError(self.service_name, f"Malformed price for {symbol}") from e

        missing = set(feed_to_symbol.values()) - set(prices)
        if missing:
            raise OracleError(self.service_name, f"Price feeds missing: {', '.join(sorted(missing))}")
        return prices

    async def get_asset_rate(self, from_asset: str, to_asset: str) -> Decimal:
        """Units of to_asset per one unit of from_asset"""
        if from_asset.upper() == to_asset.upper():
            return Decimal(1)

        prices = await self._fetch_pyth_prices([from_asset, to_asset])
        from_price = prices[from_asset.upper()]
        to_price = prices[to_asset.upper()]
        if to_price <= 0:
            raise OracleError(self.service_name, f"Target asset {to_asset} price is zero")
        if from_price <= 0:
            raise OracleError(self.service_name, f"Source asset {from_asset} price is zero")

        rate = from_price / to_price
        logger.info(f"💱 ASSET_RATE: 1 {from_asset} = {rate} {to_asset}")
        return rate
