import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional

import httpx

from ..errors import ProviderError

logger = logging.getLogger("price-oracle")

USER_AGENT = "CryptoPay-PriceOracle/1.0"


def _to_price(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return price if price.is_finite() else None


class PriceProvider:
    name = "base"

    async def fetch(self, client: httpx.AsyncClient, coins: List[str]) -> Dict[str, Optional[Decimal]]:
        raise NotImplementedError


class CoinGeckoPriceProvider(PriceProvider):
    name = "coingecko"
    url = "https://api.coingecko.com/api/v3/simple/price"
    ids = {
        "BTC": "bitcoin",
        "LTC": "litecoin",
        "ETH": "ethereum",
        "USDT": "tether",
        "USDC": "usd-coin",
        "SOL": "solana",
    }

    async def fetch(self, client, coins):
        wanted = [self.ids[c] for c in coins if c in self.ids]
        response = await client.get(self.url, params={"ids": ",".join(wanted), "vs_currencies": "usd"})
        response.raise_for_status()
        data = response.json()
        return {c: _to_price((data.get(self.ids.get(c)) or {}).get("usd")) for c in coins}


class CoinbasePriceProvider(PriceProvider):
    name = "coinbase"
    url = "https://api.coinbase.com/v2/exchange-rates"
    stablecoins = {"USDT", "USDC"}

    async def fetch(self, client, coins):
        response = await client.get(self.url, params={"currency": "USD"})
        response.raise_for_status()
        rates = (response.json().get("data") or {}).get("rates") or {}
        prices = {}
        for coin in coins:
            if coin in self.stablecoins:
                prices[coin] = Decimal("1")
                continue
            rate = _to_price(rates.get(coin))
            prices[coin] = (Decimal("1") / rate) if rate else None
        return prices


@dataclass
class PriceQuote:
    prices: Dict[str, Decimal]
    source: str


class PriceOracle:
    """First provider that prices every requested coin wins; otherwise the static table."""

    def __init__(self, providers: List[PriceProvider], fallback_prices: Dict[str, Decimal],
                 timeout: float = 5.0, transport: httpx.AsyncBaseTransport = None):
        self.providers = providers
        self.fallback_prices = fallback_prices
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings, transport=None) -> "PriceOracle":
        return cls(
            providers=[CoinGeckoPriceProvider(), CoinbasePriceProvider()],
            fallback_prices=settings.fallback_prices,
            timeout=settings.price_timeout_seconds,
            transport=transport,
        )

    async def _try_provider(self, client, provider, coins) -> Dict[str, Decimal]:
        try:
            prices = await asyncio.wait_for(provider.fetch(client, coins), self.timeout)
        except asyncio.TimeoutError:
            raise ProviderError(f"{provider.name}: no answer within {self.timeout}s")
        except httpx.HTTPError as e:
            raise ProviderError(f"{provider.name}: {type(e).__name__} {e}")
        except (ValueError, TypeError, AttributeError) as e:
            raise ProviderError(f"{provider.name}: malformed response {e}")

        missing = [c for c in coins if not prices.get(c) or prices[c] <= 0]
        if missing:
            raise ProviderError(f"{provider.name}: incomplete prices for {missing}")
        return {c: prices[c] for c in coins}

    async def get_quote(self, coins: Iterable[str]) -> PriceQuote:
        coins = [c.upper() for c in coins]
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport,
                                     headers={"User-Agent": USER_AGENT}) as client:
            for provider in self.providers:
                logger.info(f"[PriceOracle] fetching {coins} from {provider.name}")
                try:
                    prices = await self._try_provider(client, provider, coins)
                except ProviderError as e:
                    logger.warning(f"[PriceOracle] provider failed: {e}")
                    continue
                logger.info(f"[PriceOracle] prices from {provider.name}: {prices}")
                return PriceQuote(prices=prices, source=provider.name)

        logger.warning("[PriceOracle] all price providers failed, using fallback prices")
        return PriceQuote(
            prices={c: self.fallback_prices[c] for c in coins if c in self.fallback_prices},
            source="fallback",
        )

    async def get_prices(self, coins: Iterable[str]) -> Dict[str, Decimal]:
        return (await self.get_quote(coins)).prices
