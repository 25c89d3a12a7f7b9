import asyncio
from typing import Dict, List, Optional

import httpx

from ..config import CoinConfig, CryptoSettings
from ..errors import ProviderError
from ..types.payment_types import AddressLookup
from .base import ChainProvider, logger
from .bitcoin import BlockCypherProvider, EsploraProvider, InsightProvider
from .ethereum import EtherscanProvider
from .solana import SolanaRpcProvider

ETHEREUM_MAINNET = 1


def build_provider(chain: str, url: str, settings: CryptoSettings) -> ChainProvider:
    if chain in ("bitcoin", "litecoin"):
        if "blockcypher" in url:
            return BlockCypherProvider(url, api_key=settings.blockcypher_api_key)
        if "insight" in url:
            return InsightProvider(url)
        return EsploraProvider(url)
    if chain == "ethereum":
        if "etherscan" in url:
            chain_id = ETHEREUM_MAINNET if "/v2/" in url else None
            return EtherscanProvider(url, api_key=settings.etherscan_api_key, chain_id=chain_id)
        return EtherscanProvider(url)
    if chain == "solana":
        return SolanaRpcProvider(url)
    raise ValueError(f"No provider adapter for chain {chain}")


class ChainRegistry:
    """Ordered provider lists per chain, tried in order until one answers."""

    def __init__(self, providers: Dict[str, List[ChainProvider]], timeout: float = 8.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.providers = providers
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: CryptoSettings, transport=None) -> "ChainRegistry":
        chains = {coin.chain for coin in settings.coins.values()}
        providers = {
            chain: [build_provider(chain, url, settings) for url in settings.endpoints.for_chain(chain)]
            for chain in chains
        }
        return cls(providers, timeout=settings.chain_timeout_seconds, transport=transport)

    def providers_for(self, coin: CoinConfig) -> List[ChainProvider]:
        return self.providers.get(coin.chain, [])

    async def lookup(self, coin: CoinConfig, address: str) -> AddressLookup:
        providers = self.providers_for(coin)
        if not providers:
            raise ProviderError(f"No providers configured for {coin.symbol}")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for provider in providers:
                logger.info(f"[Chain] checking {coin.symbol} {address} via {provider.name}")
                try:
                    # one budget for the whole lookup, however many requests it makes
                    result = await asyncio.wait_for(provider.lookup(client, address, coin), self.timeout)
                except asyncio.TimeoutError:
                    logger.error(f"[Chain] {coin.symbol} lookup via {provider!r} timed out after {self.timeout}s")
                    continue
                except (ProviderError, httpx.HTTPError, KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.error(f"[Chain] {coin.symbol} lookup failed via {provider!r}: {type(e).__name__} {e}")
                    continue
                logger.info(
                    f"[Chain] {coin.symbol} {address} via {provider.name}: "
                    f"balance {result.balance}, {len(result.transactions)} txs"
                )
                return result

        raise ProviderError(f"All {coin.symbol} providers failed for {address}")
