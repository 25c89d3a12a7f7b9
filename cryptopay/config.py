import os
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class CoinConfig(BaseModel):
    symbol: str
    chain: str
    network: str = "mainnet"
    extended_key: Optional[str] = None
    confirmations: int
    estimated_fee: Decimal
    decimals: int
    contract_address: Optional[str] = None
    counter_symbol: Optional[str] = None

    @property
    def is_token(self) -> bool:
        return self.contract_address is not None

    @property
    def derivation_counter(self) -> str:
        # tokens share the native chain's counter so addresses never collide
        return self.counter_symbol or self.symbol


class ProviderEndpoints(BaseModel):
    bitcoin: List[str] = [
        "https://blockstream.info/api",
        "https://mempool.space/api",
        "https://api.blockcypher.com/v1/btc/main",
    ]
    litecoin: List[str] = [
        "https://api.blockcypher.com/v1/ltc/main",
        "https://insight.litecore.io/api",
    ]
    ethereum: List[str] = [
        "https://api.etherscan.io/v2/api",
        "https://eth.blockscout.com/api",
    ]
    solana: List[str] = [
        "https://api.mainnet-beta.solana.com",
        "https://solana-api.projectserum.com",
    ]

    def for_chain(self, chain: str) -> List[str]:
        return list(getattr(self, chain, []))

    @classmethod
    def from_env(cls, env) -> "ProviderEndpoints":
        overrides = {}
        for chain in cls.model_fields:
            urls = [u.strip() for u in (env.get(f"{chain.upper()}_PROVIDER_URLS") or "").split(",") if u.strip()]
            if urls:
                overrides[chain] = urls
        return cls(**overrides)


FALLBACK_PRICES: Dict[str, Decimal] = {
    "BTC": Decimal("43000"),
    "LTC": Decimal("75"),
    "ETH": Decimal("2500"),
    "USDT": Decimal("1"),
    "USDC": Decimal("1"),
    "SOL": Decimal("90"),
}


def default_coins() -> Dict[str, CoinConfig]:
    return {
        "BTC": CoinConfig(symbol="BTC", chain="bitcoin", confirmations=2,
                          estimated_fee=Decimal("0.0001"), decimals=8),
        "LTC": CoinConfig(symbol="LTC", chain="litecoin", confirmations=3,
                          estimated_fee=Decimal("0.001"), decimals=8),
        "ETH": CoinConfig(symbol="ETH", chain="ethereum", confirmations=12,
                          estimated_fee=Decimal("0.002"), decimals=18),
        "USDT": CoinConfig(symbol="USDT", chain="ethereum", confirmations=12,
                           estimated_fee=Decimal("15"), decimals=6,
                           contract_address="0xdAC17F958D2ee523a2206206994597C13D831ec7",
                           counter_symbol="ETH"),
        "USDC": CoinConfig(symbol="USDC", chain="ethereum", confirmations=12,
                           estimated_fee=Decimal("15"), decimals=6,
                           contract_address="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
                           counter_symbol="ETH"),
        "SOL": CoinConfig(symbol="SOL", chain="solana", confirmations=32,
                          estimated_fee=Decimal("0.0025"), decimals=9),
    }


class CryptoSettings(BaseModel):
    """Runtime configuration, built once per process and passed to services."""

    coins: Dict[str, CoinConfig] = Field(default_factory=default_coins)
    endpoints: ProviderEndpoints = Field(default_factory=ProviderEndpoints)
    fallback_prices: Dict[str, Decimal] = Field(default_factory=lambda: dict(FALLBACK_PRICES))
    blockcypher_api_key: Optional[str] = None
    etherscan_api_key: Optional[str] = None
    monitor_api_key: Optional[str] = None
    database_url: str = "sqlite:///orders.db"
    temporal_address: str = "localhost:7233"
    price_timeout_seconds: float = 5.0
    chain_timeout_seconds: float = 8.0
    monitor_interval_seconds: int = 30
    monitor_address_delay_seconds: float = 0.1
    payment_window: timedelta = timedelta(minutes=15)
    top_up_window: timedelta = timedelta(minutes=45)

    def coin(self, symbol: str) -> Optional[CoinConfig]:
        if not symbol:
            return None
        return self.coins.get(symbol.upper())

    @property
    def supported_coins(self) -> List[str]:
        return list(self.coins.keys())

    @classmethod
    def from_env(cls, environ=None) -> "CryptoSettings":
        env = os.environ if environ is None else environ
        coins = default_coins()

        coins["BTC"].extended_key = env.get("BTC_ZPUB") or env.get("BTC_XPUB")
        coins["LTC"].extended_key = env.get("LTC_ZPUB") or env.get("LTC_XPUB")
        eth_key = env.get("ETH_XPUB") or env.get("ETH_PUBLIC_KEY")
        for symbol in ("ETH", "USDT", "USDC"):
            coins[symbol].extended_key = eth_key
        coins["SOL"].extended_key = env.get("SOL_PUBLIC_KEY")

        return cls(
            coins=coins,
            endpoints=ProviderEndpoints.from_env(env),
            blockcypher_api_key=env.get("BLOCKCYPHER_API_KEY"),
            etherscan_api_key=env.get("ETHERSCAN_API_KEY"),
            monitor_api_key=env.get("MONITOR_API_KEY"),
            database_url=env.get("DATABASE_URL", "sqlite:///orders.db"),
            temporal_address=env.get("TEMPORAL_ADDRESS", "localhost:7233"),
            price_timeout_seconds=float(env.get("PRICE_TIMEOUT_SECONDS", 5)),
            chain_timeout_seconds=float(env.get("CHAIN_TIMEOUT_SECONDS", 8)),
            monitor_interval_seconds=int(env.get("MONITOR_INTERVAL_SECONDS", 30)),
            monitor_address_delay_seconds=float(env.get("MONITOR_ADDRESS_DELAY_SECONDS", 0.1)),
        )
