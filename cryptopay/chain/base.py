import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from ..config import CoinConfig
from ..errors import ProviderError
from ..types.payment_types import AddressLookup

logger = logging.getLogger("chain")


def to_units(value: Any, decimals: int) -> Decimal:
    """Integer base units (satoshi, wei, lamports) to coin units."""
    try:
        return Decimal(int(value)) / (Decimal(10) ** decimals)
    except (TypeError, ValueError, InvalidOperation):
        raise ProviderError(f"Invalid base-unit amount: {value!r}")


def to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (TypeError, ValueError, InvalidOperation):
        raise ProviderError(f"Invalid amount: {value!r}")


def from_epoch(seconds) -> Optional[datetime]:
    if not seconds:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc).replace(tzinfo=None)


def from_iso(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class ChainProvider:
    """
    One (coin family, provider) adapter. Every implementation returns the same
    normalized AddressLookup and raises ProviderError for anything it cannot parse.
    """

    name = "base"

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    async def lookup(self, client: httpx.AsyncClient, address: str, coin: CoinConfig) -> AddressLookup:
        raise NotImplementedError

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: dict = None):
        response = await client.get(url, params=params)
        if response.status_code >= 400:
            raise ProviderError(f"{self.name}: HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name}: invalid JSON {e}")

    def __repr__(self):
        return f"<{type(self).__name__} {self.base_url}>"
