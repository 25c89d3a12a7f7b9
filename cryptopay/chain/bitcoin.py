from decimal import Decimal

from ..errors import ProviderError
from ..types.payment_types import AddressLookup, NormalizedTransaction
from .base import ChainProvider, from_epoch, from_iso, logger, to_decimal, to_units

SATOSHI_DECIMALS = 8


class EsploraProvider(ChainProvider):
    """blockstream.info / mempool.space REST API."""

    name = "esplora"

    async def _tip_height(self, client) -> int:
        response = await client.get(f"{self.base_url}/blocks/tip/height")
        if response.status_code >= 400:
            raise ProviderError(f"{self.name}: HTTP {response.status_code} on tip height")
        try:
            return int(response.text.strip())
        except ValueError:
            raise ProviderError(f"{self.name}: invalid tip height {response.text!r}")

    async def lookup(self, client, address, coin):
        stats = await self._get_json(client, f"{self.base_url}/address/{address}")
        txs = await self._get_json(client, f"{self.base_url}/address/{address}/txs")
        if not isinstance(stats, dict) or not isinstance(txs, list):
            raise ProviderError(f"{self.name}: unexpected response shape")
        tip = await self._tip_height(client)

        chain_stats = stats.get("chain_stats") or {}
        balance = to_units(
            int(chain_stats.get("funded_txo_sum", 0)) - int(chain_stats.get("spent_txo_sum", 0)),
            SATOSHI_DECIMALS,
        )

        transactions = []
        for tx in txs:
            status = tx.get("status") or {}
            height = status.get("block_height") if status.get("confirmed") else None
            received = sum(
                int(out.get("value", 0)) for out in tx.get("vout", [])
                if out.get("scriptpubkey_address") == address
            )
            transactions.append(NormalizedTransaction(
                tx_hash=tx["txid"],
                confirmations=max(0, tip - height + 1) if height else 0,
                block_height=height,
                amount=to_units(received, SATOSHI_DECIMALS),
                timestamp=from_epoch(status.get("block_time")),
                raw=tx,
            ))
        return AddressLookup(provider=self.name, balance=balance, transactions=transactions)


class BlockCypherProvider(ChainProvider):
    name = "blockcypher"

    def __init__(self, base_url, api_key=None):
        super().__init__(base_url)
        self.api_key = api_key

    async def lookup(self, client, address, coin):
        params = {"limit": 50}
        if self.api_key:
            params["token"] = self.api_key
        data = await self._get_json(client, f"{self.base_url}/addrs/{address}/full", params=params)
        if not isinstance(data, dict) or "balance" not in data:
            raise ProviderError(f"{self.name}: unexpected response shape")

        transactions = []
        for tx in data.get("txs", []):
            received = sum(
                int(out.get("value", 0)) for out in tx.get("outputs", [])
                if address in (out.get("addresses") or [])
            )
            height = tx.get("block_height")
            transactions.append(NormalizedTransaction(
                tx_hash=tx["hash"],
                confirmations=int(tx.get("confirmations") or 0),
                block_height=height if height and height > 0 else None,
                amount=to_units(received, SATOSHI_DECIMALS),
                timestamp=from_iso(tx.get("confirmed") or tx.get("received")),
                raw=tx,
            ))
        return AddressLookup(
            provider=self.name,
            balance=to_units(data.get("balance", 0), SATOSHI_DECIMALS),
            transactions=transactions,
        )


class InsightProvider(ChainProvider):
    name = "insight"

    async def lookup(self, client, address, coin):
        summary = await self._get_json(client, f"{self.base_url}/addr/{address}")
        data = await self._get_json(client, f"{self.base_url}/txs", params={"address": address})
        if not isinstance(summary, dict) or not isinstance(data, dict):
            raise ProviderError(f"{self.name}: unexpected response shape")

        transactions = []
        for tx in data.get("txs", []):
            received = Decimal(0)
            for out in tx.get("vout", []):
                script = out.get("scriptPubKey") or {}
                if address in (script.get("addresses") or []):
                    received += to_decimal(out.get("value", 0))
            transactions.append(NormalizedTransaction(
                tx_hash=tx["txid"],
                confirmations=int(tx.get("confirmations") or 0),
                block_height=tx.get("blockheight") if (tx.get("blockheight") or -1) > 0 else None,
                amount=received,
                timestamp=from_epoch(tx.get("time")),
                raw=tx,
            ))
        logger.debug(f"[Chain] insight returned {len(transactions)} txs for {address}")
        return AddressLookup(
            provider=self.name,
            balance=to_decimal(summary.get("balance", 0)),
            transactions=transactions,
        )
