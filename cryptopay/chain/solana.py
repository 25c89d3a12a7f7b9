import itertools

from ..errors import ProviderError
from ..types.payment_types import AddressLookup, NormalizedTransaction
from .base import ChainProvider, from_epoch, logger, to_units

LAMPORT_DECIMALS = 9
MAX_SIGNATURES = 25
MAX_DETAILS = 10


class SolanaRpcProvider(ChainProvider):
    name = "solana-rpc"

    def __init__(self, base_url):
        super().__init__(base_url)
        self._ids = itertools.count(1)

    async def _rpc(self, client, method, params):
        response = await client.post(self.base_url, json={
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        })
        if response.status_code >= 400:
            raise ProviderError(f"{self.name}: HTTP {response.status_code} on {method}")
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name}: invalid JSON on {method}: {e}")
        if data.get("error"):
            raise ProviderError(f"{self.name}: {method} error {data['error']}")
        return data.get("result")

    @staticmethod
    def credited_lamports(tx: dict, address: str) -> int:
        meta = tx.get("meta") or {}
        pre = meta.get("preBalances") or []
        post = meta.get("postBalances") or []
        keys = ((tx.get("transaction") or {}).get("message") or {}).get("accountKeys") or []
        for i, key in enumerate(keys):
            pubkey = key.get("pubkey") if isinstance(key, dict) else key
            if pubkey == address and i < len(pre) and i < len(post):
                return max(0, post[i] - pre[i])
        return 0

    async def lookup(self, client, address, coin):
        balance = await self._rpc(client, "getBalance", [address, {"commitment": "confirmed"}])
        signatures = await self._rpc(client, "getSignaturesForAddress",
                                     [address, {"limit": MAX_SIGNATURES, "commitment": "confirmed"}])
        tip = await self._rpc(client, "getSlot", [{"commitment": "confirmed"}])
        if not isinstance(balance, dict) or not isinstance(signatures, list) or not isinstance(tip, int):
            raise ProviderError(f"{self.name}: unexpected response shape")

        transactions = []
        for sig in [s for s in signatures if not s.get("err")][:MAX_DETAILS]:
            try:
                tx = await self._rpc(client, "getTransaction", [
                    sig["signature"],
                    {"commitment": "confirmed", "encoding": "jsonParsed",
                     "maxSupportedTransactionVersion": 0},
                ])
            except ProviderError as e:
                logger.warning(f"[Chain] solana tx detail failed for {sig['signature']}: {e}")
                continue
            if not tx:
                continue

            slot = sig.get("slot") or tx.get("slot")
            status = sig.get("confirmationStatus")
            confirmations = max(0, tip - slot + 1) if slot and status in ("confirmed", "finalized") else 0
            transactions.append(NormalizedTransaction(
                tx_hash=sig["signature"],
                confirmations=confirmations,
                block_height=slot,
                amount=to_units(self.credited_lamports(tx, address), LAMPORT_DECIMALS),
                timestamp=from_epoch(sig.get("blockTime")),
                raw=sig,
            ))

        return AddressLookup(
            provider=self.name,
            balance=to_units(balance.get("value", 0), LAMPORT_DECIMALS),
            transactions=transactions,
        )
