from collections import OrderedDict

from ..errors import ProviderError
from ..types.payment_types import AddressLookup, NormalizedTransaction
from .base import ChainProvider, from_epoch, to_units

WEI_DECIMALS = 18


class EtherscanProvider(ChainProvider):
    """
    Etherscan-compatible account API. Native ETH uses balance/txlist; tokens are
    scoped to the contract with tokenbalance/tokentx. The multichain V2 API also
    needs a chain_id; Blockscout and V1-style hosts do without.
    """

    name = "etherscan"

    def __init__(self, base_url, api_key=None, chain_id=None):
        super().__init__(base_url)
        self.api_key = api_key or "YourApiKeyToken"
        self.chain_id = chain_id

    def _params(self, address, coin, kind):
        params = {"module": "account", "address": address, "apikey": self.api_key}
        if self.chain_id is not None:
            params["chainid"] = self.chain_id
        if kind == "balance":
            params.update(tag="latest")
            if coin.is_token:
                params.update(action="tokenbalance", contractaddress=coin.contract_address)
            else:
                params.update(action="balance")
        else:
            params.update(startblock=0, endblock=99999999, sort="desc")
            if coin.is_token:
                params.update(action="tokentx", contractaddress=coin.contract_address)
            else:
                params.update(action="txlist")
        return params

    async def _call(self, client, params):
        data = await self._get_json(client, self.base_url, params=params)
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name}: unexpected response shape")
        result = data.get("result")
        # status "0" with an empty list is "No transactions found", not an error
        if data.get("status") == "0" and not isinstance(result, list):
            raise ProviderError(f"{self.name}: {data.get('message')} {result}")
        return result

    async def lookup(self, client, address, coin):
        balance_raw = await self._call(client, self._params(address, coin, "balance"))
        txs = await self._call(client, self._params(address, coin, "txs")) or []
        if not isinstance(txs, list):
            raise ProviderError(f"{self.name}: unexpected transaction list")

        decimals = coin.decimals if coin.is_token else WEI_DECIMALS
        credited = OrderedDict()
        for tx in txs:
            if (tx.get("to") or "").lower() != address.lower():
                continue
            if tx.get("isError") == "1" or tx.get("txreceipt_status") == "0":
                continue
            tx_decimals = int(tx.get("tokenDecimal") or decimals)
            amount = to_units(tx.get("value", 0), tx_decimals)
            if amount <= 0:
                continue
            # one tx may carry several transfer logs to the same address
            if tx["hash"] in credited:
                credited[tx["hash"]].amount += amount
                continue
            block = int(tx.get("blockNumber") or 0)
            credited[tx["hash"]] = NormalizedTransaction(
                tx_hash=tx["hash"],
                confirmations=int(tx.get("confirmations") or 0),
                block_height=block or None,
                amount=amount,
                timestamp=from_epoch(tx.get("timeStamp")),
                raw=tx,
            )

        return AddressLookup(
            provider=self.name,
            balance=to_units(balance_raw or 0, decimals),
            transactions=list(credited.values()),
        )
