"""
Read-only access to Base (or any EVM chain) through ``web3``'s async API.

Only the calls the agent needs: receipts, Transfer logs, balances and a
fee estimate for the pre-transfer balance check.
"""

from __future__ import annotations

import logging
from typing import Any

from eth_utils import to_checksum_address
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from xbtify_agent.erc20 import ERC20_ABI, TRANSFER_TOPIC, address_topic
from xbtify_agent.types import FeeEstimate, TokenBalance, TransactionReceipt

logger = logging.getLogger(__name__)


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class ChainClient:
    """Async JSON-RPC client for one chain."""

    def __init__(self, rpc_url: str, chain_id: int, timeout: float = 30.0) -> None:
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self._w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout})
        )

    @property
    def w3(self) -> AsyncWeb3:
        return self._w3

    async def get_transaction_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        """Return the receipt, or ``None`` if the transaction is not mined."""
        try:
            receipt = await self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

        to_address = receipt.get("to")
        return TransactionReceipt(
            transaction_hash=_hex(receipt["transactionHash"]).lower(),
            status=int(receipt.get("status", 0)),
            from_address=to_checksum_address(receipt["from"]) if receipt.get("from") else None,
            to_address=to_checksum_address(to_address) if to_address else None,
            block_number=receipt.get("blockNumber"),
            logs=[dict(log) for log in receipt.get("logs", [])],
        )

    async def block_number(self) -> int:
        return await self._w3.eth.block_number

    async def get_transfer_logs(
        self,
        token_address: str,
        from_block: int,
        to_block: int | str = "latest",
        sender: str | None = None,
        recipient: str | None = None,
    ) -> list[dict[str, Any]]:
        """Transfer logs of ``token_address`` filtered by indexed from/to."""
        topics: list[Any] = [
            TRANSFER_TOPIC,
            address_topic(sender) if sender else None,
            address_topic(recipient) if recipient else None,
        ]
        logs = await self._w3.eth.get_logs(
            {
                "address": to_checksum_address(token_address),
                "fromBlock": from_block,
                "toBlock": to_block,
                "topics": topics,
            }
        )
        return [dict(log) for log in logs]

    async def get_token_balance(self, token_address: str, owner: str) -> TokenBalance:
        contract = self._w3.eth.contract(address=to_checksum_address(token_address), abi=ERC20_ABI)
        balance = await contract.functions.balanceOf(to_checksum_address(owner)).call()
        decimals = await contract.functions.decimals().call()
        symbol = await contract.functions.symbol().call()
        return TokenBalance(balance_raw=int(balance), decimals=int(decimals), symbol=str(symbol))

    async def get_eth_balance(self, owner: str) -> int:
        return int(await self._w3.eth.get_balance(to_checksum_address(owner)))

    async def estimate_fees(self) -> FeeEstimate:
        block = await self._w3.eth.get_block("latest")
        priority = int(await self._w3.eth.max_priority_fee)
        base_fee = int(block.get("baseFeePerGas", 0) or 0)
        return FeeEstimate(
            max_fee_per_gas=base_fee * 2 + priority,
            max_priority_fee_per_gas=priority,
        )
