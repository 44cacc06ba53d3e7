"""
ERC-20 helpers: Transfer log decoding, ``transfer`` call encoding and the
wallet-send-calls payload offered to users for the paid feature.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping
from urllib.parse import urlparse

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from xbtify_agent import constants
from xbtify_agent.types import TransferLog, WalletCall, WalletCallMetadata, WalletSendCalls

TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()
TRANSFER_SELECTOR = function_signature_to_4byte_selector("transfer(address,uint256)")

FAVICON_URL = (
    "https://www.google.com/s2/favicons?sz=256&domain_url=https%3A%2F%2Fwww.coinbase.com%2Fwallet"
)

# Minimal ABI for the reads the agent needs
ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "symbol",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
]


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return bytes.fromhex(text)


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text


def address_topic(address: str) -> str:
    """32-byte topic encoding of an address (for log filters)."""
    return "0x" + "00" * 12 + to_checksum_address(address)[2:].lower()


def decode_transfer_log(log: Mapping[str, Any]) -> TransferLog:
    """Decode a raw ``Transfer(address,address,uint256)`` log.

    Accepts web3 log dicts whose topics/data are ``bytes``/``HexBytes`` or
    hex strings.

    Raises:
        ValueError: The log is not an ERC-20 Transfer.
    """
    topics = [_to_bytes(t) for t in log.get("topics", [])]
    if len(topics) != 3 or "0x" + topics[0].hex() != TRANSFER_TOPIC:
        raise ValueError("Not an ERC-20 Transfer log")

    try:
        (value,) = abi_decode(["uint256"], _to_bytes(log.get("data", b"")))
    except DecodingError as e:
        raise ValueError("Not an ERC-20 Transfer log") from e
    block_number = log.get("blockNumber")
    return TransferLog(
        address=to_checksum_address(log["address"]),
        from_address=to_checksum_address("0x" + topics[1][-20:].hex()),
        to_address=to_checksum_address("0x" + topics[2][-20:].hex()),
        value=int(value),
        transaction_hash=_to_hex(log["transactionHash"]).lower(),
        block_number=int(block_number) if block_number is not None else None,
    )


def encode_transfer_call(to: str, amount: int) -> str:
    """Calldata for ``transfer(to, amount)`` as a 0x-prefixed hex string."""
    args = abi_encode(["address", "uint256"], [to_checksum_address(to), amount])
    return "0x" + (TRANSFER_SELECTOR + args).hex()


def to_base_units(amount: Decimal, decimals: int) -> int:
    return int((Decimal(amount) * (Decimal(10) ** decimals)).to_integral_value())


def from_base_units(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)


def paymaster_url(chain_id: int, coinbase_api_key: str, pimlico_api_key: str) -> str:
    """Coinbase CDP paymaster on Base, Pimlico everywhere else."""
    if chain_id == constants.BASE_CHAIN_ID:
        return f"https://api.developer.coinbase.com/rpc/v1/base/{coinbase_api_key}"
    return f"https://api.pimlico.io/v2/{chain_id}/rpc?apikey={pimlico_api_key}"


def transfer_erc20_calls(
    *,
    from_address: str,
    to_address: str,
    chain_id: int,
    token_address: str,
    token_symbol: str,
    token_decimals: int,
    amount: Decimal,
    app_url: str,
    coinbase_api_key: str = "",
    pimlico_api_key: str = "",
) -> WalletSendCalls:
    """Build the wallet-send-calls request for one ERC-20 transfer.

    Raises:
        ValueError: ``chain_id`` is not a supported network.
    """
    network = constants.NETWORKS.get(chain_id)
    if network is None:
        raise ValueError(f"Unsupported chain id: {chain_id}")
    network_id, network_name = network

    call = WalletCall(
        to=to_checksum_address(token_address),
        data=encode_transfer_call(to_address, to_base_units(amount, token_decimals)),
        metadata=WalletCallMetadata(
            description=f"Transfer {amount} {token_symbol} on {network_name}",
            transaction_type="transfer",
            currency=token_symbol,
            amount=str(amount),
            decimals=str(token_decimals),
            network_id=network_id,
            hostname=urlparse(app_url).hostname,
            favicon_url=FAVICON_URL,
            title="XBTify Agent",
        ),
    )
    return WalletSendCalls(
        from_address=to_checksum_address(from_address),
        chain_id=hex(chain_id),
        capabilities={
            "paymasterService": {
                "url": paymaster_url(chain_id, coinbase_api_key, pimlico_api_key),
            }
        },
        calls=[call],
    )
