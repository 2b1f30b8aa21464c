from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol

from web3 import Web3

from walletpnl.errors import ValidationError

logger = logging.getLogger(__name__)

_PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


@dataclass(frozen=True)
class TokenSnapshot:
    balance_raw: int
    decimals: int
    symbol: str
    price_usd: float


class ChainReader(Protocol):
    """Live on-chain reads and the one write the wallet performs."""

    def token_balance(self, token: str, owner: str) -> int:
        ...

    def token_decimals(self, token: str) -> int:
        ...

    def token_symbol(self, token: str) -> str:
        ...

    def eth_balance(self, owner: str) -> int:
        ...

    def signer_address(self, private_key: str) -> str:
        ...

    def transfer_token(self, token: str, private_key: str, to: str, amount_raw: int) -> str:
        ...


def normalize_private_key(raw: str) -> str:
    key = raw.strip()
    if not key.startswith("0x"):
        key = f"0x{key}"
    if not _PRIVATE_KEY_RE.match(key):
        raise ValidationError("Invalid WALLET_PRIVATE_KEY format")
    return key


class ChainGateway:
    """JSON-RPC access through web3.py for ERC-20 reads and transfers."""

    def __init__(self, rpc_url: str, chain_id: int, web3: Web3 | None = None) -> None:
        self.chain_id = chain_id
        self.w3 = web3 or Web3(Web3.HTTPProvider(rpc_url))

    def _token(self, token: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    def token_balance(self, token: str, owner: str) -> int:
        return int(self._token(token).functions.balanceOf(Web3.to_checksum_address(owner)).call())

    def token_decimals(self, token: str) -> int:
        return int(self._token(token).functions.decimals().call())

    def token_symbol(self, token: str) -> str:
        return str(self._token(token).functions.symbol().call())

    def eth_balance(self, owner: str) -> int:
        return int(self.w3.eth.get_balance(Web3.to_checksum_address(owner)))

    def signer_address(self, private_key: str) -> str:
        account = self.w3.eth.account.from_key(normalize_private_key(private_key))
        return Web3.to_checksum_address(account.address)

    def transfer_token(self, token: str, private_key: str, to: str, amount_raw: int) -> str:
        """Send an ERC-20 transfer and wait for one confirmation."""
        account = self.w3.eth.account.from_key(normalize_private_key(private_key))
        tx = self._token(token).functions.transfer(
            Web3.to_checksum_address(to), amount_raw
        ).build_transaction(
            {
                "from": account.address,
                "nonce": self.w3.eth.get_transaction_count(account.address),
                "chainId": self.chain_id,
            }
        )
        signed = account.sign_transaction(tx)
        tx_hash = Web3.to_hex(self.w3.eth.send_raw_transaction(signed.raw_transaction))
        logger.info("token transfer sent tx=%s to=%s amount_raw=%s", tx_hash, to, amount_raw)

        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash)
        if receipt.get("status") == 0:
            raise RuntimeError(f"Transaction {tx_hash} execution reverted")
        return tx_hash
