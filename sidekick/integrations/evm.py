"""EVM chain access for reward transfers.

- One cached Web3 HTTP client per configured chain (``CHAIN_SETTINGS['rpc_urls']``).
- Signs ERC20 ``transfer`` calls with the hot wallet key (``EVM_PRIVATE_KEY``).
- Nonces come from the pending transaction count and are cached per chain
  behind a lock, so concurrent ticks on one chain never reuse a nonce.
"""
from __future__ import annotations

import threading
from typing import Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from sidekick.config import CHAIN_SETTINGS, EVM_PRIVATE_KEY
from sidekick.errors import ConnectivityError, TransactionRevertedError
from sidekick.utils import get_logger

logger = get_logger(__name__)

ERC20_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
]


class ChainSigner:
    def __init__(self, chain_id: str, w3: Web3, account):
        self.chain_id = chain_id
        self.w3 = w3
        self._account = account
        self._nonce: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def address(self) -> str:
        return self._account.address

    def block_number(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except Exception as e:
            raise ConnectivityError(f"Chain {self.chain_id} unreachable: {e}") from e

    def _token(self, contract_address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=ERC20_ABI)

    def encode_transfer(self, contract_address: str, recipient: str, amount: int) -> str:
        token = self._token(contract_address)
        return token.encode_abi("transfer", args=[Web3.to_checksum_address(recipient), int(amount)])

    def _next_nonce(self) -> int:
        if self._nonce is None:
            self._nonce = int(self.w3.eth.get_transaction_count(self.address, "pending"))
        return self._nonce

    def submit_transfer(self, contract_address: str, recipient: str, amount: int) -> tuple[str, str]:
        """Sign and broadcast ``transfer(recipient, amount)``; returns (tx_hash, calldata).

        Raises TransactionRevertedError when gas estimation shows the call would revert.
        """
        token = self._token(contract_address)
        with self._lock:
            try:
                tx = token.functions.transfer(Web3.to_checksum_address(recipient), int(amount)).build_transaction({
                    "from": self.address,
                    "nonce": self._next_nonce(),
                })
                signed = self._account.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as e:
                self._nonce = None
                raise TransactionRevertedError(f"transfer would revert: {e}") from e
            except Exception:
                # node may have seen a different nonce; re-read it next time
                self._nonce = None
                raise
            self._nonce = int(tx["nonce"]) + 1
        hex_hash = Web3.to_hex(tx_hash)
        logger.info("Transfer broadcast", chain_id=self.chain_id, tx_hash=hex_hash, recipient=recipient)
        return hex_hash, str(tx.get("data", ""))

    def wait_for_receipt(self, tx_hash: str, timeout: float, poll_latency: float = 2.0) -> Optional[bool]:
        """True on success, False on revert, None while still unconfirmed after ``timeout``."""
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=poll_latency)
        except TimeExhausted:
            logger.warning("Receipt not available yet", chain_id=self.chain_id, tx_hash=tx_hash)
            return None
        return int(receipt["status"]) == 1


class SignerRegistry:
    def __init__(self, rpc_urls: Optional[dict[str, str]] = None, private_key: Optional[str] = None):
        self._rpc_urls = {str(k).lower(): v for k, v in (rpc_urls if rpc_urls is not None else CHAIN_SETTINGS["rpc_urls"]).items()}  # type: ignore[union-attr]
        self._private_key = private_key if private_key is not None else EVM_PRIVATE_KEY
        self._timeout = float(CHAIN_SETTINGS.get("request_timeout_seconds", 10))  # type: ignore[arg-type]
        self._signers: dict[str, ChainSigner] = {}
        self._lock = threading.Lock()

    @property
    def chains(self) -> list[str]:
        return sorted(self._rpc_urls)

    def get_signer(self, chain_id: str) -> ChainSigner:
        key = str(chain_id).strip().lower()
        with self._lock:
            if key in self._signers:
                return self._signers[key]
            uri = self._rpc_urls.get(key)
            if not uri:
                raise ConnectivityError(f"No RPC endpoint configured for chain {chain_id}")
            if not self._private_key:
                raise ConnectivityError("EVM_PRIVATE_KEY is not configured")
            try:
                account = Account.from_key(self._private_key)
            except Exception as e:
                raise ConnectivityError("EVM_PRIVATE_KEY is invalid") from e
            w3 = Web3(Web3.HTTPProvider(uri, request_kwargs={"timeout": self._timeout}))
            signer = ChainSigner(key, w3, account)
            self._signers[key] = signer
            logger.info("Chain signer ready", chain_id=key, address=account.address)
            return signer

    def ping(self, chain_id: str) -> bool:
        try:
            self.get_signer(chain_id).block_number()
            return True
        except ConnectivityError:
            return False


__all__ = ["ERC20_ABI", "ChainSigner", "SignerRegistry"]
