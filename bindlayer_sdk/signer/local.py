"""
Private-key signer backed by eth_account.
"""
import logging
from typing import Any, Dict

from eth_account import Account
from eth_account.signers.local import LocalAccount

logger = logging.getLogger(__name__)


class LocalSigner:
    """
    Signs transactions with a private key held in memory.

    Args:
        private_key: Hex private key, with or without the 0x prefix

    Raises:
        ValueError: If the key is not a valid secp256k1 private key
    """

    def __init__(self, private_key: str):
        key = private_key.strip()
        if not key.startswith("0x"):
            key = "0x" + key
        self._account: LocalAccount = Account.from_key(key)

    @classmethod
    def generate(cls) -> "LocalSigner":
        """Signer for a fresh random key (tests and local networks)."""
        account = Account.create()
        return cls(account.key.hex())

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, transaction_dict: Dict[str, Any]) -> Any:
        logger.debug(f"Signing transaction nonce={transaction_dict.get('nonce')} from {self.address}")
        return self._account.sign_transaction(transaction_dict)

    def __repr__(self) -> str:
        # Never render the key
        return f"LocalSigner(address={self.address})"
