"""
Signing capability used by the TransactionManager.

Any object with an ``address`` and a ``sign_transaction(dict)`` method
returning an object that exposes ``raw_transaction`` and ``hash`` can be
used; ``LocalSigner`` wraps a private key with eth_account.
"""
from typing import Any, Dict, Protocol

from .local import LocalSigner

__all__ = ["Signer", "LocalSigner"]


class Signer(Protocol):
    """Protocol for custom signers"""
    address: str

    def sign_transaction(self, transaction_dict: Dict[str, Any]) -> Any:
        """Sign transaction and return signed tx object"""
        ...
