"""
Exceptions for the BindLayer SDK.
"""
from typing import Optional, Any


class BindLayerError(Exception):
    """Base exception for all BindLayer SDK errors."""
    pass


class SchemaMismatchError(BindLayerError):
    """Raised when call arguments disagree with the declared ABI signature.

    Raised locally, before any network interaction.
    """
    pass


class DecodeError(BindLayerError):
    """Raised when a payload does not match its declared schema."""
    pass


class UnknownEventError(DecodeError):
    """Raised when a log's topic0 is not registered in the contract ABI."""

    def __init__(self, message: str, topic0: Optional[str] = None):
        self.topic0 = topic0
        super().__init__(message)


class TransportError(BindLayerError):
    """Raised when the ledger endpoint cannot be reached or times out.

    Transport errors are considered retryable by the caller.
    """
    pass


class NetworkError(BindLayerError):
    """Raised when the node is connected to an unexpected chain."""
    pass


class QueryTooLargeError(TransportError):
    """Raised when the node refuses a log query spanning too many blocks or results."""
    pass


class CallRevertedError(BindLayerError):
    """Raised when a read-only call reverts during execution."""

    def __init__(self, message: str, reason: Optional[str] = None, data: bytes = b""):
        self.reason = reason
        self.data = data
        super().__init__(message)


class RejectedError(BindLayerError):
    """
    Raised when the node refuses a transaction (nonce conflict, underpriced, ...).

    Not blindly retryable: the nonce or fee must be re-derived first.
    """

    NONCE = "nonce"
    FEE = "fee"
    FUNDS = "funds"
    OTHER = "other"

    def __init__(self, message: str, kind: str = OTHER):
        self.kind = kind
        super().__init__(message)


class SigningError(BindLayerError):
    """Raised when the signer fails; the allocated nonce stays allocated."""

    def __init__(self, message: str, nonce: Optional[int] = None):
        self.nonce = nonce
        super().__init__(message)


class TransactionRevertedError(BindLayerError):
    """Raised when a transaction was included on-chain with a failed status."""

    def __init__(self, message: str, receipt: Any = None, reason: Optional[str] = None):
        self.receipt = receipt
        self.reason = reason
        super().__init__(message)


class ConfirmationTimeoutError(BindLayerError):
    """
    Raised when inclusion was not observed within the caller's budget.

    The outcome is ambiguous: the transaction may still be included later.
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None, cancelled: bool = False):
        self.tx_hash = tx_hash
        self.cancelled = cancelled
        super().__init__(message)
