"""
BindLayer SDK - contract bindings and transaction lifecycle for EVM ledgers.
"""
from .version import __version__
from .client import LedgerClient
from .codec import SchemaCodec, parse_abi, function_selector, event_topic
from .config import ClientSettings, NetworkConfig
from .contract import BoundContract, ContractCaller, ContractTransactor, ContractFilterer
from .events import EventIterator, IteratorState, Subscription, ForwardOutcome
from .transactions import NonceManager, TransactionManager
from .signer import LocalSigner, Signer
from .models import (
    ContractDescriptor,
    MethodSpec,
    EventSpec,
    ErrorSpec,
    CallRequest,
    TransactionIntent,
    FeeQuote,
    SignedTransaction,
    LogEvent,
    DecodedEvent,
    TxReceipt,
)
from .exceptions import (
    BindLayerError,
    SchemaMismatchError,
    DecodeError,
    UnknownEventError,
    TransportError,
    QueryTooLargeError,
    NetworkError,
    CallRevertedError,
    RejectedError,
    SigningError,
    TransactionRevertedError,
    ConfirmationTimeoutError,
)

__all__ = [
    "LedgerClient",
    "SchemaCodec",
    "parse_abi",
    "function_selector",
    "event_topic",
    "ClientSettings",
    "NetworkConfig",
    "BoundContract",
    "ContractCaller",
    "ContractTransactor",
    "ContractFilterer",
    "EventIterator",
    "IteratorState",
    "Subscription",
    "ForwardOutcome",
    "NonceManager",
    "TransactionManager",
    "LocalSigner",
    "Signer",
    "ContractDescriptor",
    "MethodSpec",
    "EventSpec",
    "ErrorSpec",
    "CallRequest",
    "TransactionIntent",
    "FeeQuote",
    "SignedTransaction",
    "LogEvent",
    "DecodedEvent",
    "TxReceipt",
    "BindLayerError",
    "SchemaMismatchError",
    "DecodeError",
    "UnknownEventError",
    "TransportError",
    "QueryTooLargeError",
    "NetworkError",
    "CallRevertedError",
    "RejectedError",
    "SigningError",
    "TransactionRevertedError",
    "ConfirmationTimeoutError",
    "__version__",
]
