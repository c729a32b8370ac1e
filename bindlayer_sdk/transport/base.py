"""
Transport layer for the ledger node.

This module defines the primitives the SDK consumes from a ledger endpoint
(read calls, broadcast, log queries and subscriptions, nonce/fee/receipt
lookups) and the channel used to deliver live logs.
"""
import logging
import queue
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models import BlockRef, SignedTransaction

# Configure logger
logger = logging.getLogger(__name__)


class StreamSignal(str, Enum):
    """Kinds of items read from a LogStream."""
    LOG = "log"
    ERROR = "error"
    END = "end"
    CLOSED = "closed"
    EMPTY = "empty"


class LogStream:
    """
    Channel delivering raw logs from a live subscription.

    The producer (transport) calls ``push``, then exactly one of ``fail`` or
    ``finish``. The consumer reads with ``get``/``get_nowait`` and releases
    the subscription with ``close``, which is idempotent and wakes a blocked
    reader.
    """

    def __init__(self, on_close: Optional[Callable[[], None]] = None):
        self._queue: "queue.Queue[Tuple[StreamSignal, Any]]" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._terminated = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminated(self) -> bool:
        """True once the producer has reported an error or a clean end."""
        return self._terminated

    # -- producer side ----------------------------------------------------

    def push(self, log: Dict[str, Any]) -> bool:
        """Queue a raw log. Returns False if the stream no longer accepts logs."""
        with self._lock:
            if self._closed or self._terminated:
                return False
            self._queue.put((StreamSignal.LOG, log))
            return True

    def fail(self, error: Exception) -> None:
        """Terminate the stream with an error."""
        with self._lock:
            if self._closed or self._terminated:
                return
            self._terminated = True
            self._queue.put((StreamSignal.ERROR, error))

    def finish(self) -> None:
        """Terminate the stream cleanly."""
        with self._lock:
            if self._closed or self._terminated:
                return
            self._terminated = True
            self._queue.put((StreamSignal.END, None))

    # -- consumer side ----------------------------------------------------

    def get(self, timeout: Optional[float] = None) -> Tuple[StreamSignal, Any]:
        """
        Block until the next item.

        Returns:
            (LOG, raw_log), (ERROR, exception), (END, None), (CLOSED, None),
            or (EMPTY, None) if ``timeout`` elapsed
        """
        if self._closed:
            return StreamSignal.CLOSED, None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return StreamSignal.EMPTY, None
        if self._closed:
            return StreamSignal.CLOSED, None
        return item

    def get_nowait(self) -> Tuple[StreamSignal, Any]:
        """Non-blocking variant of ``get``."""
        if self._closed:
            return StreamSignal.CLOSED, None
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return StreamSignal.EMPTY, None

    def close(self) -> None:
        """Release the subscription exactly once and wake any blocked reader."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put((StreamSignal.CLOSED, None))
            on_close, self._on_close = self._on_close, None
        if on_close is not None:
            try:
                on_close()
            except Exception as e:
                logger.warning(f"Failed to release log subscription: {e}")


class LedgerTransport(ABC):
    """
    Abstract base class for ledger transport implementations.

    Implementations translate their library's failures into the SDK error
    taxonomy: connectivity problems become ``TransportError``, node-side
    refusal of a transaction becomes ``RejectedError`` and execution reverts
    of read calls become ``CallRevertedError``.
    """

    @abstractmethod
    def chain_id(self) -> int:
        """Chain identifier of the connected network."""
        pass

    @abstractmethod
    def block_number(self) -> int:
        """Number of the latest block."""
        pass

    @abstractmethod
    def call(self, tx: Dict[str, Any], block: BlockRef = "latest") -> bytes:
        """
        Execute a read-only call at a block reference.

        Args:
            tx: Call object with ``to``, ``data`` and optionally ``from``/``value``
            block: Block number or tag

        Returns:
            Raw return data

        Raises:
            CallRevertedError: If execution reverted
            TransportError: If the node could not be reached
        """
        pass

    @abstractmethod
    def estimate_gas(self, tx: Dict[str, Any]) -> int:
        """Estimate the gas needed by a transaction."""
        pass

    @abstractmethod
    def get_transaction_count(self, address: str, block: BlockRef = "pending") -> int:
        """Next nonce expected from an account (pending-inclusive by default)."""
        pass

    @abstractmethod
    def gas_price(self) -> int:
        """Legacy gas price recommendation in wei."""
        pass

    @abstractmethod
    def max_priority_fee(self) -> int:
        """Priority fee (tip) recommendation in wei."""
        pass

    @abstractmethod
    def base_fee(self) -> Optional[int]:
        """Base fee of the latest block, or None on chains without a fee market."""
        pass

    @abstractmethod
    def send_raw_transaction(self, signed: SignedTransaction) -> str:
        """
        Broadcast a signed transaction.

        Returns:
            Transaction hash (0x-prefixed hex)

        Raises:
            RejectedError: If the node refused the transaction
            TransportError: If the node could not be reached
        """
        pass

    @abstractmethod
    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Receipt of a transaction, or None while it is not included."""
        pass

    @abstractmethod
    def get_logs(self, filter_params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Historical logs matching ``address``, ``topics``, ``fromBlock``, ``toBlock``.
        """
        pass

    @abstractmethod
    def subscribe_logs(self, filter_params: Dict[str, Any]) -> LogStream:
        """
        Open a live subscription for logs matching ``address`` and ``topics``.

        Returns:
            A LogStream fed by the transport until closed or terminated
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close any open connections or resources."""
        pass


def log_matches(log: Dict[str, Any], filter_params: Dict[str, Any]) -> bool:
    """Check a raw log against an address/topics filter (JSON-RPC semantics)."""
    address = filter_params.get("address")
    if address:
        addresses = address if isinstance(address, (list, tuple)) else [address]
        if str(log.get("address", "")).lower() not in {a.lower() for a in addresses}:
            return False
    topics = log.get("topics") or []
    for position, wanted in enumerate(filter_params.get("topics") or []):
        if wanted is None:
            continue
        if position >= len(topics):
            return False
        options = wanted if isinstance(wanted, (list, tuple)) else [wanted]
        if str(topics[position]).lower() not in {str(o).lower() for o in options}:
            return False
    return True
