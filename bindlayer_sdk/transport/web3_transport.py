"""
Web3-based transport implementation.

Talks JSON-RPC to a node over HTTP through web3.py. HTTP nodes cannot push
logs, so live subscriptions are served by polling an installed log filter
from a background thread.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception, Web3RPCError

from ..exceptions import (
    BindLayerError,
    CallRevertedError,
    QueryTooLargeError,
    RejectedError,
    TransportError,
)
from ..models import BlockRef, SignedTransaction
from ._rate_limited_log import rate_limited_log
from .base import LedgerTransport, LogStream

# Configure logger
logger = logging.getLogger(__name__)

# Substrings of node error messages, by rejection kind
_REJECTION_PATTERNS = (
    (RejectedError.NONCE, ("nonce too low", "nonce too high", "invalid nonce")),
    (RejectedError.FEE, ("underpriced", "fee cap", "max fee per gas less than", "tip above fee cap", "gas price too low")),
    (RejectedError.FUNDS, ("insufficient funds",)),
)
_TOO_LARGE_PATTERNS = ("query returned more than", "too many", "block range", "limit exceeded")


def to_plain(value: Any) -> Any:
    """Convert web3 return values (AttributeDict, HexBytes) to plain JSON-like data."""
    if isinstance(value, Mapping):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        # HexBytes is a bytes subclass
        return "0x" + bytes(value).hex()
    return value


def classify_rejection(message: str) -> str:
    """Map a node's refusal message to a RejectedError kind."""
    lowered = message.lower()
    for kind, patterns in _REJECTION_PATTERNS:
        if any(p in lowered for p in patterns):
            return kind
    return RejectedError.OTHER


def build_session(retry_count: int = 3) -> requests.Session:
    """HTTP session retrying connection failures and 5xx responses."""
    session = requests.Session()
    retries = Retry(
        total=retry_count,
        backoff_factor=0.5,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET", "POST"],
        raise_on_status=False,
        connect=retry_count,
        read=retry_count,
        other=retry_count
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


class Web3Transport(LedgerTransport):
    """
    Ledger transport over an HTTP JSON-RPC endpoint.

    Args:
        rpc_url: JSON-RPC endpoint URL
        retry_count: Number of HTTP retries for connection errors and 5xx
        timeout: HTTP timeout in seconds
        poll_interval: Log filter polling interval for subscriptions, in seconds
        max_poll_failures: Consecutive filter polling failures before a stream fails
        w3: Pre-built Web3 instance (mostly for tests)
    """

    def __init__(
        self,
        rpc_url: str,
        retry_count: int = 3,
        timeout: int = 30,
        poll_interval: float = 1.0,
        max_poll_failures: int = 3,
        w3: Optional[Web3] = None,
    ):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_poll_failures = max_poll_failures
        self.session = build_session(retry_count)
        self.w3 = w3 or Web3(Web3.HTTPProvider(
            rpc_url,
            request_kwargs={"timeout": timeout},
            session=self.session,
        ))
        self._chain_id: Optional[int] = None
        self._streams: List[LogStream] = []
        self._streams_lock = threading.Lock()

    @contextmanager
    def _rpc(self, operation: str) -> Iterator[None]:
        """Translate library failures into the SDK taxonomy."""
        try:
            yield
        except BindLayerError:
            raise
        except ContractLogicError as e:
            data = getattr(e, "data", None)
            raw = b""
            if isinstance(data, str) and data.startswith("0x"):
                try:
                    raw = bytes.fromhex(data[2:])
                except ValueError:
                    raw = b""
            message = getattr(e, "message", None) or str(e)
            reason = message.replace("execution reverted: ", "").replace("execution reverted", "").strip() or None
            raise CallRevertedError(f"{operation} reverted: {message}", reason=reason, data=raw)
        except requests.RequestException as e:
            logger.error(f"{operation} failed, node unreachable: {e}")
            raise TransportError(f"{operation} failed: {str(e)}")
        except Web3RPCError as e:
            message = getattr(e, "message", None) or str(e)
            if any(p in message.lower() for p in _TOO_LARGE_PATTERNS):
                raise QueryTooLargeError(f"{operation} failed: {message}")
            logger.error(f"{operation} failed with RPC error: {message}")
            raise TransportError(f"{operation} failed: {message}")
        except (Web3Exception, ValueError) as e:
            logger.error(f"{operation} failed: {e}")
            raise TransportError(f"{operation} failed: {str(e)}")

    def chain_id(self) -> int:
        if self._chain_id is None:
            with self._rpc("eth_chainId"):
                self._chain_id = int(self.w3.eth.chain_id)
        return self._chain_id

    def block_number(self) -> int:
        with self._rpc("eth_blockNumber"):
            return int(self.w3.eth.block_number)

    def call(self, tx: Dict[str, Any], block: BlockRef = "latest") -> bytes:
        logger.debug(f"eth_call to {tx.get('to')} at {block}")
        with self._rpc("eth_call"):
            return bytes(self.w3.eth.call(tx, block_identifier=block))

    def estimate_gas(self, tx: Dict[str, Any]) -> int:
        with self._rpc("eth_estimateGas"):
            return int(self.w3.eth.estimate_gas(tx))

    def get_transaction_count(self, address: str, block: BlockRef = "pending") -> int:
        with self._rpc("eth_getTransactionCount"):
            return int(self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), block))

    def gas_price(self) -> int:
        with self._rpc("eth_gasPrice"):
            return int(self.w3.eth.gas_price)

    def max_priority_fee(self) -> int:
        with self._rpc("eth_maxPriorityFeePerGas"):
            return int(self.w3.eth.max_priority_fee)

    def base_fee(self) -> Optional[int]:
        with self._rpc("eth_getBlockByNumber"):
            block = self.w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        return int(base_fee) if base_fee is not None else None

    def send_raw_transaction(self, signed: SignedTransaction) -> str:
        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except requests.RequestException as e:
            logger.error(f"Failed to send transaction {signed.tx_hash}: {e}")
            raise TransportError(f"Failed to send transaction: {str(e)}")
        except Web3RPCError as e:
            message = getattr(e, "message", None) or str(e)
            if "already known" in message.lower():
                # Same bytes already in the node's pool
                logger.info(f"Transaction {signed.tx_hash} already known to node")
                return signed.tx_hash
            kind = classify_rejection(message)
            logger.error(f"Node rejected transaction {signed.tx_hash} ({kind}): {message}")
            raise RejectedError(f"Transaction rejected: {message}", kind=kind)
        except (Web3Exception, ValueError) as e:
            logger.error(f"Failed to send transaction {signed.tx_hash}: {e}")
            raise TransportError(f"Failed to send transaction: {str(e)}")
        return to_plain(tx_hash)

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        with self._rpc("eth_getTransactionReceipt"):
            try:
                receipt = self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None
        return to_plain(receipt) if receipt is not None else None

    def get_logs(self, filter_params: Dict[str, Any]) -> List[Dict[str, Any]]:
        logger.debug(f"eth_getLogs {filter_params}")
        with self._rpc("eth_getLogs"):
            logs = self.w3.eth.get_logs(filter_params)
        return [to_plain(log) for log in logs]

    def subscribe_logs(self, filter_params: Dict[str, Any]) -> LogStream:
        params = {k: v for k, v in filter_params.items() if k in ("address", "topics")}
        params["fromBlock"] = "latest"
        with self._rpc("eth_newFilter"):
            log_filter = self.w3.eth.filter(params)
        filter_id = log_filter.filter_id
        stop = threading.Event()

        def release() -> None:
            stop.set()
            with self._streams_lock:
                if stream in self._streams:
                    self._streams.remove(stream)
            # close() never waits on the node
            threading.Thread(
                target=self._uninstall_filter,
                args=(filter_id,),
                name=f"bindlayer-log-filter-{filter_id}-uninstall",
                daemon=True,
            ).start()

        stream = LogStream(on_close=release)
        with self._streams_lock:
            self._streams.append(stream)

        thread = threading.Thread(
            target=self._poll_filter,
            args=(filter_id, stream, stop),
            name=f"bindlayer-log-filter-{filter_id}",
            daemon=True,
        )
        thread.start()
        logger.debug(f"Installed log filter {filter_id} for {params}")
        return stream

    def _uninstall_filter(self, filter_id: Any) -> None:
        try:
            with self._rpc("eth_uninstallFilter"):
                self.w3.eth.uninstall_filter(filter_id)
        except BindLayerError as e:
            # Nodes expire idle filters on their own
            logger.warning(f"Could not uninstall log filter {filter_id}: {e}")
            return
        logger.debug(f"Uninstalled log filter {filter_id}")

    def _poll_filter(self, filter_id: Any, stream: LogStream, stop: threading.Event) -> None:
        failures = 0
        while not stop.is_set():
            try:
                with self._rpc("eth_getFilterChanges"):
                    changes = self.w3.eth.get_filter_changes(filter_id)
            except TransportError as e:
                failures += 1
                rate_limited_log(f"Log filter {filter_id} polling failed: {e}", level="warning", logger_instance=logger)
                if "filter not found" in str(e).lower() or failures >= self.max_poll_failures:
                    stream.fail(e)
                    return
                stop.wait(self.poll_interval)
                continue

            failures = 0
            logs = sorted(
                (to_plain(log) for log in changes),
                key=lambda x: (x.get("blockNumber", 0), x.get("logIndex", 0)),
            )
            for log in logs:
                if not stream.push(log):
                    return
            stop.wait(self.poll_interval)

    def close(self) -> None:
        with self._streams_lock:
            streams = list(self._streams)
        for stream in streams:
            stream.close()
        self.session.close()
