"""
BoundContract - a contract ABI bound to an address and a ledger transport.

Reads go straight through the codec and the transport, writes are turned
into TransactionIntents for the TransactionManager, and logs are queried,
watched or iterated and decoded against the contract's events.
"""
import logging
from functools import partial
from typing import Any, Callable, Dict, Iterator, Optional, Sequence, Tuple, Union, TYPE_CHECKING

from .codec import SchemaCodec, parse_abi
from .events import EventIterator, Subscription, to_log_event
from .exceptions import CallRevertedError, DecodeError, QueryTooLargeError, SchemaMismatchError
from .models import (
    BlockRef,
    CallRequest,
    ContractDescriptor,
    DecodedEvent,
    FeeQuote,
    LogEvent,
    TransactionIntent,
    TxReceipt,
)
from .transport.base import LedgerTransport

if TYPE_CHECKING:
    from .signer import Signer
    from .transactions import TransactionManager

# Configure logger
logger = logging.getLogger(__name__)

# Block span of one eth_getLogs query when a node refuses an unbounded range
DEFAULT_LOG_BATCH = 2000

AbiInput = Union[str, Sequence[Dict[str, Any]]]


class BoundContract:
    """
    A deployed contract reachable through a transport.

    Args:
        transport: Ledger transport
        descriptor: Parsed ABI bound to the contract address
        manager: TransactionManager used by ``send``/``deploy`` (optional)
        signer: Signer used by ``send`` (optional)

    Raises:
        ValueError: If the descriptor carries no address
    """

    def __init__(
        self,
        transport: LedgerTransport,
        descriptor: ContractDescriptor,
        manager: Optional["TransactionManager"] = None,
        signer: Optional["Signer"] = None,
    ):
        if not descriptor.address:
            raise ValueError("BoundContract needs a contract address")
        self.transport = transport
        self.descriptor = descriptor
        self.codec = SchemaCodec(descriptor)
        self.manager = manager
        self.signer = signer

    @classmethod
    def from_abi(
        cls,
        transport: LedgerTransport,
        address: str,
        abi: AbiInput,
        manager: Optional["TransactionManager"] = None,
        signer: Optional["Signer"] = None,
    ) -> "BoundContract":
        """
        Bind an ABI to an address.

        Raises:
            SchemaMismatchError: If the ABI or the address is malformed
        """
        return cls(transport, parse_abi(abi, address), manager=manager, signer=signer)

    @property
    def address(self) -> str:
        return self.descriptor.address

    def __repr__(self) -> str:
        return f"BoundContract(address={self.address})"

    # -- capability views -------------------------------------------------

    @property
    def caller(self) -> "ContractCaller":
        """Read-only view."""
        return ContractCaller(self)

    @property
    def transactor(self) -> "ContractTransactor":
        """Write-only view."""
        return ContractTransactor(self)

    @property
    def filterer(self) -> "ContractFilterer":
        """Event view."""
        return ContractFilterer(self)

    # -- reads ------------------------------------------------------------

    def call(self, method: str, *args: Any, block: BlockRef = "latest", sender: Optional[str] = None) -> Any:
        """
        Execute a read-only call and decode its result.

        Args:
            method: Method name or full signature
            *args: Method arguments
            block: Block number or tag to read at
            sender: Optional ``from`` address for the call

        Returns:
            None, a single value, or a tuple for multiple outputs

        Raises:
            SchemaMismatchError: If the arguments disagree with the ABI
            CallRevertedError: If the call reverted
            TransportError: If the node could not be reached
            DecodeError: If the returned data does not match the outputs
        """
        spec = self.codec.method(method, args)
        data = self.codec.encode(spec.signature, args)
        tx: Dict[str, Any] = {"to": self.address, "data": "0x" + data.hex()}
        if sender:
            tx["from"] = sender

        logger.debug(f"Calling {spec.signature} on {self.address} at {block}")
        try:
            raw = self.transport.call(tx, block)
        except CallRevertedError as e:
            reason = self.codec.decode_revert(e.data) if e.data else e.reason
            raise CallRevertedError(
                f"Call to {spec.signature} reverted: {reason or 'no reason given'}",
                reason=reason,
                data=e.data,
            )

        if not raw and spec.outputs:
            raise DecodeError(f"Empty result from {spec.signature}; is a contract deployed at {self.address}?")
        return self.codec.decode_result(spec.signature, raw)

    def call_request(self, request: CallRequest, sender: Optional[str] = None) -> Any:
        return self.call(request.method, *request.args, block=request.block, sender=sender)

    # -- writes -----------------------------------------------------------

    def transact(self, method: str, *args: Any, value: int = 0, gas_limit: Optional[int] = None) -> TransactionIntent:
        """
        Encode a state-changing call without touching the network.

        Raises:
            SchemaMismatchError: If the arguments disagree with the ABI
        """
        spec = self.codec.method(method, args)
        if value and not spec.is_payable:
            raise SchemaMismatchError(f"{spec.signature} is not payable but value={value} was given")
        data = self.codec.encode(spec.signature, args)
        return TransactionIntent(
            to=self.address,
            data="0x" + data.hex(),
            value=value,
            gas_limit=gas_limit,
            method=spec.signature,
            args=tuple(args),
        )

    def send(
        self,
        method: str,
        *args: Any,
        value: int = 0,
        gas_limit: Optional[int] = None,
        fees: Optional[FeeQuote] = None,
        wait: bool = True,
        timeout: Optional[float] = None,
    ):
        """
        Run a state-changing call through the whole transaction lifecycle.

        Returns:
            TxReceipt when ``wait`` is set, else the SignedTransaction

        Raises:
            ValueError: If the contract was bound without a manager and signer
        """
        if self.manager is None or self.signer is None:
            raise ValueError("send() needs a contract bound with a TransactionManager and a signer")
        intent = self.transact(method, *args, value=value, gas_limit=gas_limit)
        return self.manager.transact(
            intent,
            self.signer,
            fees=fees,
            wait=wait,
            timeout=timeout,
            decode_revert=self.codec.decode_revert,
        )

    @classmethod
    def deploy(
        cls,
        transport: LedgerTransport,
        abi: AbiInput,
        bytecode: Union[str, bytes],
        *args: Any,
        manager: "TransactionManager",
        signer: "Signer",
        value: int = 0,
        gas_limit: Optional[int] = None,
        fees: Optional[FeeQuote] = None,
        timeout: Optional[float] = None,
    ) -> Tuple["BoundContract", TxReceipt]:
        """
        Deploy a contract and bind the new address.

        Returns:
            (bound contract, deployment receipt)
        """
        codec = SchemaCodec(parse_abi(abi))
        receipt = manager.deploy(
            bytecode,
            signer,
            args=args,
            codec=codec,
            value=value,
            gas_limit=gas_limit,
            fees=fees,
            timeout=timeout,
        )
        if not receipt.contract_address:
            raise DecodeError(f"Deployment receipt {receipt.tx_hash} carries no contract address")
        logger.info(f"Contract deployed at {receipt.contract_address}")
        descriptor = codec.descriptor.with_address(receipt.contract_address)
        return cls(transport, descriptor, manager=manager, signer=signer), receipt

    # -- events -----------------------------------------------------------

    def decode_log(self, log: Union[LogEvent, Dict[str, Any]]) -> DecodedEvent:
        if not isinstance(log, LogEvent):
            log = to_log_event(log)
        return self.codec.decode_log(log)

    def _log_filter(self, event_name: Optional[str]) -> Tuple[Dict[str, Any], Optional[str]]:
        params: Dict[str, Any] = {"address": self.address}
        if event_name is None:
            return params, None
        spec = self.codec.event(event_name)
        if spec.anonymous:
            raise SchemaMismatchError(f"Anonymous event {spec.name} cannot be filtered by topic")
        params["topics"] = [spec.topic0]
        return params, spec.topic0

    def _block_number(self, ref: BlockRef) -> int:
        if isinstance(ref, int):
            return ref
        if ref == "earliest":
            return 0
        if isinstance(ref, str) and ref.startswith("0x"):
            return int(ref, 16)
        return self.transport.block_number()

    def filter_logs(
        self,
        event_name: Optional[str] = None,
        from_block: BlockRef = 0,
        to_block: BlockRef = "latest",
        batch_size: Optional[int] = None,
    ) -> Iterator[DecodedEvent]:
        """
        Historical events of this contract, oldest first.

        The returned generator queries lazily and cannot be restarted.
        Errors are raised mid-sequence rather than truncating it.

        Args:
            event_name: Event name or signature; None for every event
            from_block: First block of the range
            to_block: Last block of the range
            batch_size: Query the range in chunks of this many blocks

        Raises:
            SchemaMismatchError: If the event is unknown (raised immediately)
        """
        params, _ = self._log_filter(event_name)
        if batch_size is not None and batch_size < 1:
            raise ValueError("batch_size must be positive")
        return self._iter_logs(params, from_block, to_block, batch_size)

    def _iter_logs(
        self,
        params: Dict[str, Any],
        from_block: BlockRef,
        to_block: BlockRef,
        batch_size: Optional[int],
    ) -> Iterator[DecodedEvent]:
        if batch_size is None:
            try:
                logs = self.transport.get_logs({**params, "fromBlock": from_block, "toBlock": to_block})
            except QueryTooLargeError as e:
                logger.warning(f"Log query too large, retrying in batches of {DEFAULT_LOG_BATCH}: {e}")
                batch_size = DEFAULT_LOG_BATCH
            else:
                for raw in logs:
                    yield self.decode_log(raw)
                return

        start = self._block_number(from_block)
        end = self._block_number(to_block)
        while start <= end:
            stop = min(start + batch_size - 1, end)
            try:
                logs = self.transport.get_logs({**params, "fromBlock": start, "toBlock": stop})
            except QueryTooLargeError:
                if batch_size == 1:
                    raise
                batch_size = max(1, batch_size // 2)
                logger.debug(f"Log query too large, shrinking batch to {batch_size} blocks")
                continue
            logger.debug(f"Fetched {len(logs)} logs for blocks {start}-{stop}")
            for raw in logs:
                yield self.decode_log(raw)
            start = stop + 1

    def watch_logs(self, event_name: Optional[str], sink: Callable[[DecodedEvent], Any]) -> Subscription:
        """
        Forward live events to ``sink`` from a background thread.

        Returns:
            The Subscription; close it to stop forwarding
        """
        params, topic0 = self._log_filter(event_name)
        stream = self.transport.subscribe_logs(params)
        logger.debug(f"Watching {event_name or 'all events'} on {self.address}")
        return Subscription(stream, self.codec.decode_log, sink, topic0=topic0, name=event_name or "all")

    def iterate_events(
        self,
        event_name: Optional[str] = None,
        from_block: Optional[BlockRef] = None,
        to_block: BlockRef = "latest",
        live: bool = False,
        batch_size: Optional[int] = None,
    ) -> EventIterator:
        """
        Iterate historical events from ``from_block`` and, with ``live``, new ones after.

        The live stream is opened before the history is queried.
        """
        if from_block is None and not live:
            raise ValueError("iterate_events needs from_block, live=True, or both")
        params, topic0 = self._log_filter(event_name)
        stream = self.transport.subscribe_logs(params) if live else None
        history = None
        if from_block is not None:
            history = self._iter_logs(params, from_block, to_block, batch_size)
        return EventIterator(self.codec.decode_log, history=history, stream=stream, topic0=topic0)


class _ContractView:
    def __init__(self, contract: BoundContract):
        self._contract = contract

    @property
    def address(self) -> str:
        return self._contract.address

    def __repr__(self) -> str:
        return f"{type(self).__name__}(address={self.address})"


class ContractCaller(_ContractView):
    """
    Read-only view of a BoundContract.

    View and pure methods are also reachable as attributes:
    ``contract.caller.getCount()``.
    """

    def call(self, method: str, *args: Any, block: BlockRef = "latest", sender: Optional[str] = None) -> Any:
        return self._contract.call(method, *args, block=block, sender=sender)

    def __getattr__(self, name: str) -> Callable[..., Any]:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            spec = self._contract.codec.method(name)
        except SchemaMismatchError:
            raise AttributeError(f"{type(self).__name__} has no method {name}")
        if not spec.is_read_only:
            raise AttributeError(f"{name} is not a read-only method")
        return partial(self._contract.call, spec.signature)


class ContractTransactor(_ContractView):
    """
    Write-only view of a BoundContract.

    State-changing methods are also reachable as attributes returning intents:
    ``contract.transactor.increment()``.
    """

    def transact(self, method: str, *args: Any, value: int = 0, gas_limit: Optional[int] = None) -> TransactionIntent:
        return self._contract.transact(method, *args, value=value, gas_limit=gas_limit)

    def send(self, method: str, *args: Any, **kwargs: Any):
        return self._contract.send(method, *args, **kwargs)

    def __getattr__(self, name: str) -> Callable[..., TransactionIntent]:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            spec = self._contract.codec.method(name)
        except SchemaMismatchError:
            raise AttributeError(f"{type(self).__name__} has no method {name}")
        if spec.is_read_only:
            raise AttributeError(f"{name} is a read-only method")
        return partial(self._contract.transact, spec.signature)


class ContractFilterer(_ContractView):
    """Event view of a BoundContract."""

    def filter_logs(self, event_name: Optional[str] = None, from_block: BlockRef = 0,
                    to_block: BlockRef = "latest", batch_size: Optional[int] = None) -> Iterator[DecodedEvent]:
        return self._contract.filter_logs(event_name, from_block, to_block, batch_size)

    def watch_logs(self, event_name: Optional[str], sink: Callable[[DecodedEvent], Any]) -> Subscription:
        return self._contract.watch_logs(event_name, sink)

    def iterate_events(self, event_name: Optional[str] = None, from_block: Optional[BlockRef] = None,
                       to_block: BlockRef = "latest", live: bool = False,
                       batch_size: Optional[int] = None) -> EventIterator:
        return self._contract.iterate_events(event_name, from_block, to_block, live, batch_size)

    def decode_log(self, log: Union[LogEvent, Dict[str, Any]]) -> DecodedEvent:
        return self._contract.decode_log(log)
