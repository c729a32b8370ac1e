"""
Stub-based transport implementation.

An in-memory ledger for tests and local development. Contracts are plain
Python classes (``StubContract`` subclasses) dispatched by selector through
the same SchemaCodec the SDK uses, so encoding, signing, nonces, fees,
receipts and logs all go through the real code paths without a node.
"""
import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from web3 import Web3

from ..codec import ERROR_STRING_SELECTOR, SchemaCodec, hex_to_bytes
from ..exceptions import CallRevertedError, QueryTooLargeError, RejectedError, TransportError
from ..models import BlockRef, SignedTransaction
from .base import LedgerTransport, LogStream, log_matches

# Configure logger
logger = logging.getLogger(__name__)

DEFAULT_CHAIN_ID = 1337
GWEI = 10 ** 9

# Flat gas costs charged by the stub ledger
TRANSFER_GAS = 21000
CALL_GAS = 31000
DEPLOY_GAS = 120000


class ExecutionReverted(Exception):
    """Raised inside a stub contract to abort execution."""

    def __init__(self, reason: Optional[str], data: bytes = b""):
        self.reason = reason
        self.data = data
        super().__init__(reason or "execution reverted")


class ExecutionContext:
    """What a stub contract method sees while it runs."""

    def __init__(self, contract: "StubContract", storage: Dict[str, Any], sender: Optional[str],
                 value: int, block_number: int, static: bool):
        self.contract = contract
        self.storage = storage
        self.sender = sender
        self.value = value
        self.block_number = block_number
        self.static = static
        self.logs: List[Tuple[List[str], str]] = []

    def emit(self, event_name: str, *values: Any) -> None:
        """Record an event; discarded if the execution reverts."""
        spec = self.contract.codec.event(event_name)
        if len(values) != len(spec.inputs):
            raise TypeError(f"{spec.signature} takes {len(spec.inputs)} value(s), got {len(values)}")
        topics = [spec.topic0]
        data_types, data_values = [], []
        for param, value in zip(spec.inputs, values):
            if not param.indexed:
                data_types.append(param.canonical_type)
                data_values.append(value)
            elif param.type in ("string", "bytes"):
                raw = value.encode("utf-8") if isinstance(value, str) else bytes(value)
                topics.append("0x" + bytes(Web3.keccak(raw)).hex())
            elif param.is_dynamic_topic:
                # Arrays and tuples: hash of the encoding, close enough for a stub
                topics.append("0x" + bytes(Web3.keccak(encode([param.canonical_type], [value]))).hex())
            else:
                topics.append("0x" + encode([param.canonical_type], [value]).hex())
        data = encode(data_types, data_values) if data_types else b""
        self.logs.append((topics, "0x" + data.hex()))

    def revert(self, reason: str) -> None:
        """Abort with an Error(string) payload."""
        data = hex_to_bytes(ERROR_STRING_SELECTOR) + encode(["string"], [reason])
        raise ExecutionReverted(reason, data)


class StubContract:
    """
    Base class for Python stand-ins of deployed contracts.

    Subclasses set ``abi`` and implement one method per ABI function, taking
    the ExecutionContext followed by the decoded arguments. Persistent state
    lives in ``ctx.storage`` so that reverts roll back and historical calls
    see the state of their block. An optional ``setup(ctx, *args)`` runs as
    the constructor.
    """

    abi: Sequence[Dict[str, Any]] = ()

    def __init__(self):
        self.codec = SchemaCodec.from_abi(list(self.abi))
        self._by_selector = {m.selector: m for m in self.codec.descriptor.methods}

    def execute(self, ctx: ExecutionContext, calldata: bytes) -> bytes:
        if len(calldata) < 4:
            raise ExecutionReverted(None)
        selector = "0x" + calldata[:4].hex()
        spec = self._by_selector.get(selector)
        if spec is None:
            raise ExecutionReverted(None)
        args = self._decode_inputs(spec.input_types, calldata[4:])
        result = getattr(self, spec.name)(ctx, *args)
        types = spec.output_types
        if not types:
            return b""
        values = [result] if len(types) == 1 else list(result)
        return encode(types, values)

    def construct(self, ctx: ExecutionContext, encoded_args: bytes) -> None:
        constructor = self.codec.descriptor.constructor
        types = [p.canonical_type for p in constructor.inputs] if constructor else []
        args = self._decode_inputs(types, encoded_args)
        setup = getattr(self, "setup", None)
        if setup is not None:
            setup(ctx, *args)

    @staticmethod
    def _decode_inputs(types: List[str], payload: bytes) -> Tuple[Any, ...]:
        if not types:
            return ()
        try:
            return tuple(decode(types, payload))
        except (DecodingError, ValueError):
            raise ExecutionReverted(None)


class StubTransport(LedgerTransport):
    """
    In-memory ledger implementing the transport primitives.

    Transactions are mined immediately when ``auto_mine`` is set, otherwise
    they wait in the pool until ``mine()``. With ``london=False`` the ledger
    has no base fee and only legacy pricing applies.

    Args:
        chain_id: Chain identifier
        auto_mine: Mine a block after every accepted transaction
        london: Whether blocks carry a base fee
        base_fee: Base fee per gas in wei (fee-market mode)
        priority_fee: Suggested tip in wei
        gas_price: Minimum and suggested legacy gas price (legacy mode)
        include_revert_reason: Put ``revertReason`` on failed receipts
        max_log_range: Largest block span accepted by ``get_logs``
        default_balance: Balance of accounts never funded explicitly
    """

    def __init__(
        self,
        chain_id: int = DEFAULT_CHAIN_ID,
        auto_mine: bool = True,
        london: bool = True,
        base_fee: int = GWEI,
        priority_fee: int = GWEI,
        gas_price: int = 2 * GWEI,
        include_revert_reason: bool = True,
        max_log_range: Optional[int] = None,
        default_balance: int = 10 ** 21,
    ):
        self._chain_id = chain_id
        self.auto_mine = auto_mine
        self.london = london
        self._base_fee = base_fee
        self._priority_fee = priority_fee
        self._gas_price = gas_price
        self.include_revert_reason = include_revert_reason
        self.max_log_range = max_log_range
        self.default_balance = default_balance

        self._lock = threading.RLock()
        self._contracts: Dict[str, StubContract] = {}
        self._storage: Dict[str, Dict[str, Any]] = {}
        self._snapshots: List[Dict[str, Dict[str, Any]]] = [{}]
        self._blocks: List[Dict[str, Any]] = [self._make_block(0)]
        self._balances: Dict[str, int] = {}
        self._nonces: Dict[str, int] = {}
        self._pool: Dict[Tuple[str, int], SignedTransaction] = {}
        self._receipts: Dict[str, Dict[str, Any]] = {}
        self._logs: List[Dict[str, Any]] = []
        self._streams: List[Tuple[Dict[str, Any], LogStream]] = []
        self._code: List[Tuple[bytes, Callable[[], StubContract]]] = []
        self._failures: Dict[str, List[Exception]] = {}
        self.sent: List[SignedTransaction] = []

    # -- test controls ----------------------------------------------------

    def register_code(self, bytecode: Any, factory: Callable[[], StubContract]) -> None:
        """Make deployments of ``bytecode`` instantiate ``factory()``."""
        with self._lock:
            self._code.append((hex_to_bytes(bytecode), factory))

    def install(self, address: str, contract: StubContract, storage: Optional[Dict[str, Any]] = None) -> str:
        """Place a contract at an address without a deployment transaction."""
        address = Web3.to_checksum_address(address)
        with self._lock:
            self._contracts[address] = contract
            self._storage[address] = dict(storage or {})
            self._snapshots[-1][address] = copy.deepcopy(self._storage[address])
        return address

    def fund(self, address: str, amount: int) -> None:
        with self._lock:
            self._balances[Web3.to_checksum_address(address)] = amount

    def balance_of(self, address: str) -> int:
        with self._lock:
            return self._balances.get(Web3.to_checksum_address(address), self.default_balance)

    def storage_of(self, address: str) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._storage.get(Web3.to_checksum_address(address), {}))

    def inject_failure(self, primitive: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of a primitive raise ``error``."""
        with self._lock:
            self._failures.setdefault(primitive, []).extend([error] * times)

    def set_base_fee(self, base_fee: int) -> None:
        with self._lock:
            self._base_fee = base_fee

    def terminate_subscriptions(self, error: Optional[Exception] = None) -> None:
        """End every live stream, with an error or cleanly."""
        with self._lock:
            streams, self._streams = self._streams, []
        for _, stream in streams:
            if error is not None:
                stream.fail(error)
            else:
                stream.finish()

    @property
    def pending(self) -> List[SignedTransaction]:
        with self._lock:
            return list(self._pool.values())

    # -- helpers ----------------------------------------------------------

    def _maybe_fail(self, primitive: str) -> None:
        with self._lock:
            queued = self._failures.get(primitive)
            error = queued.pop(0) if queued else None
        if error is not None:
            logger.debug(f"Injected failure for {primitive}: {error}")
            raise error

    def _make_block(self, number: int) -> Dict[str, Any]:
        return {
            "number": number,
            "hash": "0x" + bytes(Web3.keccak(text=f"stub-block-{number}")).hex(),
            "baseFeePerGas": self._base_fee if self.london else None,
        }

    def _resolve_block(self, block: BlockRef) -> int:
        head = len(self._blocks) - 1
        if isinstance(block, int):
            if block < 0 or block > head:
                raise TransportError(f"Unknown block {block}")
            return block
        if block in ("latest", "pending", "safe", "finalized"):
            return head
        if block == "earliest":
            return 0
        if isinstance(block, str) and block.startswith("0x"):
            return self._resolve_block(int(block, 16))
        raise TransportError(f"Invalid block reference {block!r}")

    def _pending_nonce(self, sender: str) -> int:
        nonce = self._nonces.get(sender, 0)
        while (sender, nonce) in self._pool:
            nonce += 1
        return nonce

    def _fee_cap(self, signed: SignedTransaction) -> int:
        fees = signed.fees
        return fees.gas_price if fees.is_legacy else fees.max_fee_per_gas

    def _effective_price(self, signed: SignedTransaction, base_fee: Optional[int]) -> int:
        fees = signed.fees
        if fees.is_legacy or base_fee is None:
            return self._fee_cap(signed)
        return min(fees.max_fee_per_gas, base_fee + fees.max_priority_fee_per_gas)

    def _deployment_factory(self, data: bytes) -> Optional[Tuple[bytes, Callable[[], StubContract]]]:
        for code, factory in self._code:
            if data.startswith(code):
                return code, factory
        return None

    @staticmethod
    def _contract_address(sender: str, nonce: int) -> str:
        # Deterministic per (sender, nonce); not the real CREATE derivation
        digest = bytes(Web3.keccak(text=f"{sender.lower()}:{nonce}"))
        return Web3.to_checksum_address("0x" + digest[12:].hex())

    # -- LedgerTransport --------------------------------------------------

    def chain_id(self) -> int:
        self._maybe_fail("chain_id")
        return self._chain_id

    def block_number(self) -> int:
        self._maybe_fail("block_number")
        with self._lock:
            return len(self._blocks) - 1

    def call(self, tx: Dict[str, Any], block: BlockRef = "latest") -> bytes:
        self._maybe_fail("call")
        with self._lock:
            number = self._resolve_block(block)
            to = tx.get("to")
            if not to:
                raise TransportError("eth_call without a target address")
            address = Web3.to_checksum_address(to)
            state = self._snapshots[number] if number < len(self._blocks) - 1 else self._storage
            contract = self._contracts.get(address)
            if contract is None or address not in state:
                # Calls to accounts without code return nothing
                return b""
            ctx = ExecutionContext(
                contract,
                copy.deepcopy(state[address]),
                sender=tx.get("from"),
                value=int(tx.get("value", 0) or 0),
                block_number=number,
                static=True,
            )
            try:
                return contract.execute(ctx, hex_to_bytes(tx.get("data")))
            except ExecutionReverted as e:
                message = f"execution reverted: {e.reason}" if e.reason else "execution reverted"
                raise CallRevertedError(message, reason=e.reason, data=e.data)

    def estimate_gas(self, tx: Dict[str, Any]) -> int:
        self._maybe_fail("estimate_gas")
        if not tx.get("to"):
            return DEPLOY_GAS
        with self._lock:
            address = Web3.to_checksum_address(tx["to"])
            has_code = address in self._contracts
        if not has_code:
            return TRANSFER_GAS
        # Reverting calls fail estimation like on a real node
        self.call(tx, "latest")
        return CALL_GAS

    def get_transaction_count(self, address: str, block: BlockRef = "pending") -> int:
        self._maybe_fail("get_transaction_count")
        sender = Web3.to_checksum_address(address)
        with self._lock:
            if block == "pending":
                return self._pending_nonce(sender)
            return self._nonces.get(sender, 0)

    def gas_price(self) -> int:
        self._maybe_fail("gas_price")
        with self._lock:
            if self.london:
                return self._base_fee + self._priority_fee
            return self._gas_price

    def max_priority_fee(self) -> int:
        self._maybe_fail("max_priority_fee")
        return self._priority_fee

    def base_fee(self) -> Optional[int]:
        self._maybe_fail("base_fee")
        with self._lock:
            return self._base_fee if self.london else None

    def send_raw_transaction(self, signed: SignedTransaction) -> str:
        self._maybe_fail("send_raw_transaction")
        try:
            recovered = Account.recover_transaction(signed.raw_transaction)
        except Exception as e:
            raise RejectedError(f"invalid transaction: {str(e)}", kind=RejectedError.OTHER)
        sender = Web3.to_checksum_address(recovered)
        if sender != Web3.to_checksum_address(signed.sender):
            raise RejectedError("invalid sender: signature does not match", kind=RejectedError.OTHER)
        if signed.chain_id != self._chain_id:
            raise RejectedError(f"invalid chain id {signed.chain_id}", kind=RejectedError.OTHER)

        with self._lock:
            if signed.nonce < self._nonces.get(sender, 0):
                raise RejectedError(
                    f"nonce too low: next nonce {self._nonces.get(sender, 0)}, tx nonce {signed.nonce}",
                    kind=RejectedError.NONCE,
                )

            floor = self._base_fee if self.london else self._gas_price
            if self._fee_cap(signed) < floor:
                raise RejectedError(
                    f"transaction underpriced: fee cap {self._fee_cap(signed)} below {floor}",
                    kind=RejectedError.FEE,
                )

            if signed.to is None:
                if self._deployment_factory(hex_to_bytes(signed.data)) is None:
                    raise RejectedError("unknown contract bytecode", kind=RejectedError.OTHER)

            cost = signed.gas * self._fee_cap(signed) + signed.value
            if cost > self._balances.get(sender, self.default_balance):
                raise RejectedError("insufficient funds for gas * price + value", kind=RejectedError.FUNDS)

            existing = self._pool.get((sender, signed.nonce))
            if existing is not None:
                if existing.tx_hash == signed.tx_hash:
                    return signed.tx_hash
                if not self._outbids(signed, existing):
                    raise RejectedError("replacement transaction underpriced", kind=RejectedError.FEE)
                logger.debug(f"Replacing {existing.tx_hash} with {signed.tx_hash}")

            self._pool[(sender, signed.nonce)] = signed
            self.sent.append(signed)

        if self.auto_mine:
            self.mine()
        return signed.tx_hash

    @staticmethod
    def _outbids(new: SignedTransaction, old: SignedTransaction) -> bool:
        def enough(new_value: int, old_value: int) -> bool:
            return new_value * 100 >= old_value * 110

        if new.fees.is_legacy or old.fees.is_legacy:
            new_cap = new.fees.gas_price if new.fees.is_legacy else new.fees.max_fee_per_gas
            old_cap = old.fees.gas_price if old.fees.is_legacy else old.fees.max_fee_per_gas
            return enough(new_cap, old_cap)
        return (enough(new.fees.max_fee_per_gas, old.fees.max_fee_per_gas)
                and enough(new.fees.max_priority_fee_per_gas, old.fees.max_priority_fee_per_gas))

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        self._maybe_fail("get_transaction_receipt")
        with self._lock:
            receipt = self._receipts.get(tx_hash.lower())
            return copy.deepcopy(receipt) if receipt is not None else None

    def get_logs(self, filter_params: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._maybe_fail("get_logs")
        with self._lock:
            start = self._resolve_block(filter_params.get("fromBlock", "latest"))
            end = self._resolve_block(filter_params.get("toBlock", "latest"))
            if self.max_log_range is not None and end - start + 1 > self.max_log_range:
                raise QueryTooLargeError(
                    f"query returned more than allowed: block range {end - start + 1} exceeds {self.max_log_range}"
                )
            return [
                copy.deepcopy(log) for log in self._logs
                if start <= log["blockNumber"] <= end and log_matches(log, filter_params)
            ]

    def subscribe_logs(self, filter_params: Dict[str, Any]) -> LogStream:
        self._maybe_fail("subscribe_logs")
        entry: Dict[str, Any] = {}

        def release() -> None:
            with self._lock:
                self._streams[:] = [s for s in self._streams if s[1] is not entry["stream"]]

        stream = LogStream(on_close=release)
        entry["stream"] = stream
        with self._lock:
            self._streams.append((dict(filter_params), stream))
        return stream

    def close(self) -> None:
        with self._lock:
            streams, self._streams = self._streams, []
        for _, stream in streams:
            stream.close()

    # -- mining -----------------------------------------------------------

    def mine(self) -> int:
        """
        Mine one block containing every executable pooled transaction.

        Returns:
            Number of the new block
        """
        with self._lock:
            number = len(self._blocks)
            block = self._make_block(number)
            block_logs: List[Dict[str, Any]] = []
            included = 0

            progressed = True
            while progressed:
                progressed = False
                for sender, nonce in sorted(self._pool.keys()):
                    if nonce != self._nonces.get(sender, 0):
                        continue
                    signed = self._pool.pop((sender, nonce))
                    self._execute(signed, sender, block, included, block_logs)
                    self._nonces[sender] = nonce + 1
                    included += 1
                    progressed = True

            self._blocks.append(block)
            self._snapshots.append(copy.deepcopy(self._storage))
            self._logs.extend(block_logs)
            streams = list(self._streams)

        for log in block_logs:
            for filter_params, stream in streams:
                if log_matches(log, filter_params):
                    stream.push(copy.deepcopy(log))
        if included:
            logger.debug(f"Mined block {number} with {included} transaction(s)")
        return number

    def _execute(self, signed: SignedTransaction, sender: str, block: Dict[str, Any],
                 index: int, block_logs: List[Dict[str, Any]]) -> None:
        number = block["number"]
        base_fee = block["baseFeePerGas"]
        data = hex_to_bytes(signed.data)
        status = 1
        revert_reason = None
        contract_address = None
        new_logs: List[Tuple[List[str], str]] = []
        emitter = None

        if signed.to is None:
            gas_needed = DEPLOY_GAS
            contract_address = self._contract_address(sender, signed.nonce)
        else:
            target = Web3.to_checksum_address(signed.to)
            gas_needed = CALL_GAS if target in self._contracts else TRANSFER_GAS

        if signed.gas < gas_needed:
            status, revert_reason, gas_used = 0, "out of gas", signed.gas
        else:
            gas_used = gas_needed
            try:
                if signed.to is None:
                    code, factory = self._deployment_factory(data)
                    contract = factory()
                    storage: Dict[str, Any] = {}
                    ctx = ExecutionContext(contract, storage, sender, signed.value, number, static=False)
                    contract.construct(ctx, data[len(code):])
                    self._contracts[contract_address] = contract
                    self._storage[contract_address] = storage
                    new_logs = [(t, d) for t, d in ctx.logs]
                    emitter = contract_address
                elif Web3.to_checksum_address(signed.to) in self._contracts:
                    emitter = Web3.to_checksum_address(signed.to)
                    contract = self._contracts[emitter]
                    storage = copy.deepcopy(self._storage[emitter])
                    ctx = ExecutionContext(contract, storage, sender, signed.value, number, static=False)
                    contract.execute(ctx, data)
                    self._storage[emitter] = storage
                    new_logs = list(ctx.logs)
                else:
                    emitter = Web3.to_checksum_address(signed.to)
            except ExecutionReverted as e:
                status, revert_reason = 0, e.reason
                contract_address = None
                new_logs = []

        price = self._effective_price(signed, base_fee)
        balance = self._balances.get(sender, self.default_balance)
        spent = gas_used * price + (signed.value if status else 0)
        self._balances[sender] = balance - spent
        if status and signed.value and signed.to is not None:
            to = Web3.to_checksum_address(signed.to)
            self._balances[to] = self._balances.get(to, self.default_balance) + signed.value

        receipt_logs = []
        for topics, payload in new_logs:
            log = {
                "address": emitter,
                "topics": list(topics),
                "data": payload,
                "blockNumber": number,
                "blockHash": block["hash"],
                "transactionHash": signed.tx_hash,
                "transactionIndex": index,
                "logIndex": len(block_logs),
                "removed": False,
            }
            block_logs.append(log)
            receipt_logs.append(copy.deepcopy(log))

        receipt = {
            "transactionHash": signed.tx_hash,
            "blockNumber": number,
            "blockHash": block["hash"],
            "transactionIndex": index,
            "status": status,
            "gasUsed": gas_used,
            "cumulativeGasUsed": gas_used,
            "effectiveGasPrice": price,
            "from": sender,
            "to": signed.to,
            "contractAddress": contract_address,
            "logs": receipt_logs,
        }
        if status == 0 and self.include_revert_reason and revert_reason:
            receipt["revertReason"] = revert_reason
        self._receipts[signed.tx_hash.lower()] = receipt
