"""
Data models for the BindLayer SDK.
"""
from typing import Dict, Any, Optional, List, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Block reference: a block number or a tag understood by the node
BlockRef = Union[int, str]

BLOCK_TAGS = ("latest", "pending", "earliest", "safe", "finalized")


def _to_hex(value: Any) -> Any:
    """Render bytes-like values as 0x-prefixed hex strings."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if hasattr(value, "hex") and not isinstance(value, str):
        # HexBytes and friends
        rendered = value.hex()
        return rendered if rendered.startswith("0x") else "0x" + rendered
    return value


def _to_int(value: Any) -> Any:
    """Accept JSON-RPC quantities given as hex strings."""
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    return value


class AbiParameter(BaseModel):
    """A single ABI input/output parameter."""
    model_config = ConfigDict(frozen=True)

    name: str = ""
    type: str
    indexed: bool = False
    components: Optional[Tuple["AbiParameter", ...]] = None

    @property
    def canonical_type(self) -> str:
        """Type string as used in canonical signatures (tuples expanded)."""
        if self.type.startswith("tuple"):
            inner = ",".join(c.canonical_type for c in self.components or ())
            return f"({inner}){self.type[len('tuple'):]}"
        return self.type

    @property
    def is_dynamic_topic(self) -> bool:
        """Indexed values of these types are stored as a keccak hash in the topic."""
        t = self.type
        return t in ("string", "bytes") or t.endswith("]") or t.startswith("tuple")


class MethodSpec(BaseModel):
    """A contract function (or constructor) from the ABI."""
    model_config = ConfigDict(frozen=True)

    name: str
    inputs: Tuple[AbiParameter, ...] = ()
    outputs: Tuple[AbiParameter, ...] = ()
    state_mutability: str = "nonpayable"
    signature: str
    selector: str = ""

    @property
    def input_types(self) -> List[str]:
        return [p.canonical_type for p in self.inputs]

    @property
    def output_types(self) -> List[str]:
        return [p.canonical_type for p in self.outputs]

    @property
    def is_read_only(self) -> bool:
        return self.state_mutability in ("view", "pure")

    @property
    def is_payable(self) -> bool:
        return self.state_mutability == "payable"


class EventSpec(BaseModel):
    """A contract event from the ABI."""
    model_config = ConfigDict(frozen=True)

    name: str
    inputs: Tuple[AbiParameter, ...] = ()
    anonymous: bool = False
    signature: str
    topic0: str

    @property
    def indexed_inputs(self) -> List[AbiParameter]:
        return [p for p in self.inputs if p.indexed]

    @property
    def data_inputs(self) -> List[AbiParameter]:
        return [p for p in self.inputs if not p.indexed]


class ErrorSpec(BaseModel):
    """A custom error from the ABI."""
    model_config = ConfigDict(frozen=True)

    name: str
    inputs: Tuple[AbiParameter, ...] = ()
    signature: str
    selector: str


class ContractDescriptor(BaseModel):
    """Immutable description of a deployed contract, created once at bind time."""
    model_config = ConfigDict(frozen=True)

    address: Optional[str] = None
    methods: Tuple[MethodSpec, ...] = ()
    events: Tuple[EventSpec, ...] = ()
    errors: Tuple[ErrorSpec, ...] = ()
    constructor: Optional[MethodSpec] = None

    def with_address(self, address: str) -> "ContractDescriptor":
        """Return a copy of this descriptor bound to another address."""
        return self.model_copy(update={"address": address})


class CallRequest(BaseModel):
    """A read-only call; consumed immediately, never retained."""
    model_config = ConfigDict(frozen=True)

    method: str
    args: Tuple[Any, ...] = ()
    block: BlockRef = "latest"


class TransactionIntent(BaseModel):
    """A state-changing call ready to be handed to the TransactionManager."""
    model_config = ConfigDict(frozen=True)

    to: Optional[str] = None  # None creates a contract
    data: str = "0x"
    value: int = 0
    gas_limit: Optional[int] = None
    method: Optional[str] = None
    args: Tuple[Any, ...] = ()

    @property
    def is_deployment(self) -> bool:
        return self.to is None


class FeeQuote(BaseModel):
    """Fee-market (cap + tip) or legacy (single gas price) pricing."""
    model_config = ConfigDict(frozen=True)

    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    gas_price: Optional[int] = None

    @model_validator(mode="after")
    def _check_pricing(self) -> "FeeQuote":
        market = self.max_fee_per_gas is not None or self.max_priority_fee_per_gas is not None
        if market and self.gas_price is not None:
            raise ValueError("FeeQuote cannot mix gas_price with fee-market fields")
        if market and (self.max_fee_per_gas is None or self.max_priority_fee_per_gas is None):
            raise ValueError("Fee-market pricing needs both max_fee_per_gas and max_priority_fee_per_gas")
        if not market and self.gas_price is None:
            raise ValueError("FeeQuote needs either gas_price or fee-market fields")
        if market and self.max_priority_fee_per_gas > self.max_fee_per_gas:
            raise ValueError("max_priority_fee_per_gas cannot exceed max_fee_per_gas")
        return self

    @property
    def is_legacy(self) -> bool:
        return self.gas_price is not None

    def bumped(self, percent: int) -> "FeeQuote":
        """Return a quote with every fee raised by at least ``percent`` percent."""
        def bump(value: int) -> int:
            return value + max(1, -(-value * percent // 100))

        if self.is_legacy:
            return FeeQuote(gas_price=bump(self.gas_price))
        return FeeQuote(
            max_fee_per_gas=bump(self.max_fee_per_gas),
            max_priority_fee_per_gas=bump(self.max_priority_fee_per_gas),
        )

    def as_tx_fields(self) -> Dict[str, int]:
        if self.is_legacy:
            return {"gasPrice": self.gas_price}
        return {
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
        }


class SignedTransaction(BaseModel):
    """A signed transaction; immutable once signed."""
    model_config = ConfigDict(frozen=True)

    chain_id: int
    nonce: int
    sender: str
    to: Optional[str] = None
    value: int = 0
    data: str = "0x"
    gas: int
    fees: FeeQuote
    raw_transaction: bytes
    tx_hash: str
    replaces: Optional[str] = None
    method: Optional[str] = None

    @field_validator("tx_hash", "replaces", mode="before")
    @classmethod
    def _hexify(cls, value: Any) -> Any:
        return _to_hex(value)

    @property
    def raw_hex(self) -> str:
        return "0x" + self.raw_transaction.hex()


class LogEvent(BaseModel):
    """A raw log as returned by the node; immutable once retrieved."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    address: str
    topics: Tuple[str, ...] = ()
    data: str = "0x"
    block_number: int = Field(0, alias="blockNumber")
    block_hash: Optional[str] = Field(None, alias="blockHash")
    transaction_hash: str = Field(..., alias="transactionHash")
    transaction_index: int = Field(0, alias="transactionIndex")
    log_index: int = Field(..., alias="logIndex")
    removed: bool = False

    @field_validator("address", "data", "block_hash", "transaction_hash", mode="before")
    @classmethod
    def _hexify(cls, value: Any) -> Any:
        return _to_hex(value)

    @field_validator("topics", mode="before")
    @classmethod
    def _hexify_topics(cls, value: Any) -> Any:
        return tuple(_to_hex(t) for t in value or ())

    @field_validator("block_number", "transaction_index", "log_index", mode="before")
    @classmethod
    def _quantity(cls, value: Any) -> Any:
        return _to_int(value)

    @property
    def key(self) -> Tuple[str, int]:
        """Identity of this log across replay and live delivery."""
        return (self.transaction_hash.lower(), self.log_index)

    @property
    def topic0(self) -> Optional[str]:
        return self.topics[0] if self.topics else None


class DecodedEvent(BaseModel):
    """A LogEvent decoded against its event schema."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    event: str
    args: Dict[str, Any]
    log: LogEvent

    def __getitem__(self, name: str) -> Any:
        return self.args[name]


class TxReceipt(BaseModel):
    """Transaction receipt from the blockchain"""
    model_config = ConfigDict(populate_by_name=True)

    tx_hash: str = Field(..., alias="transactionHash")
    block_number: int = Field(..., alias="blockNumber")
    block_hash: str = Field(..., alias="blockHash")
    status: int
    gas_used: int = Field(..., alias="gasUsed")
    cumulative_gas_used: int = Field(0, alias="cumulativeGasUsed")
    from_address: str = Field(..., alias="from")
    to_address: Optional[str] = Field(None, alias="to")
    contract_address: Optional[str] = Field(None, alias="contractAddress")
    logs: List[LogEvent] = Field(default_factory=list)
    revert_reason: Optional[str] = Field(None, alias="revertReason")

    @field_validator("tx_hash", "block_hash", "from_address", "to_address", "contract_address", mode="before")
    @classmethod
    def _hexify(cls, value: Any) -> Any:
        return _to_hex(value)

    @field_validator("block_number", "status", "gas_used", "cumulative_gas_used", mode="before")
    @classmethod
    def _quantity(cls, value: Any) -> Any:
        return _to_int(value)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


AbiParameter.model_rebuild()
