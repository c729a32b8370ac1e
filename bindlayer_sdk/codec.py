"""
Schema codec - ABI encoding and decoding for a bound contract.

Encodes call arguments and decodes call results, event payloads and revert
data against a parsed ABI. Pure and stateless after construction.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from eth_abi import decode, encode, is_encodable
from eth_abi.exceptions import DecodingError, EncodingError, ParseError
from web3 import Web3

from .exceptions import SchemaMismatchError, DecodeError, UnknownEventError
from .models import (
    AbiParameter,
    ContractDescriptor,
    DecodedEvent,
    ErrorSpec,
    EventSpec,
    LogEvent,
    MethodSpec,
)

logger = logging.getLogger(__name__)

# Selectors of the two revert payloads emitted by the compiler itself
ERROR_STRING_SELECTOR = "0x08c379a0"  # Error(string)
PANIC_SELECTOR = "0x4e487b71"  # Panic(uint256)

PANIC_CODES = {
    0x00: "generic compiler panic",
    0x01: "assertion failed",
    0x11: "arithmetic underflow or overflow",
    0x12: "division or modulo by zero",
    0x21: "invalid enum value",
    0x22: "invalid storage byte array encoding",
    0x31: "pop on empty array",
    0x32: "array index out of bounds",
    0x41: "out of memory",
    0x51: "call to zero-initialized function",
}


def keccak_hex(text: str) -> str:
    """Keccak-256 of a UTF-8 string as 0x-prefixed hex (NOT NIST SHA3-256)."""
    return "0x" + bytes(Web3.keccak(text=text)).hex()


def function_selector(signature: str) -> str:
    """4-byte selector of a canonical function signature, e.g. ``getCount()``."""
    return keccak_hex(signature)[:10]


def event_topic(signature: str) -> str:
    """32-byte topic0 of a canonical event signature."""
    return keccak_hex(signature)


def hex_to_bytes(value: Union[str, bytes, bytearray, None]) -> bytes:
    """
    Convert a 0x-prefixed (or bare) hex string to bytes.

    Raises:
        DecodeError: If the value is not valid hex
    """
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise DecodeError(f"Invalid hex payload: {str(e)}")


def _parse_params(entries: Optional[Sequence[Dict[str, Any]]], where: str) -> tuple:
    params = []
    for entry in entries or ():
        if "type" not in entry:
            raise SchemaMismatchError(f"ABI parameter without a type in {where}")
        components = entry.get("components")
        params.append(AbiParameter(
            name=entry.get("name", "") or "",
            type=entry["type"],
            indexed=bool(entry.get("indexed", False)),
            components=_parse_params(components, where) if components else None,
        ))
    return tuple(params)


def _signature(name: str, params: Sequence[AbiParameter]) -> str:
    return f"{name}({','.join(p.canonical_type for p in params)})"


def parse_abi(abi: Union[str, Sequence[Dict[str, Any]]], address: Optional[str] = None) -> ContractDescriptor:
    """
    Parse a JSON ABI into an immutable ContractDescriptor.

    Args:
        abi: ABI as a list of entries or as a JSON string
        address: Deployed contract address (optional for deployments)

    Returns:
        ContractDescriptor with selectors and topics derived

    Raises:
        SchemaMismatchError: If the ABI is malformed
    """
    if isinstance(abi, str):
        try:
            abi = json.loads(abi)
        except json.JSONDecodeError as e:
            raise SchemaMismatchError(f"ABI is not valid JSON: {str(e)}")
    if isinstance(abi, dict) and "abi" in abi:
        # Compiler artifact
        abi = abi["abi"]
    if not isinstance(abi, list):
        raise SchemaMismatchError(f"ABI must be a list of entries, got {type(abi).__name__}")

    methods: List[MethodSpec] = []
    events: List[EventSpec] = []
    errors: List[ErrorSpec] = []
    constructor: Optional[MethodSpec] = None

    for entry in abi:
        if not isinstance(entry, dict):
            raise SchemaMismatchError(f"ABI entry must be an object, got {type(entry).__name__}")
        kind = entry.get("type", "function")
        name = entry.get("name")

        if kind == "function":
            if not name:
                raise SchemaMismatchError("ABI function entry without a name")
            inputs = _parse_params(entry.get("inputs"), name)
            sig = _signature(name, inputs)
            methods.append(MethodSpec(
                name=name,
                inputs=inputs,
                outputs=_parse_params(entry.get("outputs"), name),
                state_mutability=entry.get("stateMutability") or _legacy_mutability(entry),
                signature=sig,
                selector=function_selector(sig),
            ))
        elif kind == "event":
            if not name:
                raise SchemaMismatchError("ABI event entry without a name")
            inputs = _parse_params(entry.get("inputs"), name)
            sig = _signature(name, inputs)
            events.append(EventSpec(
                name=name,
                inputs=inputs,
                anonymous=bool(entry.get("anonymous", False)),
                signature=sig,
                topic0=event_topic(sig),
            ))
        elif kind == "error":
            if not name:
                raise SchemaMismatchError("ABI error entry without a name")
            inputs = _parse_params(entry.get("inputs"), name)
            sig = _signature(name, inputs)
            errors.append(ErrorSpec(name=name, inputs=inputs, signature=sig, selector=function_selector(sig)))
        elif kind == "constructor":
            inputs = _parse_params(entry.get("inputs"), "constructor")
            constructor = MethodSpec(
                name="constructor",
                inputs=inputs,
                state_mutability=entry.get("stateMutability") or _legacy_mutability(entry),
                signature=_signature("constructor", inputs),
            )
        # fallback / receive carry no schema

    topics = [e.topic0 for e in events if not e.anonymous]
    if len(topics) != len(set(topics)):
        raise SchemaMismatchError("ABI declares the same event signature twice")

    checksummed = None
    if address:
        try:
            checksummed = Web3.to_checksum_address(address)
        except ValueError as e:
            raise SchemaMismatchError(f"Invalid contract address {address}: {str(e)}")

    return ContractDescriptor(
        address=checksummed,
        methods=tuple(methods),
        events=tuple(events),
        errors=tuple(errors),
        constructor=constructor,
    )


def _legacy_mutability(entry: Dict[str, Any]) -> str:
    # Pre-0.5 ABIs use constant/payable flags
    if entry.get("constant"):
        return "view"
    if entry.get("payable"):
        return "payable"
    return "nonpayable"


class SchemaCodec:
    """
    Encoder/decoder bound to one ContractDescriptor.

    All lookups are built at construction; afterwards the codec holds no
    mutable state and can be shared between threads.
    """

    def __init__(self, descriptor: ContractDescriptor):
        self.descriptor = descriptor
        self._methods_by_name: Dict[str, List[MethodSpec]] = {}
        self._methods_by_signature: Dict[str, MethodSpec] = {}
        for method in descriptor.methods:
            self._methods_by_name.setdefault(method.name, []).append(method)
            self._methods_by_signature[method.signature] = method
        self._events_by_topic: Dict[str, EventSpec] = {
            e.topic0.lower(): e for e in descriptor.events if not e.anonymous
        }
        self._events_by_name: Dict[str, List[EventSpec]] = {}
        for event in descriptor.events:
            self._events_by_name.setdefault(event.name, []).append(event)
        self._errors_by_selector: Dict[str, ErrorSpec] = {e.selector: e for e in descriptor.errors}

    @classmethod
    def from_abi(cls, abi: Union[str, Sequence[Dict[str, Any]]], address: Optional[str] = None) -> "SchemaCodec":
        return cls(parse_abi(abi, address))

    # -- lookups ----------------------------------------------------------

    def method(self, name: str, args: Optional[Sequence[Any]] = None) -> MethodSpec:
        """
        Resolve a method by name or full signature.

        Overloaded names are resolved by argument count.

        Raises:
            SchemaMismatchError: If no single method matches
        """
        if "(" in name:
            spec = self._methods_by_signature.get(name.replace(" ", ""))
            if spec is None:
                raise SchemaMismatchError(f"Method {name} not found in ABI")
            return spec

        candidates = self._methods_by_name.get(name)
        if not candidates:
            raise SchemaMismatchError(f"Method {name} not found in ABI")
        if len(candidates) == 1:
            return candidates[0]
        if args is not None:
            by_arity = [m for m in candidates if len(m.inputs) == len(args)]
            if len(by_arity) == 1:
                return by_arity[0]
        signatures = ", ".join(m.signature for m in candidates)
        raise SchemaMismatchError(f"Method {name} is ambiguous, use one of: {signatures}")

    def event(self, name: str) -> EventSpec:
        """Resolve an event by name or full signature."""
        if "(" in name:
            for event in self.descriptor.events:
                if event.signature == name.replace(" ", ""):
                    return event
            raise SchemaMismatchError(f"Event {name} not found in ABI")
        candidates = self._events_by_name.get(name)
        if not candidates:
            raise SchemaMismatchError(f"Event {name} not found in ABI")
        if len(candidates) > 1:
            signatures = ", ".join(e.signature for e in candidates)
            raise SchemaMismatchError(f"Event {name} is ambiguous, use one of: {signatures}")
        return candidates[0]

    def event_for_topic(self, topic0: Union[str, bytes]) -> EventSpec:
        """
        Raises:
            UnknownEventError: If topic0 is not registered
        """
        key = topic0 if isinstance(topic0, str) else "0x" + bytes(topic0).hex()
        spec = self._events_by_topic.get(key.lower())
        if spec is None:
            raise UnknownEventError(f"No event registered for topic0 {key}", topic0=key)
        return spec

    # -- encoding ---------------------------------------------------------

    def encode(self, method: str, args: Sequence[Any] = ()) -> bytes:
        """
        ABI-encode a function call (selector + arguments).

        Raises:
            SchemaMismatchError: If argument count or types disagree with the ABI
        """
        spec = self.method(method, args)
        return hex_to_bytes(spec.selector) + self._encode_args(spec, args)

    def encode_constructor(self, bytecode: Union[str, bytes], args: Sequence[Any] = ()) -> bytes:
        """Append ABI-encoded constructor arguments to deployment bytecode."""
        code = hex_to_bytes(bytecode)
        if not code:
            raise SchemaMismatchError("Deployment bytecode is empty")
        constructor = self.descriptor.constructor
        if constructor is None:
            if args:
                raise SchemaMismatchError("ABI has no constructor but constructor args were provided")
            return code
        return code + self._encode_args(constructor, args)

    def _encode_args(self, spec: MethodSpec, args: Sequence[Any]) -> bytes:
        args = list(args)
        if len(args) != len(spec.inputs):
            raise SchemaMismatchError(
                f"{spec.signature} takes {len(spec.inputs)} argument(s), got {len(args)}"
            )
        types = spec.input_types
        for index, (typ, value) in enumerate(zip(types, args)):
            try:
                ok = is_encodable(typ, value)
            except ParseError as e:
                raise SchemaMismatchError(f"Unsupported ABI type {typ}: {str(e)}")
            if not ok:
                raise SchemaMismatchError(
                    f"Argument {index} of {spec.signature} is not a valid {typ}: {value!r}"
                )
        if not types:
            return b""
        try:
            return encode(types, args)
        except EncodingError as e:
            raise SchemaMismatchError(f"Failed to encode {spec.signature}: {str(e)}")

    # -- decoding ---------------------------------------------------------

    def decode_result(self, method: str, data: Union[str, bytes]) -> Any:
        """
        Decode the return data of a call.

        Returns:
            None for no outputs, the value for a single output, a tuple otherwise

        Raises:
            DecodeError: If the payload is truncated or malformed
        """
        spec = self.method(method)
        types = spec.output_types
        if not types:
            return None
        raw = hex_to_bytes(data)
        try:
            values = decode(types, raw)
        except (DecodingError, OverflowError, ValueError) as e:
            raise DecodeError(f"Failed to decode result of {spec.signature}: {str(e)}")
        if len(values) == 1:
            return values[0]
        return tuple(values)

    def decode_event(
        self,
        topic0: Union[str, bytes],
        data: Union[str, bytes],
        topics: Sequence[Union[str, bytes]],
    ) -> Dict[str, Any]:
        """
        Decode an event payload into named fields.

        Args:
            topic0: Event identifier
            data: Non-indexed payload
            topics: Full topic list including topic0

        Raises:
            UnknownEventError: If topic0 is not registered
            DecodeError: On malformed payload or wrong topic count
        """
        spec = self.event_for_topic(topic0)
        indexed = spec.indexed_inputs
        if len(topics) != len(indexed) + 1:
            raise DecodeError(
                f"{spec.signature} expects {len(indexed) + 1} topics, got {len(topics)}"
            )

        indexed_values: List[Any] = []
        for param, topic in zip(indexed, topics[1:]):
            raw_topic = hex_to_bytes(topic)
            if len(raw_topic) != 32:
                raise DecodeError(f"Topic for {param.name or param.type} is not 32 bytes")
            if param.is_dynamic_topic:
                # Only the hash of dynamic values is recorded
                indexed_values.append(raw_topic)
                continue
            try:
                indexed_values.append(decode([param.canonical_type], raw_topic)[0])
            except (DecodingError, OverflowError, ValueError) as e:
                raise DecodeError(f"Failed to decode topic of {spec.signature}: {str(e)}")

        data_types = [p.canonical_type for p in spec.data_inputs]
        try:
            data_values = list(decode(data_types, hex_to_bytes(data))) if data_types else []
        except (DecodingError, OverflowError, ValueError) as e:
            raise DecodeError(f"Failed to decode data of {spec.signature}: {str(e)}")

        fields: Dict[str, Any] = {}
        indexed_iter = iter(indexed_values)
        data_iter = iter(data_values)
        for position, param in enumerate(spec.inputs):
            value = next(indexed_iter) if param.indexed else next(data_iter)
            fields[param.name or f"arg{position}"] = value
        return fields

    def decode_log(self, log: LogEvent) -> DecodedEvent:
        """Decode a raw log; the whole log is rejected if any field fails."""
        if not log.topics:
            raise UnknownEventError(
                f"Log {log.transaction_hash}:{log.log_index} has no topic0"
            )
        spec = self.event_for_topic(log.topics[0])
        args = self.decode_event(log.topics[0], log.data, log.topics)
        return DecodedEvent(event=spec.name, args=args, log=log)

    def decode_revert(self, data: Union[str, bytes, None]) -> Optional[str]:
        """
        Render revert data as a human readable reason.

        Returns:
            The reason, a hex fallback for unknown payloads, or None for empty data
        """
        raw = hex_to_bytes(data) if data else b""
        if len(raw) < 4:
            return None
        selector = "0x" + raw[:4].hex()
        payload = raw[4:]
        try:
            if selector == ERROR_STRING_SELECTOR:
                return decode(["string"], payload)[0]
            if selector == PANIC_SELECTOR:
                code = decode(["uint256"], payload)[0]
                return f"Panic({hex(code)}): {PANIC_CODES.get(code, 'unknown panic code')}"
            spec = self._errors_by_selector.get(selector)
            if spec is not None:
                types = [p.canonical_type for p in spec.inputs]
                values = decode(types, payload) if types else ()
                rendered = ", ".join(repr(v) for v in values)
                return f"{spec.name}({rendered})"
        except (DecodingError, OverflowError, ValueError) as e:
            logger.debug(f"Could not decode revert payload {selector}: {e}")
        return "0x" + raw.hex()
