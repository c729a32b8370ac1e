"""
Property-based tests for the BindLayer SDK.

These tests verify that properties hold true across many random inputs.
"""
import threading

from hypothesis import given, settings, strategies as st
from eth_abi import encode

from bindlayer_sdk.codec import SchemaCodec
from bindlayer_sdk.events import EventIterator, to_log_event
from bindlayer_sdk.models import FeeQuote
from bindlayer_sdk.transactions import NonceManager
from bindlayer_sdk.transport.base import LogStream
from bindlayer_sdk.transport.stub_transport import StubTransport
from conftest import COUNTER_ABI, TEST_CONTRACT

CODEC = SchemaCodec.from_abi(COUNTER_ABI, TEST_CONTRACT)
INCREMENTED = CODEC.event("CounterIncremented").topic0

TOKEN_ABI = [
    {"type": "function", "name": "transfer", "stateMutability": "nonpayable",
     "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"type": "function", "name": "note", "stateMutability": "nonpayable",
     "inputs": [{"name": "text", "type": "string"}, {"name": "blob", "type": "bytes"}],
     "outputs": [{"name": "", "type": "string"}, {"name": "", "type": "bytes"}]},
]
TOKEN = SchemaCodec.from_abi(TOKEN_ABI)

address_strategy = st.binary(min_size=20, max_size=20).map(lambda b: "0x" + b.hex())
uint256_strategy = st.integers(min_value=0, max_value=2 ** 256 - 1)
wei_strategy = st.integers(min_value=1, max_value=10 ** 12)


def _raw_log(block, log_index):
    return {
        "address": TEST_CONTRACT,
        "topics": [INCREMENTED],
        "data": "0x" + encode(["uint256"], [block * 100 + log_index]).hex(),
        "blockNumber": block,
        "transactionHash": "0x" + f"{block:064x}",
        "logIndex": log_index,
    }


@settings(max_examples=50)
@given(to=address_strategy, amount=uint256_strategy)
def test_call_encoding_is_selector_plus_arguments(to, amount):
    """Encoded calldata always starts with the selector and has fixed-size arguments."""
    data = TOKEN.encode("transfer", [to, amount])
    assert data[:4].hex() == TOKEN.method("transfer").selector[2:]
    assert len(data) == 4 + 64
    assert data[4:] == encode(["address", "uint256"], [to, amount])


@settings(max_examples=50)
@given(text=st.text(max_size=200), blob=st.binary(max_size=200))
def test_dynamic_results_decode_back(text, blob):
    """Dynamic return values survive the ABI payload format."""
    payload = encode(["string", "bytes"], [text, blob])
    assert TOKEN.decode_result("note", payload) == (text, blob)


@settings(max_examples=50)
@given(
    max_fee=wei_strategy,
    tip_share=st.floats(min_value=0, max_value=1),
    percent=st.integers(min_value=1, max_value=200),
)
def test_bumped_fees_clear_the_replacement_threshold(max_fee, tip_share, percent):
    """A bump of N percent raises every fee by at least N percent and never breaks the quote."""
    tip = int(max_fee * tip_share)
    quote = FeeQuote(max_fee_per_gas=max_fee, max_priority_fee_per_gas=tip)
    bumped = quote.bumped(percent)
    assert bumped.max_fee_per_gas * 100 >= max_fee * (100 + percent)
    assert bumped.max_priority_fee_per_gas * 100 >= tip * (100 + percent)
    assert bumped.max_priority_fee_per_gas <= bumped.max_fee_per_gas
    assert bumped.max_fee_per_gas > max_fee


@settings(max_examples=50)
@given(gas_price=wei_strategy, percent=st.integers(min_value=1, max_value=200))
def test_bumped_legacy_price(gas_price, percent):
    bumped = FeeQuote(gas_price=gas_price).bumped(percent)
    assert bumped.is_legacy
    assert bumped.gas_price * 100 >= gas_price * (100 + percent)


@settings(max_examples=20, deadline=None)
@given(threads=st.integers(min_value=1, max_value=8), per_thread=st.integers(min_value=1, max_value=10),
       already_pending=st.integers(min_value=0, max_value=5))
def test_concurrent_nonces_are_contiguous(threads, per_thread, already_pending):
    """N concurrent allocations from one account yield exactly {p, ..., p+N-1}."""
    nonces = NonceManager(StubTransport())
    account = TEST_CONTRACT
    nonces._next[account] = already_pending
    results = []
    results_lock = threading.Lock()

    def worker():
        for _ in range(per_thread):
            nonce = nonces.allocate(account)
            with results_lock:
                results.append(nonce)

    workers = [threading.Thread(target=worker) for _ in range(threads)]
    for t in workers:
        t.start()
    for t in workers:
        t.join()

    total = threads * per_thread
    assert sorted(results) == list(range(already_pending, already_pending + total))


@settings(max_examples=50, deadline=None)
@given(
    blocks=st.lists(st.integers(min_value=1, max_value=30), min_size=1, max_size=15, unique=True),
    overlap=st.integers(min_value=0, max_value=15),
)
def test_iterator_delivers_each_log_once_in_order(blocks, overlap):
    """Replayed and live logs are merged without duplicates, history first."""
    blocks = sorted(blocks)
    history_raws = [_raw_log(b, 0) for b in blocks]
    live_only = [_raw_log(b, 1) for b in blocks]
    # The live stream repeats the tail of the history before new logs
    replayed = history_raws[len(history_raws) - min(overlap, len(history_raws)):]

    stream = LogStream()
    for raw in replayed + live_only:
        stream.push(raw)
    stream.finish()

    history = iter([CODEC.decode_log(to_log_event(raw)) for raw in history_raws])
    it = EventIterator(CODEC.decode_log, history=history, stream=stream)
    keys = [(e.log.block_number, e.log.log_index) for e in it]

    expected = [(b, 0) for b in blocks] + [(b, 1) for b in blocks]
    assert keys == expected
    assert len(set(keys)) == len(keys)
