"""
Tests for live event subscriptions.
"""
import threading

import pytest

from bindlayer_sdk.events import ForwardOutcome, Subscription
from bindlayer_sdk.exceptions import SchemaMismatchError, TransportError
from bindlayer_sdk.transport.base import LogStream


class Collector:
    """Sink that records events and signals after ``expected`` of them."""

    def __init__(self, expected=1):
        self.events = []
        self.expected = expected
        self.done = threading.Event()

    def __call__(self, event):
        self.events.append(event)
        if len(self.events) >= self.expected:
            self.done.set()


def test_delivers_events_in_order(counter):
    sink = Collector(expected=3)
    sub = counter.watch_logs("CounterIncremented", sink)
    for _ in range(3):
        counter.send("increment")
    assert sink.done.wait(2)
    assert [e["newCount"] for e in sink.events] == [1, 2, 3]
    assert sub.delivered == 3
    sub.close()
    assert sub.wait(2)
    assert sub.outcome == ForwardOutcome.CANCELLED
    assert sub.error is None


def test_filters_other_events(counter):
    sink = Collector(expected=1)
    sub = counter.filterer.watch_logs("CounterReset", sink)
    counter.send("increment")
    counter.send("increment")
    counter.send("reset")
    assert sink.done.wait(2)
    assert [e.event for e in sink.events] == ["CounterReset"]
    sub.close()


def test_all_events(counter):
    sink = Collector(expected=2)
    with counter.watch_logs(None, sink) as sub:
        counter.send("increment")
        counter.send("decrement")
        assert sink.done.wait(2)
    assert sub.wait(2)
    assert [e.event for e in sink.events] == ["CounterIncremented", "CounterDecremented"]


def test_source_end(counter, stub):
    sub = counter.watch_logs("CounterIncremented", Collector())
    stub.terminate_subscriptions()
    assert sub.wait(2)
    assert sub.outcome == ForwardOutcome.SOURCE_ENDED
    assert not sub.active


def test_source_error(counter, stub):
    sub = counter.watch_logs("CounterIncremented", Collector())
    error = TransportError("connection lost")
    stub.terminate_subscriptions(error)
    assert sub.wait(2)
    assert sub.outcome == ForwardOutcome.FAILED
    assert sub.error is error


def test_sink_failure_ends_forwarding(counter, stub):
    def sink(event):
        raise RuntimeError("consumer crashed")

    sub = counter.watch_logs("CounterIncremented", sink)
    counter.send("increment")
    assert sub.wait(2)
    assert sub.outcome == ForwardOutcome.FAILED
    assert isinstance(sub.error, RuntimeError)
    # The subscription was released on the transport
    assert stub._streams == []


def test_close_is_idempotent(counter):
    sub = counter.watch_logs("CounterIncremented", Collector())
    sub.close()
    sub.close()
    assert sub.wait(2)
    assert sub.outcome == ForwardOutcome.CANCELLED


def test_unknown_event(counter, stub):
    with pytest.raises(SchemaMismatchError):
        counter.watch_logs("Nope", Collector())
    assert stub._streams == []


def test_decode_failure(counter):
    stream = LogStream()
    sub = Subscription(stream, counter.codec.decode_log, Collector())
    stream.push({
        "address": counter.address,
        "topics": ["0x" + "ab" * 32],
        "data": "0x",
        "transactionHash": "0x" + "01" * 32,
        "logIndex": 0,
    })
    assert sub.wait(2)
    assert sub.outcome == ForwardOutcome.FAILED
    assert stream.closed
