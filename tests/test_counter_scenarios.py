"""
End-to-end scenarios against the Counter contract on the in-memory ledger.
"""
import os
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from bindlayer_sdk import LedgerClient
from bindlayer_sdk.exceptions import CallRevertedError, TransactionRevertedError
from conftest import COUNTER_ABI, COUNTER_BIN, OTHER_PRIV_KEY, TEST_PRIV_KEY, UNDERFLOW_REASON, CounterStub


@pytest.fixture
def client():
    client = LedgerClient("stub://", private_key=TEST_PRIV_KEY, poll_interval=0.01, confirmation_timeout=2)
    client.transport.register_code(COUNTER_BIN, CounterStub)
    yield client
    client.close()


@pytest.fixture
def deployed(client):
    counter, _ = client.deploy(COUNTER_ABI, COUNTER_BIN)
    return counter


def test_deploy_increment_read(deployed):
    assert deployed.call("getCount") == 0
    deployed.send("increment")
    deployed.send("increment")
    assert deployed.caller.getCount() == 2
    events = list(deployed.filter_logs("CounterIncremented", from_block=0))
    assert [e.event for e in events] == ["CounterIncremented", "CounterIncremented"]
    assert [e["newCount"] for e in events] == [1, 2]


def test_watch_sees_each_increment_until_closed(deployed):
    seen = []
    done = threading.Event()

    def sink(event):
        seen.append(event["newCount"])
        if len(seen) == 3:
            done.set()

    subscription = deployed.watch_logs("CounterIncremented", sink)
    for _ in range(3):
        deployed.send("increment")
    assert done.wait(2)
    assert seen == [1, 2, 3]

    # Nothing more arrives, and the subscription stays open
    assert not subscription.wait(0.2)
    assert subscription.active
    assert seen == [1, 2, 3]
    assert subscription.delivered == 3

    subscription.close()
    assert subscription.wait(2)
    assert not subscription.active
    assert seen == [1, 2, 3]


def test_underflow_reverts_with_reason(deployed):
    with pytest.raises(CallRevertedError) as call_error:
        deployed.call("decrement")
    assert call_error.value.reason == UNDERFLOW_REASON

    with pytest.raises(TransactionRevertedError) as tx_error:
        deployed.send("decrement")
    assert tx_error.value.reason == UNDERFLOW_REASON
    assert deployed.call("getCount") == 0


def test_history_matches_state(deployed):
    for method in ("increment", "increment", "increment", "decrement", "reset", "increment"):
        deployed.send(method)
    events = list(deployed.filter_logs(from_block=0))
    assert [(e.event, e["newCount"]) for e in events] == [
        ("CounterIncremented", 1),
        ("CounterIncremented", 2),
        ("CounterIncremented", 3),
        ("CounterDecremented", 2),
        ("CounterReset", 0),
        ("CounterIncremented", 1),
    ]
    assert events[-1]["newCount"] == deployed.call("getCount")


def test_watchers_and_iterators_see_the_same_events(deployed):
    seen = []
    done = threading.Event()

    def sink(event):
        seen.append(event["newCount"])
        if len(seen) == 3:
            done.set()

    deployed.send("increment")
    with deployed.watch_logs("CounterIncremented", sink), \
            deployed.iterate_events("CounterIncremented", from_block=0, live=True) as it:
        deployed.send("increment")
        deployed.send("increment")
        deployed.send("increment")
        assert done.wait(2)
        iterated = [next(it)["newCount"] for _ in range(4)]

    assert seen == [2, 3, 4]
    assert iterated == [1, 2, 3, 4]


def test_two_accounts_send_concurrently(client, deployed):
    other = client.bind(COUNTER_ABI, deployed.address)
    other.signer = LedgerClient("stub://", private_key=OTHER_PRIV_KEY).signer

    with ThreadPoolExecutor(max_workers=4) as pool:
        futures = [pool.submit(c.send, "increment") for c in (deployed, other) for _ in range(5)]
        receipts = [f.result() for f in futures]

    assert all(r.succeeded for r in receipts)
    assert deployed.call("getCount") == 10
    senders = {r.from_address for r in receipts}
    assert senders == {deployed.signer.address, other.signer.address}


@pytest.mark.integration
@pytest.mark.skipif(not os.environ.get("RPC_URL") or not os.environ.get("PRIVATE_KEY"),
                    reason="needs RPC_URL and PRIVATE_KEY of a funded account on a dev node")
def test_counter_on_live_node():
    with LedgerClient.from_env(confirmation_timeout=60) as live:
        counter, receipt = live.deploy(COUNTER_ABI, COUNTER_BIN)
        assert receipt.succeeded
        counter.send("increment")
        assert counter.call("getCount") == 1
