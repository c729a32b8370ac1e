#!/usr/bin/env python3
"""
Counter walkthrough for the BindLayer SDK.

Deploys (or binds) the Counter contract, reads it, increments it twice and
prints the events the increments emitted.

Environment:
    RPC_URL            JSON-RPC endpoint, or stub:// for the in-memory ledger
    PRIVATE_KEY        Key of a funded account
    CONTRACT_ADDRESS   Existing Counter deployment (optional; deploys if unset)
"""
import json
import logging
import os
import pathlib

from eth_account import Account

from bindlayer_sdk import LedgerClient
from bindlayer_sdk.exceptions import BindLayerError, TransactionRevertedError
from bindlayer_sdk.transport import StubContract, StubTransport

ARTIFACT = pathlib.Path(__file__).with_name("Counter.json")


class CounterTwin(StubContract):
    """Python version of Counter for stub:// runs."""

    def __init__(self):
        self.abi = load_artifact()["abi"]
        super().__init__()

    def getCount(self, ctx):
        return ctx.storage.get("count", 0)

    def increment(self, ctx):
        ctx.storage["count"] = ctx.storage.get("count", 0) + 1
        ctx.emit("CounterIncremented", ctx.storage["count"])

    def decrement(self, ctx):
        if ctx.storage.get("count", 0) <= 0:
            ctx.revert("Counter: cannot decrement below zero")
        ctx.storage["count"] -= 1
        ctx.emit("CounterDecremented", ctx.storage["count"])

    def reset(self, ctx):
        ctx.storage["count"] = 0
        ctx.emit("CounterReset", 0)


def load_artifact():
    with ARTIFACT.open("r", encoding="utf-8") as f:
        return json.load(f)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    rpc_url = os.environ.get("RPC_URL", "stub://")
    private_key = os.environ.get("PRIVATE_KEY")
    contract_address = os.environ.get("CONTRACT_ADDRESS")

    if not private_key:
        if not rpc_url.startswith("stub://"):
            print("ERROR: PRIVATE_KEY environment variable is required")
            return
        private_key = Account.create().key.hex()

    artifact = load_artifact()
    with LedgerClient(rpc_url, private_key=private_key, contract_address=contract_address) as client:
        if isinstance(client.transport, StubTransport):
            client.transport.register_code(artifact["bytecode"], CounterTwin)

        print(f"Account: {client.address}")
        print(f"Chain ID: {client.transport.chain_id()}")
        print(f"Latest block: {client.transport.block_number()}")

        try:
            if contract_address:
                counter = client.bind(artifact["abi"])
            else:
                counter, receipt = client.deploy(artifact["abi"], artifact["bytecode"])
                print(f"Deployed Counter at {counter.address} (block {receipt.block_number})")

            start_block = client.transport.block_number()
            print(f"Count before: {counter.caller.getCount()}")

            for _ in range(2):
                receipt = counter.send("increment")
                print(f"increment() mined in block {receipt.block_number}, tx {receipt.tx_hash}")

            print(f"Count after: {counter.caller.getCount()}")

            for event in counter.filter_logs("CounterIncremented", from_block=start_block):
                print(f"  {event.event} newCount={event['newCount']} (block {event.log.block_number})")

        except TransactionRevertedError as e:
            print(f"Transaction reverted: {e.reason}")
        except BindLayerError as e:
            print(f"Error: {str(e)}")


if __name__ == "__main__":
    main()
