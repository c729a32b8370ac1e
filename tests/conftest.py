"""
Pytest fixtures for the BindLayer SDK tests.
"""
import pytest
from eth_account import Account

from bindlayer_sdk.contract import BoundContract
from bindlayer_sdk.signer import LocalSigner
from bindlayer_sdk.transactions import NonceManager, TransactionManager
from bindlayer_sdk.transport.stub_transport import StubContract, StubTransport

# Constants for testing
TEST_RPC_URL = "https://rpc.example.com"
TEST_CONTRACT = "0x1234567890123456789012345678901234567890"
TEST_PRIV_KEY = "0x0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"
OTHER_PRIV_KEY = "0x" + "11" * 32

COUNTER_ABI = [
    {"anonymous": False, "inputs": [{"indexed": False, "internalType": "uint256", "name": "newCount", "type": "uint256"}],
     "name": "CounterDecremented", "type": "event"},
    {"anonymous": False, "inputs": [{"indexed": False, "internalType": "uint256", "name": "newCount", "type": "uint256"}],
     "name": "CounterIncremented", "type": "event"},
    {"anonymous": False, "inputs": [{"indexed": False, "internalType": "uint256", "name": "newCount", "type": "uint256"}],
     "name": "CounterReset", "type": "event"},
    {"inputs": [], "name": "decrement", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [], "name": "getCount", "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "increment", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [], "name": "reset", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
]

COUNTER_BIN = (
    "0x60806040526000805534801561001457600080fd5b50610222806100246000396000f3fe608060405234801561001057600080fd5b506004361061004c5760003560e01c80632baeceb714610051578063a87d942c1461005b578063d09de08a14610079578063d826f88f14610083575b600080fd5b61005961008d565b005b610063610132565b6040518082815260200191505060405180910390f35b61008161013b565b005b61008b610186565b005b60008054116100e7576040517f08c379a00000000000000000000000000000000000000000000000000000000081526004018080602001828103825260248152602001806101c96024913960400191505060405180910390fd5b600160008082825403925050819055507f1a00a27c962d5410357331e1a8cffff62058bd0161ad624818df31152f1eeb456000546040518082815260200191505060405180910390a1565b60008054905090565b600160008082825401925050819055507f3cf8b50771c17d723f2cb711ca7dadde485b222e13c84ba0730a14093fad6d5c6000546040518082815260200191505060405180910390a1565b600080819055507f5ee614ee051809d12a47ecce5391d6753965c7559f89ccf50b59ab97cbd0d70f6000546040518082815260200191505060405180910390a156fe436f756e7465723a2063616e6e6f742064656372656d656e742062656c6f77207a65726fa2646970667358221220a9cb44e1affae57c8e982644cd4ce2de7adb5ba66f42a1d535a2bf9547afbef264736f6c634300060c0033"
)

UNDERFLOW_REASON = "Counter: cannot decrement below zero"


class CounterStub(StubContract):
    """Python twin of the Counter contract."""
    abi = COUNTER_ABI

    def getCount(self, ctx):
        return ctx.storage.get("count", 0)

    def increment(self, ctx):
        ctx.storage["count"] = ctx.storage.get("count", 0) + 1
        ctx.emit("CounterIncremented", ctx.storage["count"])

    def decrement(self, ctx):
        if ctx.storage.get("count", 0) <= 0:
            ctx.revert(UNDERFLOW_REASON)
        ctx.storage["count"] -= 1
        ctx.emit("CounterDecremented", ctx.storage["count"])

    def reset(self, ctx):
        ctx.storage["count"] = 0
        ctx.emit("CounterReset", 0)


@pytest.fixture
def stub():
    """In-memory ledger with the Counter bytecode registered."""
    transport = StubTransport()
    transport.register_code(COUNTER_BIN, CounterStub)
    yield transport
    transport.close()


@pytest.fixture
def signer():
    return LocalSigner(TEST_PRIV_KEY)


@pytest.fixture
def other_signer():
    return LocalSigner(OTHER_PRIV_KEY)


@pytest.fixture
def manager(stub):
    return TransactionManager(stub, NonceManager(stub), confirmation_timeout=2.0, poll_interval=0.01)


@pytest.fixture
def counter_address(stub):
    return stub.install(TEST_CONTRACT, CounterStub())


@pytest.fixture
def counter(stub, manager, signer, counter_address):
    """Counter bound at TEST_CONTRACT with a manager and signer."""
    return BoundContract.from_abi(stub, counter_address, COUNTER_ABI, manager=manager, signer=signer)


@pytest.fixture
def test_account():
    """Create a deterministic test account"""
    return Account.from_key(TEST_PRIV_KEY)
