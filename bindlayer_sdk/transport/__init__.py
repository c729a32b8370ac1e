"""
Transport module for the BindLayer SDK.

This module provides the ledger transport abstraction with a web3 JSON-RPC
implementation and an in-memory stub ledger for tests and local runs.
"""
import logging
from typing import Any

from .base import LedgerTransport, LogStream, StreamSignal, log_matches
from .stub_transport import ExecutionContext, StubContract, StubTransport
from .web3_transport import Web3Transport

__all__ = [
    "LedgerTransport",
    "LogStream",
    "StreamSignal",
    "StubContract",
    "StubTransport",
    "ExecutionContext",
    "Web3Transport",
    "get_transport",
    "STUB_SCHEME",
    "log_matches",
]

logger = logging.getLogger(__name__)

STUB_SCHEME = "stub://"


def get_transport(rpc_url: str, **kwargs: Any) -> LedgerTransport:
    """
    Create the transport for an endpoint URL.

    ``stub://`` selects the in-memory ledger; anything else is treated as a
    JSON-RPC endpoint.

    Args:
        rpc_url: Endpoint URL
        **kwargs: Passed to the transport constructor
    """
    if rpc_url.startswith(STUB_SCHEME):
        logger.debug("Using in-memory stub ledger")
        return StubTransport(**kwargs)
    logger.debug(f"Using web3 transport for {rpc_url}")
    return Web3Transport(rpc_url, **kwargs)
