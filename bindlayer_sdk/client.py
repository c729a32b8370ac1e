"""
LedgerClient - service context of the BindLayer SDK.

Owns the transport, the signer, the per-account nonce table and the
TransactionManager, and binds contracts against them.
"""
import logging
from typing import Any, Optional, Tuple, Union

from .codec import parse_abi
from .config import ClientSettings, NetworkConfig, validate_rpc_url
from .contract import AbiInput, BoundContract
from .exceptions import NetworkError
from .models import FeeQuote, TxReceipt
from .signer import LocalSigner, Signer
from .transactions import NonceManager, TransactionManager
from .transport import STUB_SCHEME, LedgerTransport, get_transport


class LedgerClient:
    """
    Client for binding and driving contracts on one ledger endpoint.

    To use this client, you'll need:
    - An Ethereum RPC endpoint (or ``stub://`` for the in-memory ledger)
    - Either a private key or a custom signer, for state-changing calls

    Args:
        rpc_url: JSON-RPC endpoint URL
        private_key: Hex private key (optional)
        signer: Custom signer object (optional, wins over private_key)
        transport: Pre-built transport (optional, wins over rpc_url)
        contract_address: Default address for ``bind``
        expected_chain_id: Chain the endpoint must serve, checked by ``assert_chain_id``
        retry_count: Number of retries for HTTP requests
        timeout: Timeout for HTTP requests in seconds
        poll_interval: Receipt and log filter polling interval in seconds
        confirmation_timeout: Default receipt polling budget in seconds
        logger: Optional logger instance to use for debug/info logging

    Raises:
        ValueError: If neither rpc_url nor transport is given, or the URL is not https
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        private_key: Optional[str] = None,
        signer: Optional[Signer] = None,
        transport: Optional[LedgerTransport] = None,
        contract_address: Optional[str] = None,
        expected_chain_id: Optional[int] = None,
        retry_count: int = 3,
        timeout: int = 30,
        poll_interval: float = 1.0,
        confirmation_timeout: float = 120.0,
        logger: Optional[logging.Logger] = None,
    ):
        if transport is None and not rpc_url:
            raise ValueError("Either rpc_url or transport must be provided")
        self.logger = logger or logging.getLogger(__name__)
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.expected_chain_id = expected_chain_id
        self._network_name: Optional[str] = None

        if transport is None:
            validate_rpc_url(rpc_url)
            if rpc_url.startswith(STUB_SCHEME):
                transport = get_transport(rpc_url)
            else:
                transport = get_transport(
                    rpc_url,
                    retry_count=retry_count,
                    timeout=timeout,
                    poll_interval=poll_interval,
                )
        self.transport = transport

        self.signer: Optional[Signer] = signer
        if self.signer is None and private_key:
            self.signer = LocalSigner(private_key)

        self.nonces = NonceManager(self.transport)
        self.manager = TransactionManager(
            self.transport,
            nonces=self.nonces,
            confirmation_timeout=confirmation_timeout,
            poll_interval=poll_interval,
        )
        self.logger.debug(f"LedgerClient ready for {rpc_url or type(transport).__name__}")

    @classmethod
    def from_settings(cls, settings: ClientSettings, **kwargs: Any) -> "LedgerClient":
        return cls(
            rpc_url=settings.rpc_url,
            private_key=settings.private_key,
            contract_address=settings.contract_address,
            expected_chain_id=settings.chain_id,
            retry_count=settings.retry_count,
            timeout=settings.timeout,
            poll_interval=settings.poll_interval,
            confirmation_timeout=settings.confirmation_timeout,
            **kwargs,
        )

    @classmethod
    def from_env(cls, **kwargs: Any) -> "LedgerClient":
        """Client configured from RPC_URL, PRIVATE_KEY and CONTRACT_ADDRESS."""
        overrides = {k: kwargs.pop(k) for k in list(kwargs) if k in ClientSettings.model_fields}
        return cls.from_settings(ClientSettings.from_env(**overrides), **kwargs)

    @classmethod
    def from_network(
        cls,
        network: str,
        private_key: Optional[str] = None,
        signer: Optional[Signer] = None,
        rpc_url: Optional[str] = None,
        **kwargs: Any,
    ) -> "LedgerClient":
        """
        Client for a network listed in networks.json.

        Raises:
            ValueError: If the network is unknown
        """
        client = cls(
            rpc_url=NetworkConfig.get_rpc_url(network, rpc_url),
            private_key=private_key,
            signer=signer,
            expected_chain_id=NetworkConfig.get_chain_id(network),
            **kwargs,
        )
        client._network_name = network
        return client

    @property
    def address(self) -> str:
        """
        Get the signer address

        Raises:
            ValueError: If no signer is available
        """
        if self.signer is None:
            raise ValueError("No private key or signer available")
        return self.signer.address

    def assert_chain_id(self) -> None:
        """
        Check that the endpoint serves the expected chain.

        Raises:
            NetworkError: On a chain id mismatch
            TransportError: If the chain id could not be read
        """
        if self.expected_chain_id is None:
            self.logger.warning("No expected chain ID set, skipping chain verification")
            return
        actual = self.transport.chain_id()
        if actual != self.expected_chain_id:
            network = f" for network {self._network_name}" if self._network_name else ""
            raise NetworkError(
                f"Chain ID mismatch{network}: expected {self.expected_chain_id}, got {actual}"
            )

    def bind(self, abi: AbiInput, address: Optional[str] = None) -> BoundContract:
        """
        Bind an ABI to a deployed address (defaults to ``contract_address``).

        Raises:
            ValueError: If no address is known
            SchemaMismatchError: If the ABI or address is malformed
        """
        address = address or self.contract_address
        if not address:
            raise ValueError("Contract address not provided")
        contract = BoundContract(
            self.transport,
            parse_abi(abi, address),
            manager=self.manager,
            signer=self.signer,
        )
        self.logger.debug(f"Bound contract at {contract.address}")
        return contract

    def deploy(
        self,
        abi: AbiInput,
        bytecode: Union[str, bytes],
        *args: Any,
        value: int = 0,
        gas_limit: Optional[int] = None,
        fees: Optional[FeeQuote] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[BoundContract, TxReceipt]:
        """
        Deploy a contract with the client's signer and bind it.

        Raises:
            ValueError: If no signer is available
        """
        if self.signer is None:
            raise ValueError("Deployment needs a private key or signer")
        contract, receipt = BoundContract.deploy(
            self.transport,
            abi,
            bytecode,
            *args,
            manager=self.manager,
            signer=self.signer,
            value=value,
            gas_limit=gas_limit,
            fees=fees,
            timeout=timeout,
        )
        self.logger.info(f"Deployed contract at {contract.address} in tx {receipt.tx_hash}")
        return contract, receipt

    def close(self) -> None:
        """Release the transport and every live subscription on it."""
        self.transport.close()

    def __enter__(self) -> "LedgerClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
