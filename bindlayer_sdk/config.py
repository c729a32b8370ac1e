"""
Network configuration and client settings.
"""
import importlib.resources
import json
import logging
import os
import urllib.parse
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("localhost", "127.0.0.1")


def validate_rpc_url(url: str, name: str = "rpc_url") -> str:
    """
    Require https for every endpoint except local nodes and the stub ledger.

    Raises:
        ValueError: If the URL is not acceptable
    """
    if url.startswith("stub://"):
        return url
    parsed = urllib.parse.urlparse(url)
    # Check if it's a localhost or 127.0.0.1 address (with or without port)
    netloc_parts = parsed.netloc.split(':')
    host = netloc_parts[0] if netloc_parts else ''
    is_local = host in LOCAL_HOSTS
    if parsed.scheme != 'https' and not is_local:
        raise ValueError(f"{name} must use https:// for security (got: {parsed.scheme}://)")
    return url


class NetworkConfig:
    """Known networks, loaded from the packaged networks.json."""

    _networks_cache: Optional[Dict[str, Any]] = None

    @classmethod
    def load_networks(cls) -> Dict[str, Any]:
        if cls._networks_cache is None:
            resource = importlib.resources.files("bindlayer_sdk").joinpath("networks.json")
            with resource.open("r", encoding="utf-8") as f:
                cls._networks_cache = json.load(f)
        return cls._networks_cache

    @classmethod
    def get_network(cls, network: str) -> Dict[str, Any]:
        """
        Raises:
            ValueError: If the network is unknown
        """
        networks = cls.load_networks()
        if network not in networks:
            available = ", ".join(sorted(networks))
            raise ValueError(f"Unknown network '{network}'. Available networks: {available}")
        return networks[network]

    @classmethod
    def get_rpc_url(cls, network: str, override: Optional[str] = None) -> str:
        """
        RPC URL of a network.

        Precedence: ``override``, then ``<NETWORK>_RPC_URL`` from the
        environment, then networks.json.
        """
        if override:
            return override
        env_var = f"{network.upper().replace('-', '_')}_RPC_URL"
        from_env = os.environ.get(env_var)
        if from_env:
            logger.debug(f"Using RPC URL from {env_var}")
            return from_env
        return cls.get_network(network)["rpc"]

    @classmethod
    def get_chain_id(cls, network: str) -> int:
        return int(cls.get_network(network)["chainId"])

    @classmethod
    def get_contract_address(cls, network: str, name: str) -> Optional[str]:
        return cls.get_network(network).get("contracts", {}).get(name)


class ClientSettings(BaseModel):
    """Settings of a LedgerClient, typically read from the environment."""

    rpc_url: str
    private_key: Optional[str] = Field(None, repr=False)
    contract_address: Optional[str] = None
    chain_id: Optional[int] = None
    retry_count: int = 3
    timeout: int = 30
    poll_interval: float = 1.0
    confirmation_timeout: float = 120.0

    @field_validator("rpc_url")
    @classmethod
    def _check_rpc_url(cls, value: str) -> str:
        return validate_rpc_url(value)

    @classmethod
    def from_network(cls, network: str, **overrides: Any) -> "ClientSettings":
        """Settings for a network from networks.json."""
        values: Dict[str, Any] = {
            "rpc_url": NetworkConfig.get_rpc_url(network, overrides.pop("rpc_url", None)),
            "chain_id": NetworkConfig.get_chain_id(network),
        }
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "ClientSettings":
        """
        Read ``RPC_URL``, ``PRIVATE_KEY`` and ``CONTRACT_ADDRESS`` (plus the
        optional ``BINDLAYER_*`` tuning variables).

        Raises:
            ValueError: If RPC_URL is not set
        """
        env = os.environ if environ is None else environ
        rpc_url = overrides.pop("rpc_url", None) or env.get("RPC_URL")
        if not rpc_url:
            raise ValueError("RPC_URL is not set")
        values: Dict[str, Any] = {
            "rpc_url": rpc_url,
            "private_key": env.get("PRIVATE_KEY") or None,
            "contract_address": env.get("CONTRACT_ADDRESS") or None,
        }
        tuning = {
            "retry_count": "BINDLAYER_RETRY_COUNT",
            "timeout": "BINDLAYER_TIMEOUT",
            "poll_interval": "BINDLAYER_POLL_INTERVAL",
            "confirmation_timeout": "BINDLAYER_CONFIRMATION_TIMEOUT",
        }
        for field, var in tuning.items():
            if env.get(var):
                values[field] = env[var]
        values.update(overrides)
        return cls(**values)
