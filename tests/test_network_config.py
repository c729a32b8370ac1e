"""
Tests for the NetworkConfig module and client settings.
"""
import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from bindlayer_sdk.config import ClientSettings, NetworkConfig, validate_rpc_url

# Sample network configuration
MOCK_NETWORKS = {
    "test-network": {
        "chainId": 123,
        "rpc": "https://test.example.com",
        "contracts": {
            "Counter": "0x1234567890123456789012345678901234567890",
        },
    }
}


@pytest.fixture
def mock_networks():
    """Serve MOCK_NETWORKS from the cache and restore it afterwards."""
    NetworkConfig._networks_cache = MOCK_NETWORKS
    yield MOCK_NETWORKS
    NetworkConfig._networks_cache = None


class TestNetworkConfig:
    """Test NetworkConfig class."""

    def test_load_networks_cached(self, mock_networks):
        """Test that networks are cached after first load."""
        with patch("importlib.resources.files") as mock_files:
            result = NetworkConfig.load_networks()
            mock_files.assert_not_called()
        assert result == MOCK_NETWORKS

    def test_load_packaged_networks(self):
        """The packaged networks.json ships the local and stub networks."""
        NetworkConfig._networks_cache = None
        try:
            networks = NetworkConfig.load_networks()
        finally:
            NetworkConfig._networks_cache = None
        assert networks["local"]["chainId"] == 1337
        assert networks["stub"]["rpc"] == "stub://"
        assert networks["sepolia"]["chainId"] == 11155111

    def test_get_network(self, mock_networks):
        result = NetworkConfig.get_network("test-network")
        assert result["chainId"] == 123
        assert result["rpc"] == "https://test.example.com"

    def test_get_network_not_found(self, mock_networks):
        """Test getting a non-existent network."""
        with pytest.raises(ValueError) as exc_info:
            NetworkConfig.get_network("non-existent-network")
        # Verify error message includes available networks
        assert "test-network" in str(exc_info.value)

    def test_get_rpc_url_default(self, mock_networks):
        assert NetworkConfig.get_rpc_url("test-network") == "https://test.example.com"

    def test_get_rpc_url_override(self, mock_networks):
        result = NetworkConfig.get_rpc_url("test-network", override="https://override.example.com")
        assert result == "https://override.example.com"

    def test_get_rpc_url_env_var(self, mock_networks):
        """Test RPC URL from environment variable."""
        with patch.dict(os.environ, {"TEST_NETWORK_RPC_URL": "https://env.example.com"}):
            assert NetworkConfig.get_rpc_url("test-network") == "https://env.example.com"

    def test_get_chain_id(self, mock_networks):
        assert NetworkConfig.get_chain_id("test-network") == 123

    def test_get_contract_address(self, mock_networks):
        assert NetworkConfig.get_contract_address("test-network", "Counter") == \
            "0x1234567890123456789012345678901234567890"
        assert NetworkConfig.get_contract_address("test-network", "Missing") is None


class TestValidateRpcUrl:

    @pytest.mark.parametrize("url", [
        "https://rpc.example.com",
        "http://localhost:8545",
        "http://127.0.0.1:8545",
        "stub://",
    ])
    def test_accepted(self, url):
        assert validate_rpc_url(url) == url

    def test_plain_http_rejected(self):
        with pytest.raises(ValueError, match="https"):
            validate_rpc_url("http://rpc.example.com")


class TestClientSettings:

    def test_from_env(self):
        env = {
            "RPC_URL": "https://rpc.example.com",
            "PRIVATE_KEY": "0xabc",
            "CONTRACT_ADDRESS": "0x1234567890123456789012345678901234567890",
            "BINDLAYER_TIMEOUT": "10",
            "BINDLAYER_POLL_INTERVAL": "0.5",
        }
        settings = ClientSettings.from_env(env)
        assert settings.rpc_url == "https://rpc.example.com"
        assert settings.private_key == "0xabc"
        assert settings.timeout == 10
        assert settings.poll_interval == 0.5
        assert settings.retry_count == 3
        assert "0xabc" not in repr(settings)

    def test_from_env_missing_rpc(self):
        with pytest.raises(ValueError, match="RPC_URL"):
            ClientSettings.from_env({})

    def test_empty_values_are_unset(self):
        settings = ClientSettings.from_env({"RPC_URL": "stub://", "PRIVATE_KEY": ""})
        assert settings.private_key is None
        assert settings.contract_address is None

    def test_overrides_win(self):
        settings = ClientSettings.from_env({"RPC_URL": "https://a.example.com"}, rpc_url="stub://", timeout=5)
        assert settings.rpc_url == "stub://"
        assert settings.timeout == 5

    def test_insecure_url_rejected(self):
        with pytest.raises(ValidationError):
            ClientSettings(rpc_url="http://rpc.example.com")

    def test_bad_tuning_value(self):
        with pytest.raises(ValidationError):
            ClientSettings.from_env({"RPC_URL": "stub://", "BINDLAYER_RETRY_COUNT": "many"})

    def test_from_network(self, mock_networks):
        settings = ClientSettings.from_network("test-network", private_key="0xabc")
        assert settings.chain_id == 123
        assert settings.rpc_url == "https://test.example.com"
        assert settings.private_key == "0xabc"
