"""
Tests for the rate limiting cache implementation.

These tests verify that repeated polling failures are logged once per TTL window.
"""
from unittest.mock import MagicMock, patch

from cachetools import TTLCache

from bindlayer_sdk.transport._rate_limited_log import rate_limited_log, reset_rate_limited_log


class TestRateLimitCache:
    """Tests for the rate limiting cache implementation."""

    def setup_method(self):
        reset_rate_limited_log()

    def test_rate_limited_log_with_ttlcache(self):
        """Test rate limiting with TTLCache."""
        mock_cache = {}
        mock_lock = MagicMock()
        mock_logger = MagicMock()

        with patch('bindlayer_sdk.transport._rate_limited_log._log_cache', mock_cache), \
             patch('bindlayer_sdk.transport._rate_limited_log._log_cache_lock', mock_lock):

            # First log should go through
            assert rate_limited_log("Test message", level="warning", logger_instance=mock_logger)
            mock_logger.warning.assert_called_once_with("Test message")
            mock_lock.__enter__.assert_called()  # Lock should be acquired
            assert "warning:Test message" in mock_cache

            mock_logger.reset_mock()

            # Second immediate log should be suppressed
            assert not rate_limited_log("Test message", level="warning", logger_instance=mock_logger)
            mock_logger.warning.assert_not_called()

            # Different level should go through
            rate_limited_log("Test message", level="error", logger_instance=mock_logger)
            mock_logger.error.assert_called_once_with("Test message")
            assert "error:Test message" in mock_cache

            # Different message should go through
            mock_logger.reset_mock()
            rate_limited_log("Different message", level="warning", logger_instance=mock_logger)
            mock_logger.warning.assert_called_once_with("Different message")

    def test_message_logged_again_after_ttl(self):
        """Expired entries no longer suppress the message."""
        now = [1000.0]
        cache = TTLCache(maxsize=16, ttl=60, timer=lambda: now[0])
        mock_logger = MagicMock()

        with patch('bindlayer_sdk.transport._rate_limited_log._log_cache', cache):
            rate_limited_log("Log filter polling failed", logger_instance=mock_logger)
            rate_limited_log("Log filter polling failed", logger_instance=mock_logger)
            assert mock_logger.warning.call_count == 1

            now[0] += 61
            rate_limited_log("Log filter polling failed", logger_instance=mock_logger)
            assert mock_logger.warning.call_count == 2

    def test_unknown_level_falls_back_to_warning(self):
        mock_logger = MagicMock(spec=["warning"])
        rate_limited_log("odd level", level="verbose", logger_instance=mock_logger)
        mock_logger.warning.assert_called_once_with("odd level")

    def test_reset(self):
        mock_logger = MagicMock()
        rate_limited_log("again", logger_instance=mock_logger)
        reset_rate_limited_log()
        rate_limited_log("again", logger_instance=mock_logger)
        assert mock_logger.warning.call_count == 2
