"""Tests for engine configuration loading."""

import logging
import os
from unittest.mock import patch

import pytest

from provisioner.config import (
    DEFAULT_NAT_GATEWAY_TIMEOUT_SECONDS,
    DEFAULT_SG_DELETE_MAX_ATTEMPTS,
    MAX_WAIT_TIMEOUT_SECONDS,
    ConfigurationError,
    EngineConfig,
)


class TestEngineConfig:
    """Tests for EngineConfig validation."""

    def test_defaults(self) -> None:
        config = EngineConfig()

        assert config.nat_gateway_timeout_seconds == DEFAULT_NAT_GATEWAY_TIMEOUT_SECONDS
        assert config.sg_delete_max_attempts == DEFAULT_SG_DELETE_MAX_ATTEMPTS
        assert config.json_logs is True
        assert config.logging_level == logging.INFO

    def test_timeout_too_large(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(nat_gateway_timeout_seconds=MAX_WAIT_TIMEOUT_SECONDS + 1)

        assert "NAT_GATEWAY_TIMEOUT" in str(exc_info.value)

    def test_timeout_zero(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(endpoint_timeout_seconds=0)

        assert "ENDPOINT_TIMEOUT" in str(exc_info.value)

    def test_poll_interval_zero(self) -> None:
        """Test that polls cannot spin without pausing."""
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(poll_interval_seconds=0)

        assert "POLL_INTERVAL must be between 0.01" in str(exc_info.value)

    def test_all_errors_reported(self) -> None:
        """Test that every invalid field is listed at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(
                file_system_timeout_seconds=0,
                sg_delete_max_attempts=0,
                poll_interval_seconds=-1,
                log_level="LOUD",
            )

        message = str(exc_info.value)
        assert "FILE_SYSTEM_TIMEOUT" in message
        assert "SG_DELETE_MAX_ATTEMPTS" in message
        assert "POLL_INTERVAL" in message
        assert "LOG_LEVEL" in message

    def test_negative_retry_delay(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(sg_delete_retry_delay_seconds=-0.5)

        assert "SG_DELETE_RETRY_DELAY" in str(exc_info.value)


class TestFromEnv:
    """Tests for EngineConfig.from_env."""

    def test_from_env(self) -> None:
        env = {
            "AWS_REGION": "eu-west-1",
            "NAT_GATEWAY_TIMEOUT": "900",
            "POLL_INTERVAL": "2.5",
            "SG_DELETE_MAX_ATTEMPTS": "20",
            "LOG_FORMAT": "text",
            "LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=True):
            config = EngineConfig.from_env()

        assert config.region == "eu-west-1"
        assert config.nat_gateway_timeout_seconds == 900
        assert config.poll_interval_seconds == 2.5
        assert config.sg_delete_max_attempts == 20
        assert config.json_logs is False
        assert config.logging_level == logging.DEBUG

    def test_default_region_fallback(self) -> None:
        with patch.dict(os.environ, {"AWS_DEFAULT_REGION": "us-east-2"}, clear=True):
            config = EngineConfig.from_env()

        assert config.region == "us-east-2"

    def test_non_integer(self) -> None:
        with patch.dict(os.environ, {"ENDPOINT_TIMEOUT": "soon"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                EngineConfig.from_env()

        assert "ENDPOINT_TIMEOUT must be an integer" in str(exc_info.value)

    def test_non_number(self) -> None:
        with patch.dict(os.environ, {"SG_DELETE_RETRY_DELAY": "fast"}, clear=True):
            with pytest.raises(ConfigurationError):
                EngineConfig.from_env()

    def test_invalid_log_format(self) -> None:
        with patch.dict(os.environ, {"LOG_FORMAT": "xml"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                EngineConfig.from_env()

        assert "LOG_FORMAT" in str(exc_info.value)

    def test_out_of_range_from_env(self) -> None:
        with patch.dict(os.environ, {"NAT_GATEWAY_TIMEOUT": "999999"}, clear=True):
            with pytest.raises(ConfigurationError):
                EngineConfig.from_env()
