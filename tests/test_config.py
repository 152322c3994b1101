"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from gateway_provisioner.config import (
    DEFAULT_CALL_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    Config,
    ConfigurationError,
    RollbackPolicy,
)


class TestConfig:
    """Tests for Config class."""

    def test_defaults(self) -> None:
        """Test default configuration values."""
        config = Config()

        assert config.region is None
        assert config.call_timeout_seconds == DEFAULT_CALL_TIMEOUT_SECONDS
        assert config.max_attempts == DEFAULT_MAX_ATTEMPTS
        assert config.retry_backoff_base_seconds == 1.0
        assert config.rollback_policy == RollbackPolicy.ALL
        assert config.max_concurrency == 1
        assert config.dry_run is False
        assert config.state_dir is None

    def test_invalid_region(self) -> None:
        """Test that a malformed region raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(region="not a region")

        assert "AWS_REGION" in str(exc_info.value)

    def test_invalid_timeout(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(call_timeout_seconds=0)

        assert "CALL_TIMEOUT_SECONDS" in str(exc_info.value)

    def test_invalid_max_attempts(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(max_attempts=0)

        assert "MAX_ATTEMPTS" in str(exc_info.value)

    def test_invalid_concurrency(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(max_concurrency=100)

        assert "MAX_CONCURRENCY" in str(exc_info.value)

    def test_errors_are_aggregated(self) -> None:
        """Test that all validation errors are reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(call_timeout_seconds=0, max_attempts=0, retry_backoff_base_seconds=-1)

        message = str(exc_info.value)
        assert "CALL_TIMEOUT_SECONDS" in message
        assert "MAX_ATTEMPTS" in message
        assert "RETRY_BACKOFF_BASE_SECONDS" in message

    def test_state_dir_must_be_directory(self, tmp_path: Path) -> None:
        not_a_dir = tmp_path / "file.txt"
        not_a_dir.write_text("x")

        with pytest.raises(ConfigurationError) as exc_info:
            Config(state_dir=not_a_dir)

        assert "STATE_DIR" in str(exc_info.value)

    def test_from_env(self, tmp_path: Path) -> None:
        """Test loading configuration from environment variables."""
        env = {
            "AWS_REGION": "eu-west-1",
            "AWS_ENDPOINT_URL": "http://localhost:4566",
            "CALL_TIMEOUT_SECONDS": "60",
            "MAX_ATTEMPTS": "5",
            "RETRY_BACKOFF_BASE_SECONDS": "0.5",
            "ROLLBACK_POLICY": "keep-prerequisites",
            "MAX_CONCURRENCY": "4",
            "STATE_DIR": str(tmp_path),
            "DRY_RUN": "true",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.region == "eu-west-1"
        assert config.endpoint_url == "http://localhost:4566"
        assert config.call_timeout_seconds == 60
        assert config.max_attempts == 5
        assert config.retry_backoff_base_seconds == 0.5
        assert config.rollback_policy == RollbackPolicy.KEEP_PREREQUISITES
        assert config.max_concurrency == 4
        assert config.state_dir == tmp_path
        assert config.dry_run is True

    def test_from_env_default_region_fallback(self) -> None:
        with patch.dict(os.environ, {"AWS_DEFAULT_REGION": "ap-southeast-2"}, clear=True):
            config = Config.from_env()

        assert config.region == "ap-southeast-2"

    def test_from_env_invalid_integer(self) -> None:
        with patch.dict(os.environ, {"MAX_ATTEMPTS": "three"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "MAX_ATTEMPTS" in str(exc_info.value)

    def test_from_env_invalid_policy(self) -> None:
        """Test that an unknown rollback policy is rejected."""
        with patch.dict(os.environ, {"ROLLBACK_POLICY": "none"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "ROLLBACK_POLICY" in str(exc_info.value)

    def test_config_is_frozen(self) -> None:
        config = Config()
        with pytest.raises(AttributeError):
            config.max_attempts = 7  # type: ignore[misc]
