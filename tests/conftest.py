"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from gateway_provisioner.config import Config  # noqa: E402
from gateway_provisioner.models import ProvisioningRequest  # noqa: E402


@pytest.fixture
def artifact(tmp_path: Path) -> Path:
    """A small deployment package on disk."""
    path = tmp_path / "function.zip"
    path.write_bytes(b"PK\x05\x06" + b"\x00" * 18)
    return path


@pytest.fixture
def request_model(artifact: Path) -> ProvisioningRequest:
    return ProvisioningRequest(
        function_name="orders-fn",
        api_name="orders-api",
        runtime="python3.12",
        artifact=artifact,
    )


@pytest.fixture
def fast_config() -> Config:
    """Config without retry delays."""
    return Config(region="us-east-1", retry_backoff_base_seconds=0.0)
