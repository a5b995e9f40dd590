"""Pytest configuration and fixtures."""

import sys
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloud_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cloud_mock import ZONE, MockCloud  # noqa: E402
from provisioner.config import Config, PollingConfig  # noqa: E402
from provisioner.diagnostics import Diagnostics  # noqa: E402
from provisioner.operator import Operator  # noqa: E402


@pytest.fixture(autouse=True)
def sleeps() -> Iterator[MagicMock]:
    """Replace time.sleep so polls run instantly; the mock records every delay."""
    with patch("time.sleep") as mock_sleep:
        yield mock_sleep


@pytest.fixture
def polling() -> PollingConfig:
    """Default budgets with small attempt counts for the slow paths."""
    return PollingConfig(
        instance_status_attempts=10,
        instance_deletion_attempts=5,
        network_connection_attempts=5,
        network_discovery_attempts=5,
        network_verify_attempts=3,
        volume_attachment_attempts=5,
        volume_detach_attempts=5,
        volume_status_attempts=5,
        volume_discovery_attempts=5,
        auxiliary_discovery_attempts=5,
    )


@pytest.fixture
def config(polling: PollingConfig) -> Config:
    return Config(api_base_url="https://api.example.test", api_token="token", polling=polling)


@pytest.fixture
def cloud() -> MockCloud:
    return MockCloud()


@pytest.fixture
def operator(cloud: MockCloud, config: Config) -> Operator:
    return Operator(cloud, config)


@pytest.fixture
def diagnostics() -> Diagnostics:
    return Diagnostics()
