"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for elbv2_mock and stack_builders imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from elbv2_mock import DEFAULT_VPC_ID, MockELBV2Client  # noqa: E402
from prometheus_client import CollectorRegistry  # noqa: E402

from lbdeploy.config import Config  # noqa: E402
from lbdeploy.deployer import StackDeployer  # noqa: E402
from lbdeploy.metrics import ManagedResourceMetrics  # noqa: E402
from lbdeploy.tracking import TrackingProvider  # noqa: E402


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """A valid configuration whose stacks directory exists."""
    stacks_dir = tmp_path / "stacks"
    stacks_dir.mkdir()
    return Config(cluster_name="test-cluster", vpc_id=DEFAULT_VPC_ID, stacks_dir=stacks_dir)


@pytest.fixture
def elbv2() -> MockELBV2Client:
    return MockELBV2Client()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> ManagedResourceMetrics:
    return ManagedResourceMetrics(registry)


@pytest.fixture
def tracking(config: Config) -> TrackingProvider:
    return TrackingProvider(config.tag_prefix, config.cluster_name)


@pytest.fixture
def deployer(
    config: Config, elbv2: MockELBV2Client, metrics: ManagedResourceMetrics
) -> StackDeployer:
    return StackDeployer(config, elbv2, metrics)
