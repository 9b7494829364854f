"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import (  # noqa: E402
    SUBSCRIPTION_ID,
    MockBootstrapDataSource,
    MockScaleSetClient,
    make_catalog,
)

from vmss_operator.collaborators import DefaultImageResolver  # noqa: E402
from vmss_operator.scalesets import ScaleSetService  # noqa: E402
from vmss_operator.store import InMemoryRecordStore  # noqa: E402
from vmss_operator.synchronizer import InstanceSynchronizer  # noqa: E402


@pytest.fixture
def client() -> MockScaleSetClient:
    """Scale set client whose operations finish on the first poll."""
    return MockScaleSetClient()


@pytest.fixture
def service(client: MockScaleSetClient) -> ScaleSetService:
    """Scale set service wired against the mock client."""
    return ScaleSetService(
        client,
        make_catalog(),
        DefaultImageResolver(),
        MockBootstrapDataSource(),
        subscription_id=SUBSCRIPTION_ID,
        cluster_tags={"environment": "test"},
    )


@pytest.fixture
def records() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def synchronizer(records: InMemoryRecordStore, client: MockScaleSetClient) -> InstanceSynchronizer:
    return InstanceSynchronizer(records, client)
