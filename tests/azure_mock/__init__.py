"""Azure Compute mock for scale set reconciliation tests.

Provides an in-memory implementation of the scale set client boundary so
reconcile passes can be tested without Azure connectivity.

Key Features:
- In-memory scale sets with instances grown from capacity
- Long running operations that stay "not done" until released
- Recording of every call, mutating calls separately
- Error injection per client method
- Managed Identity simulation

Usage:
    from azure_mock import MockScaleSetClient, make_catalog, make_spec

    client = MockScaleSetClient(auto_complete=False)
    service = ScaleSetService(client, make_catalog(), ...)
    service.reconcile(FleetScope(make_spec()))

    assert client.mutating_calls == ["create_or_update_async"]
"""

from .credential import MockManagedIdentityCredential, create_mock_credential
from .fleets import (
    DEFAULT_SKU_NAME,
    SUBSCRIPTION_ID,
    MockBootstrapDataSource,
    fleet_spec_data,
    make_catalog,
    make_sku,
    make_spec,
)
from .scalesets import MockCall, MockScaleSet, MockScaleSetClient, instance_resource_id

__all__ = [
    "DEFAULT_SKU_NAME",
    "SUBSCRIPTION_ID",
    "MockBootstrapDataSource",
    "MockCall",
    "MockManagedIdentityCredential",
    "MockScaleSet",
    "MockScaleSetClient",
    "create_mock_credential",
    "fleet_spec_data",
    "instance_resource_id",
    "make_catalog",
    "make_sku",
    "make_spec",
]
