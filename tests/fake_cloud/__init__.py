"""In-memory cloud for testing the reconciler without Azure.

Key Features:
- In-memory objects with sequential provider identifiers
- Schemas with immutable attributes and forced replace ordering
- Error injection (transient or permanent, per operation and resource)
- Call log and concurrency tracking for ordering assertions

Usage:
    from fake_cloud import FakeCloudProvider, write_definitions

    cloud = FakeCloudProvider()
    cloud.fail("create", "fake_vm", error=TransientProviderError("throttled", 429), times=2)
    registry = ProviderRegistry([cloud])
"""

from .definitions import NETWORK_STACK, write_definitions
from .provider import FakeCloudProvider, FakeObject, FailureRule

__all__ = [
    "FailureRule",
    "FakeCloudProvider",
    "FakeObject",
    "NETWORK_STACK",
    "write_definitions",
]
