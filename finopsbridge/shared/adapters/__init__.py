"""
Cloud provider variants.

Importing this package registers every built-in adapter with the
ProviderRegistry.
"""

from finopsbridge.shared.adapters.base import (
    BillingSnapshot,
    CloudProviderAdapter,
    ComputeInstance,
    RemediationReport,
)
from finopsbridge.shared.adapters.registry import ProviderRegistry

# Import side-effects: register provider variants.
from finopsbridge.shared.adapters import aws, azure, gcp  # noqa: F401,E402

__all__ = [
    "BillingSnapshot",
    "CloudProviderAdapter",
    "ComputeInstance",
    "ProviderRegistry",
    "RemediationReport",
]
