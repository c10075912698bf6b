"""Data models for network status and provider configuration."""

from game_network.models.network import (
    NetworkAddress,
    NetworkConfParams,
    NetworkPort,
    NetworkPortRange,
    NetworkState,
    NetworkStatus,
)
from game_network.models.options import (
    AlibabaCloudOptions,
    CloudProviderConfig,
    HostPortOptions,
    KubernetesOptions,
    ManagerOptions,
    ProviderOptions,
    SLBOptions,
)

__all__ = [
    "NetworkAddress",
    "NetworkConfParams",
    "NetworkPort",
    "NetworkPortRange",
    "NetworkState",
    "NetworkStatus",
    "AlibabaCloudOptions",
    "CloudProviderConfig",
    "HostPortOptions",
    "KubernetesOptions",
    "ManagerOptions",
    "ProviderOptions",
    "SLBOptions",
]
