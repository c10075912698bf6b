"""Cloud provider plugin framework."""

from game_network.cloudprovider.base import CloudProvider, Plugin, PluginContext
from game_network.cloudprovider.manager import ProviderManager, new_provider_manager

__all__ = [
    "CloudProvider",
    "Plugin",
    "PluginContext",
    "ProviderManager",
    "new_provider_manager",
]
