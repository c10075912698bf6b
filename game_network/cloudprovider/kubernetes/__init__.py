"""Built-in Kubernetes network provider."""

from game_network.cloudprovider.base import CloudProvider
from game_network.cloudprovider.kubernetes.hostport import HOST_PORT_NETWORK, HostPortPlugin
from game_network.cloudprovider.kubernetes.nodeport import NODE_PORT_NETWORK, NodePortPlugin
from game_network.models.options import KUBERNETES_PROVIDER


class KubernetesProvider(CloudProvider):
    """Plugins relying only on core Kubernetes objects."""

    NAME = KUBERNETES_PROVIDER

    def __init__(self, grace_period: float = 60.0):
        super().__init__(self.NAME)
        self.register_plugin(HostPortPlugin(grace_period=grace_period))
        self.register_plugin(NodePortPlugin())


__all__ = [
    "HOST_PORT_NETWORK",
    "NODE_PORT_NETWORK",
    "HostPortPlugin",
    "KubernetesProvider",
    "NodePortPlugin",
]
