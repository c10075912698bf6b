"""AlibabaCloud network provider."""

from game_network.cloudprovider.alibabacloud.slb import ALIAS_SLB, SLB_NETWORK, SlbPlugin
from game_network.cloudprovider.base import CloudProvider
from game_network.models.options import ALIBABACLOUD_PROVIDER


class AlibabaCloudProvider(CloudProvider):
    """Plugins backed by AlibabaCloud load balancers."""

    NAME = ALIBABACLOUD_PROVIDER

    def __init__(self, grace_period: float = 60.0):
        super().__init__(self.NAME)
        self.register_plugin(SlbPlugin(grace_period=grace_period))


__all__ = ["ALIAS_SLB", "SLB_NETWORK", "AlibabaCloudProvider", "SlbPlugin"]
