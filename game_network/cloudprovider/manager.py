"""Registry of cloud providers and resolution of pod network plugins."""

import threading

from game_network.cloudprovider.base import CloudProvider, Plugin, PluginContext
from game_network.exceptions import ConfigurationError
from game_network.logging_config import get_logger
from game_network.models.network import NETWORK_TYPE_KEY
from game_network.models.options import CloudProviderConfig, ProviderOptions

logger = get_logger(__name__)


class ProviderManager:
    """Holds the configured cloud providers and their options.

    Built once at startup, then shared read-only by the admission dispatcher.
    """

    def __init__(self, grace_period: float = 60.0):
        self.grace_period = grace_period
        self._providers: dict[str, CloudProvider] = {}
        self._options: dict[str, ProviderOptions] = {}
        self._failed: set[str] = set()
        self._resync_stop: threading.Event | None = None
        self._resync_thread: threading.Thread | None = None

    @property
    def providers(self) -> list[CloudProvider]:
        return list(self._providers.values())

    @property
    def failed_plugins(self) -> set[str]:
        """Names of plugins whose last init failed."""
        return set(self._failed)

    def register_cloud_provider(self, provider: CloudProvider, options: ProviderOptions) -> None:
        """Register a provider, replacing any provider of the same name.

        Raises:
            ConfigurationError: If the provider has no name or serves a plugin
                name already served by another provider
        """
        if provider is None or not provider.name:
            raise ConfigurationError("Cloud provider name cannot be empty")

        taken = {
            plugin.name: other.name
            for other in self._providers.values()
            if other.name != provider.name
            for plugin in self._safe_list(other)
        }
        for plugin in self._safe_list(provider):
            if plugin.name in taken:
                raise ConfigurationError(
                    f"Plugin {plugin.name} of provider {provider.name} is already "
                    f"served by provider {taken[plugin.name]}"
                )

        if provider.name in self._providers:
            logger.warning(f"Cloud provider {provider.name} registered again, replacing it")
        self._providers[provider.name] = provider
        self._options[provider.name] = options
        logger.info(f"Registered cloud provider {provider.name}")

    def find_configs(self, provider_name: str) -> ProviderOptions | None:
        return self._options.get(provider_name)

    def _safe_list(self, provider: CloudProvider) -> list[Plugin]:
        try:
            return provider.list_plugins()
        except Exception as e:
            logger.error(f"Cloud provider {provider.name} failed to list plugins: {e}")
            return []

    def list_plugins(self) -> list[tuple[CloudProvider, Plugin]]:
        return [(p, plugin) for p in self._providers.values() for plugin in self._safe_list(p)]

    def find_available_plugins(self, pod) -> Plugin | None:
        """Return the plugin serving the pod's network type.

        Pods without a network-type annotation have no plugin; that is not an
        error.
        """
        annotations = pod.metadata.annotations or {}
        network_type = annotations.get(NETWORK_TYPE_KEY)
        if not network_type:
            return None

        for provider, plugin in self.list_plugins():
            if plugin.name == network_type:
                logger.debug(f"Pod {pod.metadata.name} uses {plugin.name} from {provider.name}")
                return plugin

        logger.warning(
            f"No plugin for network type {network_type} of pod "
            f"{pod.metadata.namespace}/{pod.metadata.name}"
        )
        return None

    def init(self, client) -> None:
        """Initialize every plugin of every registered provider.

        A plugin whose init fails is logged and left registered; its lifecycle
        calls fail until a later init succeeds.
        """
        for provider in self._providers.values():
            options = self._options.get(provider.name)
            for plugin in self._safe_list(provider):
                try:
                    plugin.init(client, options, PluginContext())
                    self._failed.discard(plugin.name)
                except Exception as e:
                    self._failed.add(plugin.name)
                    logger.error(f"Failed to init plugin {plugin.name}: {e}")

    def reconcile(self, client) -> None:
        """Ask every initialized plugin to rebuild its allocations."""
        for _, plugin in self.list_plugins():
            if not plugin.initialized:
                continue
            try:
                plugin.reconcile(client, PluginContext())
            except Exception as e:
                logger.error(f"Failed to reconcile plugin {plugin.name}: {e}")

    def start_resync(self, client, interval: float) -> threading.Thread | None:
        """Reconcile periodically on a daemon thread. ``interval <= 0`` disables it."""
        if interval <= 0:
            return None
        if self._resync_thread is not None and self._resync_thread.is_alive():
            return self._resync_thread

        stop = threading.Event()

        def _loop():
            while not stop.wait(interval):
                self.reconcile(client)

        self._resync_stop = stop
        self._resync_thread = threading.Thread(target=_loop, name="plugin-resync", daemon=True)
        self._resync_thread.start()
        logger.info(f"Started plugin resync every {interval}s")
        return self._resync_thread

    def stop_resync(self, timeout: float | None = None) -> None:
        if self._resync_stop is not None:
            self._resync_stop.set()
        if self._resync_thread is not None:
            self._resync_thread.join(timeout)
        self._resync_stop = None
        self._resync_thread = None


def new_provider_manager(config: CloudProviderConfig) -> ProviderManager:
    """Build a manager registering each valid and enabled provider of ``config``."""
    from game_network.cloudprovider.alibabacloud import AlibabaCloudProvider
    from game_network.cloudprovider.kubernetes import KubernetesProvider

    factories = {
        KubernetesProvider.NAME: KubernetesProvider,
        AlibabaCloudProvider.NAME: AlibabaCloudProvider,
    }
    grace = config.manager.allocation_grace_period
    manager = ProviderManager(grace_period=grace)

    for name, options in config.provider_options().items():
        if not options.enabled():
            logger.info(f"Cloud provider {name} is disabled")
            continue
        problems = options.problems()
        if problems:
            logger.error(f"Cloud provider {name} has invalid options: {'; '.join(problems)}")
            continue
        manager.register_cloud_provider(factories[name](grace_period=grace), options)

    return manager
