"""Plugin and cloud provider contracts."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from game_network.exceptions import ConfigurationError, PluginError, PluginErrorType
from game_network.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class PluginContext:
    """Per-call context handed to plugins.

    ``deadline`` is a ``time.monotonic()`` value after which the caller has
    stopped waiting. Plugins check it between external API calls.
    """

    deadline: float | None = None

    @classmethod
    def with_timeout(cls, seconds: float | None) -> "PluginContext":
        if seconds is None:
            return cls()
        return cls(deadline=time.monotonic() + seconds)

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self, stage: str) -> None:
        """Raise if the deadline passed before ``stage``."""
        if self.expired():
            raise PluginError(PluginErrorType.API_CALL_ERROR, f"Deadline exceeded before {stage}")


class Plugin(ABC):
    """A network plugin serving one network type.

    Lifecycle calls raise PluginError on failure and never return a partially
    mutated pod.
    """

    def __init__(self):
        self._initialized = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Network type served, matched against the pod's network-type annotation."""

    @property
    def alias(self) -> str:
        return ""

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self, client, options, ctx: PluginContext) -> None:
        """Validate options and seed internal state from the cluster."""
        self._initialized = False
        self.setup(client, options, ctx)
        self._initialized = True
        logger.info(f"Plugin {self.name} initialized")

    @abstractmethod
    def setup(self, client, options, ctx: PluginContext) -> None:
        """Plugin specific part of init."""

    def require_initialized(self) -> None:
        if not self._initialized:
            raise PluginError(
                PluginErrorType.INTERNAL_ERROR,
                f"Plugin {self.name} is not initialized",
                "Check the controller logs for the plugin init failure",
            )

    @abstractmethod
    def on_pod_added(self, client, pod, ctx: PluginContext):
        """Handle pod creation and return the mutated pod."""

    def on_pod_updated(self, client, pod, ctx: PluginContext):
        """Handle pod update and return the mutated pod."""
        raise PluginError(
            PluginErrorType.NOT_IMPLEMENTED_ERROR, f"{self.name} does not handle pod updates"
        )

    def on_pod_deleted(self, client, pod, ctx: PluginContext) -> None:
        """Handle pod deletion."""
        raise PluginError(
            PluginErrorType.NOT_IMPLEMENTED_ERROR, f"{self.name} does not handle pod deletion"
        )

    def reconcile(self, client, ctx: PluginContext) -> None:
        """Rebuild cached allocations from cluster state. No-op by default."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class CloudProvider:
    """A family of plugins sharing one configuration section."""

    def __init__(self, name: str):
        self._name = name
        self._plugins: dict[str, Plugin] = {}

    @property
    def name(self) -> str:
        return self._name

    def register_plugin(self, plugin: Plugin) -> None:
        if not plugin.name:
            raise ConfigurationError(f"Provider {self.name} got a plugin without a name")
        if plugin.name in self._plugins:
            raise ConfigurationError(f"Plugin {plugin.name} registered twice in {self.name}")
        self._plugins[plugin.name] = plugin

    def list_plugins(self) -> list[Plugin]:
        return list(self._plugins.values())
