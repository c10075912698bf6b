"""Tests for provider registration and plugin resolution."""

import pytest

from game_network.cloudprovider.base import CloudProvider, Plugin, PluginContext
from game_network.cloudprovider.manager import ProviderManager, new_provider_manager
from game_network.exceptions import ConfigurationError, PluginError, PluginErrorType
from game_network.models.options import (
    CloudProviderConfig,
    HostPortOptions,
    KubernetesOptions,
    ProviderOptions,
)
from tests.factories import make_pod


class RecordingPlugin(Plugin):
    """Plugin remembering its calls; optionally failing init."""

    def __init__(self, name: str, fail_init: bool = False):
        super().__init__()
        self._plugin_name = name
        self.fail_init = fail_init
        self.reconciled = 0

    @property
    def name(self) -> str:
        return self._plugin_name

    def setup(self, client, options, ctx):
        if self.fail_init:
            raise PluginError(PluginErrorType.API_CALL_ERROR, "cannot list pods")

    def on_pod_added(self, client, pod, ctx):
        self.require_initialized()
        return pod

    def reconcile(self, client, ctx):
        self.reconciled += 1


class BrokenProvider(CloudProvider):
    def list_plugins(self):
        raise RuntimeError("provider offline")


def _provider(name: str, *plugins: Plugin) -> CloudProvider:
    provider = CloudProvider(name)
    for plugin in plugins:
        provider.register_plugin(plugin)
    return provider


def test_register_requires_name():
    manager = ProviderManager()

    with pytest.raises(ConfigurationError):
        manager.register_cloud_provider(CloudProvider(""), ProviderOptions())


def test_reregistration_overwrites():
    manager = ProviderManager()
    first = _provider("Test", RecordingPlugin("A"))
    second = _provider("Test", RecordingPlugin("B"))

    manager.register_cloud_provider(first, ProviderOptions())
    manager.register_cloud_provider(second, ProviderOptions())

    assert manager.providers == [second]
    assert [p.name for _, p in manager.list_plugins()] == ["B"]


def test_duplicate_plugin_name_across_providers_rejected():
    manager = ProviderManager()
    manager.register_cloud_provider(_provider("One", RecordingPlugin("Same")), ProviderOptions())

    with pytest.raises(ConfigurationError) as exc_info:
        manager.register_cloud_provider(
            _provider("Two", RecordingPlugin("Same")), ProviderOptions()
        )

    assert "already served" in exc_info.value.message


def test_duplicate_plugin_within_provider_rejected():
    provider = _provider("One", RecordingPlugin("Same"))

    with pytest.raises(ConfigurationError):
        provider.register_plugin(RecordingPlugin("Same"))


def test_pod_without_network_type_has_no_plugin():
    manager = ProviderManager()
    manager.register_cloud_provider(_provider("One", RecordingPlugin("A")), ProviderOptions())

    assert manager.find_available_plugins(make_pod()) is None


def test_find_plugin_by_network_type():
    manager = ProviderManager()
    a, b = RecordingPlugin("A"), RecordingPlugin("B")
    manager.register_cloud_provider(_provider("One", a), ProviderOptions())
    manager.register_cloud_provider(_provider("Two", b), ProviderOptions())

    assert manager.find_available_plugins(make_pod(network_type="B")) is b
    assert manager.find_available_plugins(make_pod(network_type="C")) is None


def test_failing_list_plugins_is_skipped():
    manager = ProviderManager()
    a = RecordingPlugin("A")
    manager.register_cloud_provider(BrokenProvider("Broken"), ProviderOptions())
    manager.register_cloud_provider(_provider("One", a), ProviderOptions())

    assert manager.find_available_plugins(make_pod(network_type="A")) is a


def test_failed_init_is_logged_and_plugin_stays_broken():
    manager = ProviderManager()
    good, bad = RecordingPlugin("Good"), RecordingPlugin("Bad", fail_init=True)
    manager.register_cloud_provider(_provider("One", good, bad), ProviderOptions())

    manager.init(client=None)

    assert good.initialized
    assert not bad.initialized
    assert manager.failed_plugins == {"Bad"}
    assert manager.find_available_plugins(make_pod(network_type="Bad")) is bad
    with pytest.raises(PluginError) as exc_info:
        bad.on_pod_added(None, make_pod(), PluginContext())
    assert exc_info.value.error_type == PluginErrorType.INTERNAL_ERROR


def test_later_init_clears_failure():
    manager = ProviderManager()
    plugin = RecordingPlugin("Flaky", fail_init=True)
    manager.register_cloud_provider(_provider("One", plugin), ProviderOptions())
    manager.init(client=None)

    plugin.fail_init = False
    manager.init(client=None)

    assert plugin.initialized
    assert manager.failed_plugins == set()


def test_reconcile_skips_uninitialized_plugins():
    manager = ProviderManager()
    good, bad = RecordingPlugin("Good"), RecordingPlugin("Bad", fail_init=True)
    manager.register_cloud_provider(_provider("One", good, bad), ProviderOptions())
    manager.init(client=None)

    manager.reconcile(client=None)

    assert good.reconciled == 1
    assert bad.reconciled == 0


def test_resync_thread_runs_reconcile():
    manager = ProviderManager()
    plugin = RecordingPlugin("A")
    manager.register_cloud_provider(_provider("One", plugin), ProviderOptions())
    manager.init(client=None)

    thread = manager.start_resync(client=None, interval=0.01)
    try:
        for _ in range(200):
            if plugin.reconciled >= 2:
                break
            thread.join(0.01)
    finally:
        manager.stop_resync(timeout=1)

    assert plugin.reconciled >= 2
    assert not thread.is_alive()


def test_resync_disabled_with_zero_interval():
    assert ProviderManager().start_resync(client=None, interval=0) is None


def test_new_provider_manager_registers_valid_enabled_providers():
    config = CloudProviderConfig(
        kubernetes=KubernetesOptions(
            enable=True, host_port=HostPortOptions(min_port=8000, max_port=9000)
        ),
    )

    manager = new_provider_manager(config)

    assert [p.name for p in manager.providers] == ["Kubernetes"]
    assert manager.find_configs("Kubernetes") is config.kubernetes


def test_new_provider_manager_skips_invalid_options():
    config = CloudProviderConfig(
        kubernetes=KubernetesOptions(enable=True, host_port=HostPortOptions(min_port=0)),
    )

    assert new_provider_manager(config).providers == []
