"""Tests for admission dispatch to network plugins."""

import threading

import pytest

from game_network.cloudprovider.base import CloudProvider, Plugin
from game_network.cloudprovider.manager import ProviderManager
from game_network.dispatcher import (
    MUTATING_TIMEOUT_REASON,
    EventRecorder,
    Operation,
    PodMutatingHandler,
    decode_pod,
)
from game_network.exceptions import PluginError, PluginErrorType
from game_network.models.options import ProviderOptions
from tests.factories import make_pod, server_error

NETWORK_TYPE = "Test-Network"


class ScriptedPlugin(Plugin):
    """Plugin whose behaviour is set per test."""

    def __init__(self):
        super().__init__()
        self.error: Exception | None = None
        self.release = threading.Event()
        self.block = False
        self.deleted = []

    @property
    def name(self) -> str:
        return NETWORK_TYPE

    def setup(self, client, options, ctx):
        pass

    def on_pod_added(self, client, pod, ctx):
        if self.block:
            self.release.wait(5)
        if self.error is not None:
            raise self.error
        pod.metadata.annotations["mutated"] = "yes"
        return pod

    def on_pod_deleted(self, client, pod, ctx):
        if self.error is not None:
            raise self.error
        self.deleted.append(pod.metadata.name)


@pytest.fixture
def plugin():
    return ScriptedPlugin()


@pytest.fixture
def handler(fake_client, plugin):
    provider = CloudProvider("Test")
    provider.register_plugin(plugin)
    manager = ProviderManager()
    manager.register_cloud_provider(provider, ProviderOptions())
    manager.init(fake_client)
    handler = PodMutatingHandler(fake_client, manager, timeout=1.0)
    yield handler
    plugin.release.set()
    handler.close()


def test_pod_without_plugin_is_allowed_unchanged(handler):
    pod = make_pod()

    result = handler.handle(Operation.CREATE, pod)

    assert result.allowed
    assert result.pod is pod
    assert not result.mutated


def test_successful_create_returns_mutated_pod(handler):
    pod = make_pod(network_type=NETWORK_TYPE)

    result = handler.handle(Operation.CREATE, pod)

    assert result.allowed
    assert result.mutated
    assert result.pod.metadata.annotations["mutated"] == "yes"
    assert "mutated" not in pod.metadata.annotations


def test_plugin_error_allows_original_pod_and_records_event(handler, plugin, fake_client):
    plugin.error = PluginError(PluginErrorType.PORT_EXHAUSTED, "no free ports")
    pod = make_pod(network_type=NETWORK_TYPE)

    result = handler.handle(Operation.CREATE, pod)

    assert result.allowed
    assert result.error_type == PluginErrorType.PORT_EXHAUSTED
    assert result.pod == pod
    assert result.pod is not pod
    assert result.message == "Failed to create pod default/gs-0 ,because of no free ports"
    event = fake_client.events[-1]
    assert event.reason == "portExhausted"
    assert event.type == "Warning"
    assert event.involved_object.name == "gs-0"


def test_not_implemented_update_is_reported(handler, fake_client):
    pod = make_pod(network_type=NETWORK_TYPE)

    result = handler.handle(Operation.UPDATE, pod)

    assert result.error_type == PluginErrorType.NOT_IMPLEMENTED_ERROR
    assert fake_client.events[-1].reason == "notImplementedError"


def test_unexpected_exception_is_internal_error(handler, plugin):
    plugin.error = RuntimeError("boom")

    result = handler.handle(Operation.CREATE, make_pod(network_type=NETWORK_TYPE))

    assert result.allowed
    assert result.error_type == PluginErrorType.INTERNAL_ERROR
    assert "boom" in result.message


def test_delete_reports_success(handler, plugin):
    result = handler.handle(Operation.DELETE, make_pod(network_type=NETWORK_TYPE))

    assert result.allowed
    assert result.message == "delete successfully"
    assert plugin.deleted == ["gs-0"]


def test_timeout_allows_original_pod(fake_client, plugin):
    provider = CloudProvider("Test")
    provider.register_plugin(plugin)
    manager = ProviderManager()
    manager.register_cloud_provider(provider, ProviderOptions())
    manager.init(fake_client)
    handler = PodMutatingHandler(fake_client, manager, timeout=0.05)
    plugin.block = True
    pod = make_pod(network_type=NETWORK_TYPE)

    try:
        result = handler.handle(Operation.CREATE, pod)
    finally:
        plugin.release.set()
        handler.close()

    assert result.allowed
    assert result.pod is pod
    assert "timeout" in result.message
    assert fake_client.events[-1].reason == MUTATING_TIMEOUT_REASON


def test_handle_request_decodes_object(handler):
    request = {
        "operation": "CREATE",
        "object": {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": "gs-3",
                "namespace": "games",
                "annotations": {"game.kruise.io/network-type": NETWORK_TYPE},
            },
            "spec": {"containers": [{"name": "game", "image": "game:latest"}]},
        },
    }

    result = handler.handle_request(request)

    assert result.mutated
    assert result.pod_dict()["metadata"]["annotations"]["mutated"] == "yes"


def test_handle_request_uses_old_object_on_delete(handler, plugin):
    request = {
        "operation": "DELETE",
        "oldObject": {
            "metadata": {
                "name": "gs-4",
                "namespace": "games",
                "annotations": {"game.kruise.io/network-type": NETWORK_TYPE},
            },
            "spec": {"containers": [{"name": "game"}]},
        },
    }

    handler.handle_request(request)

    assert plugin.deleted == ["gs-4"]


def test_decode_pod_reads_metadata():
    pod = decode_pod({"metadata": {"name": "x", "namespace": "y"}, "spec": {"containers": []}})

    assert (pod.metadata.name, pod.metadata.namespace) == ("x", "y")


def test_event_failure_is_logged_only():
    class FailingClient:
        def create_namespaced_event(self, namespace, body):
            raise server_error()

    EventRecorder(FailingClient()).record(make_pod(), "Warning", "test", "message")
