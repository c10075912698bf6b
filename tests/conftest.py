"""Pytest configuration and shared fixtures."""

import pytest
from hypothesis import Verbosity, settings

from game_network.cloudprovider.base import PluginContext
from game_network.models.options import (
    AlibabaCloudOptions,
    HostPortOptions,
    KubernetesOptions,
    SLBOptions,
)
from tests.factories import FakeCoreV1Api, make_node

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


@pytest.fixture
def fake_client():
    """In-memory CoreV1Api with one node."""
    api = FakeCoreV1Api()
    api.add_node(make_node("node-a", [("InternalIP", "10.0.0.1"), ("ExternalIP", "47.0.0.1")]))
    return api


@pytest.fixture
def ctx():
    return PluginContext()


@pytest.fixture
def kubernetes_options():
    return KubernetesOptions(enable=True, host_port=HostPortOptions(min_port=8000, max_port=8009))


@pytest.fixture
def alibaba_options():
    return AlibabaCloudOptions(
        enable=True, slb=SLBOptions(min_port=500, max_port=510, block_ports=[505])
    )


@pytest.fixture
def sample_config_toml():
    """Provider config enabling both providers."""
    return """
[manager]
mutating_timeout = 5.0
resync_interval = 30

[kubernetes]
enable = true
[kubernetes.hostPort]
min_port = 8000
max_port = 9000

[alibabacloud]
enable = true
[alibabacloud.slb]
min_port = 500
max_port = 600
block_ports = [593]
"""
