"""Tests for cloud provider configuration."""

import pytest

from game_network.exceptions import ConfigurationError
from game_network.models.options import (
    AlibabaCloudOptions,
    CloudProviderConfig,
    HostPortOptions,
    KubernetesOptions,
    SLBOptions,
)


def test_kubernetes_options_valid():
    options = KubernetesOptions(
        enable=True, host_port=HostPortOptions(min_port=8000, max_port=9000)
    )

    assert options.enabled()
    assert options.valid()
    assert options.problems() == []


@pytest.mark.parametrize(
    "min_port,max_port",
    [(0, 9000), (9000, 9000), (9000, 8000), (8000, 70000)],
)
def test_kubernetes_options_invalid_ranges(min_port, max_port):
    options = KubernetesOptions(host_port=HostPortOptions(min_port=min_port, max_port=max_port))

    assert not options.valid()
    assert options.problems()


def test_kubernetes_options_accept_camel_case_key():
    options = KubernetesOptions.model_validate(
        {"enable": True, "hostPort": {"min_port": 100, "max_port": 200}}
    )

    assert options.host_port.min_port == 100
    assert options.valid()


def test_disabled_by_default():
    assert not KubernetesOptions().enabled()
    assert not AlibabaCloudOptions().enabled()


def test_alibaba_options_valid():
    options = AlibabaCloudOptions(
        enable=True, slb=SLBOptions(min_port=500, max_port=600, block_ports=[593])
    )

    assert options.valid()


@pytest.mark.parametrize("block_port", [500, 600, 499, 700])
def test_alibaba_block_ports_must_be_inside_range(block_port):
    options = AlibabaCloudOptions(
        slb=SLBOptions(min_port=500, max_port=600, block_ports=[block_port])
    )

    assert not options.valid()
    assert any("block_ports" in p for p in options.problems())


def test_alibaba_listener_limit():
    """A single SLB serves fewer than 200 listeners."""
    too_wide = AlibabaCloudOptions(slb=SLBOptions(min_port=500, max_port=700))
    narrowed = AlibabaCloudOptions(slb=SLBOptions(min_port=500, max_port=700, block_ports=[600]))

    assert not too_wide.valid()
    assert narrowed.valid()


def test_alibaba_requires_positive_min_port():
    assert not AlibabaCloudOptions(slb=SLBOptions(min_port=0, max_port=100)).valid()


def test_load_toml(tmp_path, sample_config_toml):
    path = tmp_path / "config.toml"
    path.write_text(sample_config_toml)

    config = CloudProviderConfig.load(path)

    assert config.manager.mutating_timeout == 5.0
    assert config.manager.resync_interval == 30
    assert config.manager.allocation_grace_period == 60.0
    assert config.kubernetes.enabled()
    assert config.kubernetes.host_port.max_port == 9000
    assert config.alibabacloud.slb.block_ports == [593]
    assert set(config.provider_options()) == {"Kubernetes", "AlibabaCloud"}


def test_load_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "kubernetes:\n"
        "  enable: true\n"
        "  hostPort:\n"
        "    min_port: 8000\n"
        "    max_port: 8100\n"
    )

    config = CloudProviderConfig.load(path)

    assert config.kubernetes.valid()
    assert not config.alibabacloud.enabled()


def test_load_missing_file(tmp_path):
    with pytest.raises(ConfigurationError) as exc_info:
        CloudProviderConfig.load(tmp_path / "missing.toml")

    assert "not found" in str(exc_info.value)


def test_load_malformed_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[kubernetes\nenable = true")

    with pytest.raises(ConfigurationError) as exc_info:
        CloudProviderConfig.load(path)

    assert "Failed to parse" in exc_info.value.message


def test_load_rejects_bad_values(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[manager]\nmutating_timeout = -1\n")

    with pytest.raises(ConfigurationError) as exc_info:
        CloudProviderConfig.load(path)

    assert "Invalid provider config" in exc_info.value.message
    assert "mutating_timeout" in exc_info.value.details
