"""Unit tests for CLI commands."""

import json
from unittest.mock import patch

from kubernetes import client as k8s
from typer.testing import CliRunner

from game_network.cli import app
from game_network.models.network import NETWORK_STATUS_KEY
from tests.factories import FakeCoreV1Api, make_pod

runner = CliRunner()


def _write(tmp_path, text, name="config.toml"):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


def test_version():
    """Test that version prints the package version."""
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "game-network version 0.1.0" in result.stdout


def test_check_config_valid(tmp_path, sample_config_toml):
    """Test that a valid config passes."""
    result = runner.invoke(app, ["check-config", "-c", _write(tmp_path, sample_config_toml)])
    assert result.exit_code == 0
    assert "Kubernetes" in result.stdout
    assert "AlibabaCloud" in result.stdout


def test_check_config_invalid_enabled_provider(tmp_path):
    """Test that an enabled provider with a bad range fails the check."""
    path = _write(
        tmp_path,
        "[kubernetes]\nenable = true\n[kubernetes.hostPort]\nmin_port = 9000\nmax_port = 8000\n",
    )
    result = runner.invoke(app, ["check-config", "-c", path])
    assert result.exit_code == 1
    assert "will not be registered" in result.stdout


def test_check_config_missing_file(tmp_path):
    """Test that a missing config file fails gracefully."""
    result = runner.invoke(app, ["check-config", "-c", str(tmp_path / "missing.toml")])
    assert result.exit_code == 1
    assert "Configuration Error" in result.stdout


def test_plugins_lists_enabled_providers(tmp_path, sample_config_toml):
    """Test that plugins lists the network types of enabled providers."""
    result = runner.invoke(app, ["plugins", "-c", _write(tmp_path, sample_config_toml)])
    assert result.exit_code == 0
    assert "Kubernetes-HostPort" in result.stdout
    assert "Kubernetes-NodePort" in result.stdout
    assert "AlibabaCloud-SLB" in result.stdout


def test_plugins_none_enabled(tmp_path):
    """Test that plugins reports when nothing is enabled."""
    path = _write(tmp_path, "[kubernetes]\nenable = false\n")
    result = runner.invoke(app, ["plugins", "-c", path])
    assert result.exit_code == 0
    assert "No cloud provider is enabled" in result.stdout


def test_status_no_kubeconfig():
    """Test that status fails gracefully without kubeconfig."""
    with patch("kubernetes.config.load_kube_config", side_effect=Exception("no config")):
        result = runner.invoke(app, ["status"])
    assert result.exit_code == 1
    assert "kubeconfig" in result.stdout.lower()


def test_status_lists_network_pods():
    """Test that status shows only pods with a network type."""
    ready = make_pod(
        name="gs-0",
        network_type="Kubernetes-HostPort",
        annotations={
            NETWORK_STATUS_KEY: '{"networkType": "Kubernetes-HostPort", '
            '"currentNetworkState": "Ready", "desiredNetworkState": "Ready"}'
        },
    )
    plain = make_pod(name="web-0")
    with patch("kubernetes.config.load_kube_config"), patch(
        "kubernetes.client.CoreV1Api"
    ) as api_cls:
        api_cls.return_value.list_pod_for_all_namespaces.return_value = k8s.V1PodList(
            items=[ready, plain]
        )
        result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "gs-0" in result.stdout
    assert "web-0" not in result.stdout
    assert "Total pods:" in result.stdout


HOSTPORT_CONFIG = """
[manager]
resync_interval = 30

[kubernetes]
enable = true
[kubernetes.hostPort]
min_port = 8000
max_port = 8009
"""


def _review(tmp_path, operation="CREATE", **pod_kwargs):
    pod = make_pod(
        uid=None,
        network_type="Kubernetes-HostPort",
        conf=[{"name": "ContainerPorts", "value": "game:7777/UDP"}],
        **pod_kwargs,
    )
    review = {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": "req-1",
            "operation": operation,
            "object": k8s.ApiClient().sanitize_for_serialization(pod),
        },
    }
    return _write(tmp_path, json.dumps(review), name="review.json")


def test_admit_allocates_host_port(tmp_path):
    """Test that admit runs a CREATE request through the HostPort plugin."""
    config_path = _write(tmp_path, HOSTPORT_CONFIG)
    fake = FakeCoreV1Api()
    with patch("kubernetes.config.load_kube_config"), patch(
        "kubernetes.client.CoreV1Api", return_value=fake
    ):
        result = runner.invoke(app, ["admit", "-r", _review(tmp_path), "-c", config_path])

    assert result.exit_code == 0
    assert '"allowed": true' in result.stdout
    assert '"mutated": true' in result.stdout
    assert '"hostPort": 8000' in result.stdout
    assert "list_pod_for_all_namespaces" in fake.calls


def test_admit_pod_without_network_is_untouched(tmp_path):
    """Test that admit allows pods no plugin serves without mutating them."""
    review = _write(
        tmp_path,
        json.dumps({"request": {"operation": "CREATE", "object": {"metadata": {"name": "web"}}}}),
        name="review.json",
    )
    with patch("kubernetes.config.load_kube_config"), patch(
        "kubernetes.client.CoreV1Api", return_value=FakeCoreV1Api()
    ):
        config_path = _write(tmp_path, HOSTPORT_CONFIG)
        result = runner.invoke(app, ["admit", "-r", review, "-c", config_path])

    assert result.exit_code == 0
    assert '"mutated": false' in result.stdout
    assert "no network plugin" in result.stdout


def test_admit_missing_review_file(tmp_path):
    """Test that admit fails gracefully when the review file is missing."""
    result = runner.invoke(app, ["admit", "-r", str(tmp_path / "missing.json")])
    assert result.exit_code == 1
    assert "Review file not found" in result.stdout


def test_admit_invalid_review(tmp_path):
    """Test that admit rejects a review without an operation."""
    review = _write(tmp_path, json.dumps({"request": {}}), name="review.json")
    result = runner.invoke(app, ["admit", "-r", review])
    assert result.exit_code == 1
    assert "Invalid admission review" in result.stdout


def test_admit_no_kubeconfig(tmp_path):
    """Test that admit fails gracefully without kubeconfig."""
    config_path = _write(tmp_path, HOSTPORT_CONFIG)
    with patch("kubernetes.config.load_kube_config", side_effect=Exception("no config")):
        result = runner.invoke(app, ["admit", "-r", _review(tmp_path), "-c", config_path])
    assert result.exit_code == 1
    assert "kubeconfig" in result.stdout.lower()
