"""HostPort network plugin.

Each requested port is backed by a host port allocated from the configured
range. Host ports are unique per node: pods already pinned to a node allocate
under the node name, unscheduled pods under the cluster-wide scope, which
excludes every port used on any node.
"""

import threading
from dataclasses import dataclass

from kubernetes import client as k8s
from kubernetes.client.rest import ApiException

from game_network.allocation import AllocationCache, Owner
from game_network.cloudprovider.base import Plugin, PluginContext
from game_network.cloudprovider.utils import (
    api_error,
    get_node_address,
    is_not_found,
    parse_port,
    parse_protocol,
    pod_key,
    pod_owner,
)
from game_network.exceptions import PluginError, PluginErrorType
from game_network.logging_config import get_logger
from game_network.models.network import (
    NETWORK_TYPE_KEY,
    PROTOCOL_TCP,
    PROTOCOL_TCP_UDP,
    PROTOCOL_UDP,
    NetworkAddress,
    NetworkConfParams,
    NetworkPort,
    NetworkState,
)
from game_network.models.options import KubernetesOptions
from game_network.network_manager import NetworkManager

logger = get_logger(__name__)

HOST_PORT_NETWORK = "Kubernetes-HostPort"
CONTAINER_PORTS_KEY = "ContainerPorts"
SAME_AS_HOST = "SameAsHost"
CLUSTER_SCOPE = "*"
HOSTNAME_LABEL = "kubernetes.io/hostname"


@dataclass(frozen=True)
class HostPortRequest:
    """One host port requested for a container port.

    ``container_port`` is None when it must equal the allocated host port.
    """

    container: str
    container_port: int | None
    protocol: str


def parse_container_ports(conf: list[NetworkConfParams]) -> list[HostPortRequest]:
    """Parse ``ContainerPorts`` entries of the form ``name:80/TCP,SameAsHost/UDP``."""
    requests = []
    for param in conf:
        if param.name != CONTAINER_PORTS_KEY:
            continue
        container, sep, ports = param.value.partition(":")
        if not sep or not container.strip() or not ports.strip():
            raise PluginError(
                PluginErrorType.PARAMETER_ERROR,
                f"Invalid {CONTAINER_PORTS_KEY} '{param.value}'",
                "Expected containerName:port1/protocol1,port2/protocol2",
            )
        for item in ports.split(","):
            port, _, protocol = item.strip().partition("/")
            requests.append(
                HostPortRequest(
                    container=container.strip(),
                    container_port=(
                        None if port == SAME_AS_HOST else parse_port(port, "container port")
                    ),
                    protocol=parse_protocol(protocol) if protocol else PROTOCOL_TCP,
                )
            )
    return requests


class HostPortPlugin(Plugin):
    """Exposes container ports through host ports of the pod's node."""

    def __init__(self, grace_period: float = 60.0):
        super().__init__()
        self.grace_period = grace_period
        self.cache: AllocationCache | None = None
        # Serialises scope selection so cluster-wide and node scopes never overlap
        self._scope_lock = threading.Lock()

    @property
    def name(self) -> str:
        return HOST_PORT_NETWORK

    def setup(self, client, options, ctx: PluginContext) -> None:
        if not isinstance(options, KubernetesOptions):
            raise PluginError(
                PluginErrorType.PARAMETER_ERROR, f"{self.name} needs Kubernetes options"
            )
        if not options.valid():
            raise PluginError(
                PluginErrorType.PARAMETER_ERROR,
                f"Invalid host port options for {self.name}",
                "; ".join(options.problems()),
            )
        hp = options.host_port
        self.cache = AllocationCache(
            hp.min_port, hp.max_port, name=self.name, grace_period=self.grace_period
        )
        self._rebuild(client, grace=0)

    def reconcile(self, client, ctx: PluginContext) -> None:
        self.require_initialized()
        self._rebuild(client)

    def _rebuild(self, client, grace: float | None = None) -> None:
        try:
            pods = client.list_pod_for_all_namespaces()
        except ApiException as e:
            raise api_error("list pods", e) from e

        observed: dict[str, list[tuple[Owner, list[int]]]] = {}
        for pod in pods.items:
            annotations = pod.metadata.annotations or {}
            if annotations.get(NETWORK_TYPE_KEY) != self.name:
                continue
            ports = sorted({hp for _, hp in self._host_ports(pod)})
            if not ports:
                continue
            owner = pod_owner(pod)
            record = self.cache.lookup(owner.key)
            key = record.key if record else self._scope(pod)
            observed.setdefault(key, []).append((owner, ports))

        for key in set(observed) | set(self.cache.keys()):
            self.cache.reconcile(key, observed.get(key, []), grace)
        logger.info(f"{self.name} cache rebuilt from {sum(len(v) for v in observed.values())} pods")

    def _scope(self, pod) -> str:
        spec = pod.spec
        node = spec.node_name or (spec.node_selector or {}).get(HOSTNAME_LABEL)
        return node or CLUSTER_SCOPE

    def _excluded(self, key: str) -> set[int]:
        if key == CLUSTER_SCOPE:
            return self.cache.units_in_use(k for k in self.cache.keys() if k != CLUSTER_SCOPE)
        return self.cache.used_units(CLUSTER_SCOPE)

    def _host_ports(self, pod) -> list[tuple[str, int]]:
        """Container ports of the pod backed by a host port of our range."""
        result = []
        for container in pod.spec.containers or []:
            for port in container.ports or []:
                if port.host_port and self.cache.contains(port.host_port):
                    result.append((container.name, port.host_port))
        return result

    def on_pod_added(self, client, pod, ctx: PluginContext):
        self.require_initialized()
        nm = NetworkManager(pod, self.name)
        requests = parse_container_ports(nm.get_network_config())
        containers = {c.name: c for c in pod.spec.containers or []}
        for request in requests:
            if request.container not in containers:
                raise PluginError(
                    PluginErrorType.PARAMETER_ERROR,
                    f"Container {request.container} not found in pod {pod_key(pod)}",
                )

        ctx.check("checking for an existing pod")
        try:
            client.read_namespaced_pod(pod.metadata.name, pod.metadata.namespace)
        except ApiException as e:
            if not is_not_found(e):
                raise api_error(f"get pod {pod_key(pod)}", e) from e
        else:
            raise PluginError(
                PluginErrorType.INTERNAL_ERROR,
                f"A pod named {pod_key(pod)} already exists in the cluster",
            )

        owner = pod_owner(pod)
        with self._scope_lock:
            record = self.cache.lookup(owner.key)
            key = record.key if record else self._scope(pod)
            host_ports = self.cache.allocate(key, len(requests), owner, self._excluded(key))
        logger.info(f"Allocated host ports {host_ports} to {owner.key} on {key}")

        for request, host_port in zip(requests, host_ports):
            _bind_port(containers[request.container], request, host_port)
        return nm.update_network_status(nm.new_status())

    def on_pod_updated(self, client, pod, ctx: PluginContext):
        self.require_initialized()
        nm = NetworkManager(pod, self.name)
        owner = pod_owner(pod)

        internal_ports = []
        external_ports = []
        host_ports = []
        for container in pod.spec.containers or []:
            for port in container.ports or []:
                if not port.host_port or not self.cache.contains(port.host_port):
                    continue
                name = f"{container.name}-{port.container_port}"
                protocol = port.protocol or PROTOCOL_TCP
                internal_ports.append(
                    NetworkPort(name=name, protocol=protocol, port=port.container_port)
                )
                external_ports.append(
                    NetworkPort(name=name, protocol=protocol, port=port.host_port)
                )
                host_ports.append(port.host_port)

        if host_ports:
            with self._scope_lock:
                record = self.cache.lookup(owner.key)
                key = record.key if record else self._scope(pod)
                self.cache.claim(key, host_ports, owner)

        node_name = pod.spec.node_name
        if not node_name:
            return nm.update_network_status(nm.new_status())

        ctx.check("reading the node")
        try:
            node = client.read_node(node_name)
        except ApiException as e:
            if is_not_found(e):
                logger.warning(f"Node {node_name} of pod {owner.key} not found")
                return pod
            raise api_error(f"get node {node_name}", e) from e

        node_ip = get_node_address(node)
        pod_ip = pod.status.pod_ip if pod.status else None
        if not host_ports or not pod_ip or not node_ip:
            return nm.update_network_status(nm.new_status())

        status = nm.new_status(NetworkState.READY)
        status.internal_addresses = [NetworkAddress(ip=pod_ip, ports=internal_ports)]
        status.external_addresses = [NetworkAddress(ip=node_ip, ports=external_ports)]
        return nm.update_network_status(status)

    def on_pod_deleted(self, client, pod, ctx: PluginContext) -> None:
        self.require_initialized()
        self.cache.release_owner(pod_owner(pod))


def _bind_port(container, request: HostPortRequest, host_port: int) -> None:
    """Attach ``host_port`` to the container, reusing a matching declared port."""
    container_port = host_port if request.container_port is None else request.container_port
    protocols = [request.protocol]
    if request.protocol == PROTOCOL_TCP_UDP:
        protocols = [PROTOCOL_TCP, PROTOCOL_UDP]
    if container.ports is None:
        container.ports = []
    for protocol in protocols:
        for declared in container.ports:
            declared_protocol = declared.protocol or PROTOCOL_TCP
            if declared.container_port == container_port and declared_protocol == protocol:
                declared.host_port = host_port
                break
        else:
            container.ports.append(
                k8s.V1ContainerPort(
                    container_port=container_port, host_port=host_port, protocol=protocol
                )
            )
