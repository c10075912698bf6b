"""NodePort network plugin: one NodePort service per pod."""

from kubernetes import client as k8s
from kubernetes.client.rest import ApiException

from game_network.cloudprovider.base import Plugin, PluginContext
from game_network.cloudprovider.utils import (
    api_error,
    config_hash,
    get_node_address,
    is_not_found,
    owned_by_other_pod,
    owner_reference,
    parse_port_protocols,
    pod_key,
    service_ports,
)
from game_network.exceptions import PluginError, PluginErrorType
from game_network.logging_config import get_logger
from game_network.models.network import (
    NETWORK_CONFIG_HASH_KEY,
    PROTOCOL_TCP,
    SVC_SELECTOR_DISABLED_KEY,
    SVC_SELECTOR_KEY,
    NetworkAddress,
    NetworkConfParams,
    NetworkPort,
    NetworkState,
)
from game_network.network_manager import NetworkManager

logger = get_logger(__name__)

NODE_PORT_NETWORK = "Kubernetes-NodePort"
PORT_PROTOCOLS_KEY = "PortProtocols"


def parse_node_port_config(conf: list[NetworkConfParams]) -> list[tuple[int, str]]:
    for param in conf:
        if param.name == PORT_PROTOCOLS_KEY:
            return parse_port_protocols(param.value)
    raise PluginError(
        PluginErrorType.PARAMETER_ERROR, f"{NODE_PORT_NETWORK} needs {PORT_PROTOCOLS_KEY}"
    )


class NodePortPlugin(Plugin):
    """Exposes the pod through a NodePort service; node ports come from the API server."""

    @property
    def name(self) -> str:
        return NODE_PORT_NETWORK

    def setup(self, client, options, ctx: PluginContext) -> None:
        pass

    def on_pod_added(self, client, pod, ctx: PluginContext):
        self.require_initialized()
        nm = NetworkManager(pod, self.name)
        parse_node_port_config(nm.get_network_config())
        return nm.update_network_status(nm.new_status())

    def _build_service(self, pod, port_protocols, hash_value: str, disabled: bool) -> k8s.V1Service:
        selector_key = SVC_SELECTOR_DISABLED_KEY if disabled else SVC_SELECTOR_KEY
        return k8s.V1Service(
            api_version="v1",
            kind="Service",
            metadata=k8s.V1ObjectMeta(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                annotations={NETWORK_CONFIG_HASH_KEY: hash_value},
                owner_references=[owner_reference(pod)],
            ),
            spec=k8s.V1ServiceSpec(
                type="NodePort",
                selector={selector_key: pod.metadata.name},
                ports=service_ports(port_protocols),
            ),
        )

    def on_pod_updated(self, client, pod, ctx: PluginContext):
        self.require_initialized()
        nm = NetworkManager(pod, self.name)
        conf = nm.get_network_config()
        port_protocols = parse_node_port_config(conf)
        hash_value = config_hash([c.model_dump() for c in conf])
        disabled = nm.get_network_disabled()
        name, namespace = pod.metadata.name, pod.metadata.namespace

        ctx.check("reading the service")
        try:
            svc = client.read_namespaced_service(name, namespace)
        except ApiException as e:
            if not is_not_found(e):
                raise api_error(f"get service {pod_key(pod)}", e) from e
            body = self._build_service(pod, port_protocols, hash_value, disabled)
            ctx.check("creating the service")
            try:
                client.create_namespaced_service(namespace, body)
            except ApiException as create_err:
                raise api_error(f"create service {pod_key(pod)}", create_err) from create_err
            logger.info(f"Created NodePort service for {pod_key(pod)}")
            return nm.update_network_status(nm.new_status())

        if owned_by_other_pod(svc, pod):
            logger.info(f"Service {pod_key(pod)} still belongs to a previous pod, waiting")
            return nm.update_network_status(nm.new_status())

        annotations = svc.metadata.annotations or {}
        if annotations.get(NETWORK_CONFIG_HASH_KEY) != hash_value:
            body = self._build_service(pod, port_protocols, hash_value, disabled)
            body.metadata.resource_version = svc.metadata.resource_version
            ctx.check("updating the service")
            try:
                client.replace_namespaced_service(name, namespace, body)
            except ApiException as e:
                raise api_error(f"update service {pod_key(pod)}", e) from e
            logger.info(f"Network config of {pod_key(pod)} changed, service updated")
            return nm.update_network_status(nm.new_status(NetworkState.NOT_READY))

        selector = svc.spec.selector or {}
        if disabled == (SVC_SELECTOR_KEY in selector):
            svc.spec.selector = {
                (SVC_SELECTOR_DISABLED_KEY if disabled else SVC_SELECTOR_KEY): name
            }
            ctx.check("toggling the service selector")
            try:
                client.replace_namespaced_service(name, namespace, svc)
            except ApiException as e:
                raise api_error(f"update service {pod_key(pod)}", e) from e
            logger.info(f"Network of {pod_key(pod)} {'disabled' if disabled else 'enabled'}")
            return pod

        node_name = pod.spec.node_name
        if not node_name:
            return nm.update_network_status(nm.new_status())
        ctx.check("reading the node")
        try:
            node = client.read_node(node_name)
        except ApiException as e:
            if is_not_found(e):
                logger.warning(f"Node {node_name} of pod {pod_key(pod)} not found")
                return pod
            raise api_error(f"get node {node_name}", e) from e

        node_ip = get_node_address(node)
        pod_ip = pod.status.pod_ip if pod.status else None
        svc_ports = svc.spec.ports or []
        if not pod_ip or not node_ip or not svc_ports or any(not p.node_port for p in svc_ports):
            return nm.update_network_status(nm.new_status())

        internal_ports = []
        external_ports = []
        for port in svc_ports:
            protocol = port.protocol or PROTOCOL_TCP
            internal_ports.append(
                NetworkPort(name=port.name, protocol=protocol, port=port.target_port)
            )
            external_ports.append(
                NetworkPort(name=port.name, protocol=protocol, port=port.node_port)
            )
        status = nm.new_status(NetworkState.READY)
        status.internal_addresses = [NetworkAddress(ip=pod_ip, ports=internal_ports)]
        status.external_addresses = [NetworkAddress(ip=node_ip, ports=external_ports)]
        return nm.update_network_status(status)

    def on_pod_deleted(self, client, pod, ctx: PluginContext) -> None:
        # The service is garbage collected through its owner reference
        self.require_initialized()
