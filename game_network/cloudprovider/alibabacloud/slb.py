"""AlibabaCloud SLB network plugin.

Pods share the listeners of a set of SLB instances. Each pod gets a
LoadBalancer service bound to one SLB, with listener ports taken from the
configured pool of that SLB.
"""

from typing import Literal

from kubernetes import client as k8s
from kubernetes.client.rest import ApiException
from pydantic import BaseModel, Field, ValidationError, field_validator

from game_network.allocation import AllocationCache, Owner
from game_network.cloudprovider.base import Plugin, PluginContext
from game_network.cloudprovider.utils import (
    api_error,
    config_hash,
    is_not_found,
    owned_by_other_pod,
    owner_reference,
    parse_port_protocols,
    pod_key,
    pod_owner,
    service_ports,
)
from game_network.exceptions import PluginError, PluginErrorType
from game_network.logging_config import get_logger
from game_network.models.network import (
    NETWORK_CONFIG_HASH_KEY,
    PROTOCOL_TCP,
    SVC_SELECTOR_KEY,
    NetworkAddress,
    NetworkConfParams,
    NetworkPort,
    NetworkState,
)
from game_network.models.options import AlibabaCloudOptions
from game_network.network_manager import NetworkManager

logger = get_logger(__name__)

SLB_NETWORK = "AlibabaCloud-SLB"
ALIAS_SLB = "LB-Network"

SLB_IDS_KEY = "SlbIds"
PORT_PROTOCOLS_KEY = "PortProtocols"
EXTERNAL_TRAFFIC_POLICY_KEY = "ExternalTrafficPolicyType"

SLB_ID_LABEL = "service.k8s.alibaba/loadbalancer-id"
_ANNOTATION_PREFIX = "service.beta.kubernetes.io/alibaba-cloud-loadbalancer-"
SLB_ID_ANNOTATION = _ANNOTATION_PREFIX + "id"
SLB_LISTENER_OVERRIDE_ANNOTATION = _ANNOTATION_PREFIX + "force-override-listeners"

# network-conf name -> (HealthCheck field, service annotation suffix)
HEALTH_CHECK_KEYS = {
    "LBHealthCheckSwitch": ("switch", "health-check-switch"),
    "LBHealthCheckFlag": ("flag", "health-check-flag"),
    "LBHealthCheckType": ("type", "health-check-type"),
    "LBHealthCheckConnectTimeout": ("connect_timeout", "health-check-connect-timeout"),
    "LBHealthCheckInterval": ("interval", "health-check-interval"),
    "LBHealthyThreshold": ("healthy_threshold", "healthy-threshold"),
    "LBUnhealthyThreshold": ("unhealthy_threshold", "unhealthy-threshold"),
    "LBHealthCheckUri": ("uri", "health-check-uri"),
    "LBHealthCheckDomain": ("domain", "health-check-domain"),
    "LBHealthCheckMethod": ("method", "health-check-method"),
}
_HTTP_ONLY = {"flag", "uri", "domain", "method"}


class HealthCheck(BaseModel):
    """Listener health check settings."""

    switch: Literal["on", "off"] = "on"
    flag: Literal["on", "off"] = "off"
    type: Literal["tcp", "http"] = "tcp"
    connect_timeout: int = Field(default=5, ge=1, le=300)
    interval: int = Field(default=10, ge=1, le=50)
    healthy_threshold: int = Field(default=2, ge=2, le=10)
    unhealthy_threshold: int = Field(default=2, ge=2, le=10)
    uri: str = ""
    domain: str = ""
    method: Literal["get", "head"] = "get"

    @field_validator("switch", "flag", "type", "method", mode="before")
    @classmethod
    def lower_case(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("uri")
    @classmethod
    def validate_uri(cls, v: str) -> str:
        """Validate the URI is an absolute path."""
        if v and not v.startswith("/"):
            raise ValueError(f"uri must start with '/', got '{v}'")
        return v

    def annotations(self) -> dict[str, str]:
        if self.switch == "off":
            return {_ANNOTATION_PREFIX + "health-check-switch": "off"}
        result = {}
        for field, suffix in HEALTH_CHECK_KEYS.values():
            if field in _HTTP_ONLY and self.type != "http":
                continue
            value = getattr(self, field)
            if value != "":
                result[_ANNOTATION_PREFIX + suffix] = str(value)
        return result


class SlbConfig(BaseModel):
    """Parsed network-conf of an SLB pod."""

    lb_ids: list[str]
    port_protocols: list[tuple[int, str]]
    external_traffic_policy: Literal["Cluster", "Local"] = "Cluster"
    health_check: HealthCheck = Field(default_factory=HealthCheck)
    conf_hash: str = ""

    @field_validator("lb_ids")
    @classmethod
    def validate_lb_ids(cls, v: list[str]) -> list[str]:
        """Validate at least one SLB id is given."""
        if not v:
            raise ValueError(f"{SLB_IDS_KEY} cannot be empty")
        return v

    @field_validator("port_protocols")
    @classmethod
    def validate_ports(cls, v: list[tuple[int, str]]) -> list[tuple[int, str]]:
        """Validate at least one port is requested."""
        if not v:
            raise ValueError(f"{PORT_PROTOCOLS_KEY} cannot be empty")
        return v


def parse_slb_config(conf: list[NetworkConfParams]) -> SlbConfig:
    """Build the SLB config from network-conf entries.

    Raises:
        PluginError: ParameterError for missing or out of range values
    """
    data = {"lb_ids": [], "port_protocols": []}
    health = {}
    for param in conf:
        if param.name == SLB_IDS_KEY:
            data["lb_ids"] = [i.strip() for i in param.value.split(",") if i.strip()]
        elif param.name == PORT_PROTOCOLS_KEY:
            data["port_protocols"] = parse_port_protocols(param.value)
        elif param.name == EXTERNAL_TRAFFIC_POLICY_KEY:
            data["external_traffic_policy"] = param.value.strip()
        elif param.name in HEALTH_CHECK_KEYS:
            health[HEALTH_CHECK_KEYS[param.name][0]] = param.value

    try:
        data["health_check"] = HealthCheck.model_validate(health)
        data["conf_hash"] = config_hash([c.model_dump() for c in conf])
        return SlbConfig.model_validate(data)
    except ValidationError as e:
        raise PluginError(
            PluginErrorType.PARAMETER_ERROR, f"Invalid {SLB_NETWORK} network config", str(e)
        ) from e


class SlbPlugin(Plugin):
    """Shares SLB listeners between pods, one LoadBalancer service per pod."""

    def __init__(self, grace_period: float = 60.0):
        super().__init__()
        self.grace_period = grace_period
        self.cache: AllocationCache | None = None

    @property
    def name(self) -> str:
        return SLB_NETWORK

    @property
    def alias(self) -> str:
        return ALIAS_SLB

    def setup(self, client, options, ctx: PluginContext) -> None:
        if not isinstance(options, AlibabaCloudOptions):
            raise PluginError(
                PluginErrorType.PARAMETER_ERROR, f"{self.name} needs AlibabaCloud options"
            )
        if not options.valid():
            raise PluginError(
                PluginErrorType.PARAMETER_ERROR,
                f"Invalid SLB options for {self.name}",
                "; ".join(options.problems()),
            )
        slb = options.slb
        self.cache = AllocationCache(
            slb.min_port,
            slb.max_port,
            blocked=slb.block_ports,
            name=self.name,
            grace_period=self.grace_period,
        )
        self._rebuild(client, grace=0)

    def reconcile(self, client, ctx: PluginContext) -> None:
        self.require_initialized()
        self._rebuild(client)

    def _rebuild(self, client, grace: float | None = None) -> None:
        """Seed listener usage from services bound to an SLB."""
        try:
            services = client.list_service_for_all_namespaces()
        except ApiException as e:
            raise api_error("list services", e) from e

        observed: dict[str, list[tuple[Owner, list[int]]]] = {}
        for svc in services.items:
            lb_id = _service_lb_id(svc)
            if not lb_id:
                continue
            ports = [p.port for p in svc.spec.ports or []]
            observed.setdefault(lb_id, []).append((_service_owner(svc), ports))

        for key in set(observed) | set(self.cache.keys()):
            self.cache.reconcile(key, observed.get(key, []), grace)
        logger.info(f"{self.name} cache rebuilt for SLBs {sorted(observed)}")

    def _reserving(self, sc: SlbConfig, owner: Owner):
        """Listeners for ``sc``; the previous ones stay held until the block succeeds."""
        return self.cache.reserving(sc.lb_ids, len(sc.port_protocols), owner)

    def _adopt(self, owner: Owner, lb_id: str, ports: list[int]) -> None:
        record = self.cache.lookup(owner.key)
        if record is not None and record.key != lb_id:
            self.cache.release_owner(owner, force=True)
        self.cache.claim(lb_id, ports, owner)

    def _build_service(self, pod, sc: SlbConfig, lb_id: str, ports: list[int], disabled: bool):
        annotations = {
            SLB_LISTENER_OVERRIDE_ANNOTATION: "true",
            SLB_ID_ANNOTATION: lb_id,
            NETWORK_CONFIG_HASH_KEY: sc.conf_hash,
        }
        annotations.update(sc.health_check.annotations())
        return k8s.V1Service(
            api_version="v1",
            kind="Service",
            metadata=k8s.V1ObjectMeta(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                annotations=annotations,
                owner_references=[owner_reference(pod)],
            ),
            spec=k8s.V1ServiceSpec(
                type="ClusterIP" if disabled else "LoadBalancer",
                external_traffic_policy=None if disabled else sc.external_traffic_policy,
                selector={SVC_SELECTOR_KEY: pod.metadata.name},
                ports=service_ports(sc.port_protocols, external=ports),
            ),
        )

    def on_pod_added(self, client, pod, ctx: PluginContext):
        self.require_initialized()
        nm = NetworkManager(pod, self.name)
        sc = parse_slb_config(nm.get_network_config())
        owner = pod_owner(pod)
        lb_id, ports = self.cache.allocate_any(sc.lb_ids, len(sc.port_protocols), owner)
        logger.info(f"Allocated SLB {lb_id} ports {ports} to {owner.key}")
        return nm.update_network_status(nm.new_status())

    def on_pod_updated(self, client, pod, ctx: PluginContext):
        self.require_initialized()
        nm = NetworkManager(pod, self.name)
        sc = parse_slb_config(nm.get_network_config())
        disabled = nm.get_network_disabled()
        owner = pod_owner(pod)
        name, namespace = pod.metadata.name, pod.metadata.namespace

        ctx.check("reading the service")
        try:
            svc = client.read_namespaced_service(name, namespace)
        except ApiException as e:
            if not is_not_found(e):
                raise api_error(f"get service {pod_key(pod)}", e) from e
            with self._reserving(sc, owner) as reservation:
                lb_id, ports = reservation.key, list(reservation.units)
                body = self._build_service(pod, sc, lb_id, ports, disabled)
                ctx.check("creating the service")
                try:
                    client.create_namespaced_service(namespace, body)
                except ApiException as create_err:
                    raise api_error(f"create service {pod_key(pod)}", create_err) from create_err
            logger.info(f"Created SLB service for {owner.key} on {lb_id} ports {ports}")
            return nm.update_network_status(nm.new_status())

        if owned_by_other_pod(svc, pod):
            logger.info(f"Service {owner.key} still belongs to a previous pod, waiting")
            return nm.update_network_status(nm.new_status())

        annotations = svc.metadata.annotations or {}
        current_lb = annotations.get(SLB_ID_ANNOTATION)
        if current_lb:
            self._adopt(owner, current_lb, [p.port for p in svc.spec.ports or []])

        if annotations.get(NETWORK_CONFIG_HASH_KEY) != sc.conf_hash:
            with self._reserving(sc, owner) as reservation:
                lb_id, ports = reservation.key, list(reservation.units)
                body = self._build_service(pod, sc, lb_id, ports, disabled)
                body.metadata.resource_version = svc.metadata.resource_version
                ctx.check("updating the service")
                try:
                    client.replace_namespaced_service(name, namespace, body)
                except ApiException as e:
                    raise api_error(f"update service {pod_key(pod)}", e) from e
            logger.info(f"Network config of {owner.key} changed, service moved to {lb_id} {ports}")
            return nm.update_network_status(nm.new_status(NetworkState.NOT_READY))

        desired_type = "ClusterIP" if disabled else "LoadBalancer"
        if svc.spec.type != desired_type:
            svc.spec.type = desired_type
            svc.spec.external_traffic_policy = None if disabled else sc.external_traffic_policy
            if disabled:
                for port in svc.spec.ports or []:
                    port.node_port = None
            ctx.check("toggling the service type")
            try:
                client.replace_namespaced_service(name, namespace, svc)
            except ApiException as e:
                raise api_error(f"update service {pod_key(pod)}", e) from e
            logger.info(f"Network of {owner.key} {'disabled' if disabled else 'enabled'}")
            return pod

        ingress = None
        if svc.status and svc.status.load_balancer:
            ingress = svc.status.load_balancer.ingress
        pod_ip = pod.status.pod_ip if pod.status else None
        if not ingress or not pod_ip:
            # Losing the ingress of a Ready service marks the pod NotReady
            return nm.update_network_status(nm.new_status(), resource_lost=not ingress)

        internal_ports = []
        external_ports = []
        for port in svc.spec.ports or []:
            protocol = port.protocol or PROTOCOL_TCP
            internal_ports.append(
                NetworkPort(name=port.name, protocol=protocol, port=port.target_port)
            )
            external_ports.append(NetworkPort(name=port.name, protocol=protocol, port=port.port))
        status = nm.new_status(NetworkState.READY)
        status.internal_addresses = [NetworkAddress(ip=pod_ip, ports=internal_ports)]
        status.external_addresses = [
            NetworkAddress(ip=i.ip or i.hostname or "", ports=external_ports) for i in ingress
        ]
        return nm.update_network_status(status)

    def on_pod_deleted(self, client, pod, ctx: PluginContext) -> None:
        self.require_initialized()
        self.cache.release_owner(pod_owner(pod))


def _service_lb_id(svc) -> str:
    annotations = svc.metadata.annotations or {}
    labels = svc.metadata.labels or {}
    return annotations.get(SLB_ID_ANNOTATION) or labels.get(SLB_ID_LABEL, "")


def _service_owner(svc) -> Owner:
    namespace = svc.metadata.namespace
    for ref in svc.metadata.owner_references or []:
        if ref.kind == "Pod":
            return Owner(f"{namespace}/{ref.name}", ref.uid or "")
    return Owner(f"{namespace}/{svc.metadata.name}")
