"""Helpers shared by the network plugins."""

import hashlib
import ipaddress
import json

from kubernetes import client as k8s
from kubernetes.client.rest import ApiException

from game_network.allocation import Owner
from game_network.exceptions import PluginError, PluginErrorType
from game_network.models.network import PROTOCOL_TCP, PROTOCOL_TCP_UDP, PROTOCOL_UDP

PROTOCOLS = (PROTOCOL_TCP, PROTOCOL_UDP, PROTOCOL_TCP_UDP)


def pod_key(pod) -> str:
    return f"{pod.metadata.namespace}/{pod.metadata.name}"


def pod_owner(pod) -> Owner:
    return Owner(pod_key(pod), pod.metadata.uid or "")


def is_not_found(err: Exception) -> bool:
    return isinstance(err, ApiException) and err.status == 404


def api_error(action: str, err: Exception) -> PluginError:
    """Wrap a failed API call."""
    reason = getattr(err, "reason", None) or str(err)
    return PluginError(PluginErrorType.API_CALL_ERROR, f"Failed to {action}: {reason}")


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def get_node_address(node) -> str:
    """Pick the address of a node that clients should connect to.

    External addresses win over internal ones; within each, DNS names win
    over plain IPs.
    """
    addresses = (node.status.addresses if node.status else None) or []
    external = ""
    internal = ""
    for kind in ("ExternalIP", "ExternalDNS"):
        for addr in addresses:
            if addr.type == kind and (kind.endswith("DNS") or _is_ip(addr.address)):
                external = addr.address
    if external:
        return external
    for kind in ("InternalIP", "InternalDNS"):
        for addr in addresses:
            if addr.type == kind and (kind.endswith("DNS") or _is_ip(addr.address)):
                internal = addr.address
    return internal


def parse_port(value: str, what: str = "port") -> int:
    try:
        port = int(value.strip())
    except ValueError as e:
        raise PluginError(PluginErrorType.PARAMETER_ERROR, f"Invalid {what} '{value}'") from e
    if not 0 < port <= 65535:
        raise PluginError(PluginErrorType.PARAMETER_ERROR, f"{what} {port} out of range 1-65535")
    return port


def parse_protocol(value: str) -> str:
    protocol = value.strip().upper()
    if protocol not in PROTOCOLS:
        raise PluginError(
            PluginErrorType.PARAMETER_ERROR,
            f"Invalid protocol '{value}'",
            f"Use one of {', '.join(PROTOCOLS)}",
        )
    return protocol


def parse_port_protocols(value: str) -> list[tuple[int, str]]:
    """Parse ``80/TCP,81/UDP,82`` into (port, protocol) pairs; TCP by default."""
    result = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        port, _, protocol = item.partition("/")
        result.append((parse_port(port), parse_protocol(protocol) if protocol else PROTOCOL_TCP))
    if not result:
        raise PluginError(PluginErrorType.PARAMETER_ERROR, f"No ports in '{value}'")
    return result


def service_ports(port_protocols: list[tuple[int, str]], external: list[int] | None = None):
    """Build service ports; TCPUDP expands into a TCP and a UDP port.

    ``external`` maps each target port to the port exposed by the service,
    defaulting to the target port itself.
    """
    ports = []
    for i, (target, protocol) in enumerate(port_protocols):
        exposed = external[i] if external else target
        protocols = [PROTOCOL_TCP, PROTOCOL_UDP] if protocol == PROTOCOL_TCP_UDP else [protocol]
        for proto in protocols:
            suffix = f"-{proto.lower()}" if protocol == PROTOCOL_TCP_UDP else ""
            ports.append(
                k8s.V1ServicePort(
                    name=f"{target}{suffix}",
                    port=exposed,
                    protocol=proto,
                    target_port=target,
                )
            )
    return ports


def config_hash(value) -> str:
    """Stable short hash of a JSON serializable value."""
    data = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(data.encode()).hexdigest()[:16]


def owner_reference(pod) -> k8s.V1OwnerReference:
    """Reference making a per-pod object garbage collected with the pod."""
    return k8s.V1OwnerReference(
        api_version=pod.api_version or "v1",
        kind=pod.kind or "Pod",
        name=pod.metadata.name,
        uid=pod.metadata.uid or "",
        controller=True,
        block_owner_deletion=True,
    )


def owned_by_other_pod(svc, pod) -> bool:
    """Whether a service belongs to a previous pod incarnation of the same name."""
    for ref in svc.metadata.owner_references or []:
        if ref.kind == "Pod" and pod.metadata.uid and ref.uid != pod.metadata.uid:
            return True
    return False
