"""Data models for pod network configuration and status."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

NETWORK_TYPE_KEY = "game.kruise.io/network-type"
NETWORK_CONF_KEY = "game.kruise.io/network-conf"
NETWORK_STATUS_KEY = "game.kruise.io/network-status"
NETWORK_DISABLED_KEY = "game.kruise.io/network-disabled"
NETWORK_CONFIG_HASH_KEY = "game.kruise.io/network-config-hash"

# Services created per pod select it through the StatefulSet pod-name label
SVC_SELECTOR_KEY = "statefulset.kubernetes.io/pod-name"
SVC_SELECTOR_DISABLED_KEY = "game.kruise.io/svc-selector-disabled"

PROTOCOL_TCP = "TCP"
PROTOCOL_UDP = "UDP"
PROTOCOL_TCP_UDP = "TCPUDP"


class NetworkState(str, Enum):
    """Readiness of a pod's external network."""

    READY = "Ready"
    NOT_READY = "NotReady"
    WAITING = "Waiting"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NetworkPort(_CamelModel):
    """A named port exposed by a network address."""

    name: str
    protocol: str = PROTOCOL_TCP
    port: int | str | None = None


class NetworkPortRange(_CamelModel):
    """A contiguous port range, e.g. '500-600'."""

    protocol: str = PROTOCOL_TCP
    port_range: str


class NetworkAddress(_CamelModel):
    """An address through which a pod is reachable."""

    ip: str = ""
    ports: list[NetworkPort] = Field(default_factory=list)
    port_range: NetworkPortRange | None = None
    end_point: str | None = None


class NetworkStatus(_CamelModel):
    """Network status stored as JSON in the pod's network-status annotation."""

    network_type: str = ""
    internal_addresses: list[NetworkAddress] = Field(default_factory=list)
    external_addresses: list[NetworkAddress] = Field(default_factory=list)
    desired_network_state: NetworkState = NetworkState.READY
    current_network_state: NetworkState = NetworkState.WAITING
    create_time: datetime | None = None
    last_transition_time: datetime | None = None

    @classmethod
    def from_json(cls, raw: str) -> "NetworkStatus":
        """Parse the annotation value."""
        return cls.model_validate_json(raw)

    def to_json(self) -> str:
        """Serialize to the annotation value."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


class NetworkConfParams(BaseModel):
    """A single name/value entry of the network-conf annotation."""

    name: str
    value: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the parameter name is not empty."""
        if not v or not v.strip():
            raise ValueError("network conf name cannot be empty")
        return v.strip()
