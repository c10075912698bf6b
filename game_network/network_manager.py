"""Access to the network annotations of a pod and its readiness state machine."""

import json
from datetime import datetime, timezone

from pydantic import TypeAdapter, ValidationError

from game_network.exceptions import PluginError, PluginErrorType
from game_network.logging_config import get_logger
from game_network.models.network import (
    NETWORK_CONF_KEY,
    NETWORK_DISABLED_KEY,
    NETWORK_STATUS_KEY,
    NETWORK_TYPE_KEY,
    NetworkConfParams,
    NetworkState,
    NetworkStatus,
)

logger = get_logger(__name__)

_CONF_ADAPTER = TypeAdapter(list[NetworkConfParams])
_TRUE_VALUES = {"1", "t", "true", "y", "yes", "on"}


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def converge_status(
    previous: NetworkStatus | None, status: NetworkStatus, resource_lost: bool = False
) -> NetworkStatus:
    """Merge a freshly computed status with the one already on the pod.

    A Ready pod never falls back to Waiting: a pending external resource on a
    Ready pod keeps the previous status, and a detected loss of the resource
    turns into NotReady.
    """
    if previous is not None and previous.current_network_state == NetworkState.READY:
        if status.current_network_state == NetworkState.WAITING:
            if not resource_lost:
                return previous
            status = status.model_copy(update={"current_network_state": NetworkState.NOT_READY})

    now = _now()
    created = previous.create_time if previous else None
    updates = {"create_time": created or status.create_time or now}
    if previous is None or previous.current_network_state != status.current_network_state:
        updates["last_transition_time"] = now
    else:
        updates["last_transition_time"] = previous.last_transition_time or now
    return status.model_copy(update=updates)


class NetworkManager:
    """Reads and writes the network annotations of a single pod."""

    def __init__(self, pod, network_type: str = ""):
        self.pod = pod
        self.network_type = network_type or self.annotations.get(NETWORK_TYPE_KEY, "")

    @property
    def annotations(self) -> dict[str, str]:
        return self.pod.metadata.annotations or {}

    @property
    def labels(self) -> dict[str, str]:
        return self.pod.metadata.labels or {}

    def get_network_status(self) -> NetworkStatus | None:
        """Return the parsed network-status annotation.

        A missing or malformed annotation yields None.
        """
        raw = self.annotations.get(NETWORK_STATUS_KEY)
        if not raw:
            return None
        try:
            return NetworkStatus.from_json(raw)
        except ValidationError as e:
            logger.warning(
                f"Ignoring malformed network status on pod "
                f"{self.pod.metadata.namespace}/{self.pod.metadata.name}: {e}"
            )
            return None

    def get_network_config(self) -> list[NetworkConfParams]:
        """Return the parsed network-conf annotation.

        Raises:
            PluginError: ParameterError if the annotation is not valid JSON
        """
        raw = self.annotations.get(NETWORK_CONF_KEY)
        if not raw:
            return []
        try:
            return _CONF_ADAPTER.validate_python(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise PluginError(
                PluginErrorType.PARAMETER_ERROR,
                f"Invalid {NETWORK_CONF_KEY} annotation",
                str(e),
            ) from e

    def get_network_disabled(self) -> bool:
        return self.labels.get(NETWORK_DISABLED_KEY, "").strip().lower() in _TRUE_VALUES

    def new_status(self, state: NetworkState = NetworkState.WAITING) -> NetworkStatus:
        return NetworkStatus(network_type=self.network_type, current_network_state=state)

    def update_network_status(self, status: NetworkStatus, resource_lost: bool = False):
        """Write ``status`` to the pod, honouring the readiness transitions.

        Returns:
            The pod carrying the new annotation
        """
        if not status.network_type:
            status = status.model_copy(update={"network_type": self.network_type})
        previous = self.get_network_status()
        merged = converge_status(previous, status, resource_lost)
        if previous is not None and merged.current_network_state != previous.current_network_state:
            logger.info(
                f"Pod {self.pod.metadata.namespace}/{self.pod.metadata.name} network "
                f"{previous.current_network_state.value} -> {merged.current_network_state.value}"
            )
        if self.pod.metadata.annotations is None:
            self.pod.metadata.annotations = {}
        self.pod.metadata.annotations[NETWORK_STATUS_KEY] = merged.to_json()
        return self.pod
