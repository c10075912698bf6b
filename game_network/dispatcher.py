"""Admission-time dispatch of pod events to network plugins."""

import copy
import json
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from kubernetes import client as k8s
from kubernetes.client.rest import ApiException

from game_network.cloudprovider.base import Plugin, PluginContext
from game_network.cloudprovider.manager import ProviderManager
from game_network.exceptions import PluginError, PluginErrorType, to_plugin_error
from game_network.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_MUTATING_TIMEOUT = 8.0
EVENT_WARNING = "Warning"
MUTATING_TIMEOUT_REASON = "MutatingTimeout"
COMPONENT = "game-network"


class Operation(str, Enum):
    """Admission operations handled for pods."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @property
    def verb(self) -> str:
        return {"CREATE": "create", "UPDATE": "update", "DELETE": "delete"}[self.value]


@dataclass
class AdmissionResult:
    """Outcome of dispatching one admission request."""

    allowed: bool
    pod: object | None
    message: str = ""
    mutated: bool = False
    error_type: PluginErrorType | None = None

    def pod_dict(self) -> dict | None:
        if self.pod is None:
            return None
        return k8s.ApiClient().sanitize_for_serialization(self.pod)


class _RawResponse:
    def __init__(self, data: dict):
        self.data = json.dumps(data)


def decode_pod(obj: dict):
    """Turn the pod JSON of an admission request into a V1Pod."""
    return k8s.ApiClient().deserialize(_RawResponse(obj), "V1Pod")


class EventRecorder:
    """Writes Kubernetes events about pods."""

    def __init__(self, client, component: str = COMPONENT):
        self.client = client
        self.component = component

    def record(self, pod, event_type: str, reason: str, message: str) -> None:
        """Create an event; failures are logged, never raised."""
        meta = pod.metadata
        now = datetime.now(timezone.utc)
        body = k8s.CoreV1Event(
            metadata=k8s.V1ObjectMeta(generate_name=f"{meta.name}.", namespace=meta.namespace),
            involved_object=k8s.V1ObjectReference(
                api_version="v1",
                kind="Pod",
                name=meta.name,
                namespace=meta.namespace,
                uid=meta.uid,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=k8s.V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.client.create_namespaced_event(meta.namespace, body)
        except ApiException as e:
            logger.warning(f"Failed to record event {reason} for {meta.namespace}/{meta.name}: {e}")


class PodMutatingHandler:
    """Routes pod admission requests to the plugin of their network type.

    Plugin calls run on a worker pool and are bounded by ``timeout``. A call
    that overruns is abandoned, not cancelled: it finishes in the background
    and its allocations stay consistent, while the request is allowed with the
    original pod.
    """

    def __init__(
        self,
        client,
        manager: ProviderManager,
        recorder: EventRecorder | None = None,
        timeout: float = DEFAULT_MUTATING_TIMEOUT,
        max_workers: int = 16,
    ):
        self.client = client
        self.manager = manager
        self.recorder = recorder or EventRecorder(client)
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="plugin")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def handle_request(self, request: dict) -> AdmissionResult:
        """Handle the ``request`` part of an AdmissionReview."""
        operation = Operation(request["operation"])
        raw = request.get("oldObject") if operation == Operation.DELETE else request.get("object")
        if not raw:
            return AdmissionResult(True, None, f"no pod in {operation.value} request")
        return self.handle(operation, decode_pod(raw))

    def handle(self, operation: Operation, pod) -> AdmissionResult:
        operation = Operation(operation)
        plugin = self.manager.find_available_plugins(pod)
        if plugin is None:
            return AdmissionResult(True, pod, "no network plugin")

        ctx = PluginContext.with_timeout(self.timeout)
        future = self._executor.submit(self._invoke, plugin, operation, pod, ctx)
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeoutError:
            message = (
                f"Failed to {operation.verb} pod {pod.metadata.namespace}/{pod.metadata.name} "
                f",because of timeout after {self.timeout}s"
            )
            logger.warning(f"{plugin.name}: {message}")
            self.recorder.record(pod, EVENT_WARNING, MUTATING_TIMEOUT_REASON, message)
            return AdmissionResult(True, pod, message)

    def _invoke(self, plugin: Plugin, operation: Operation, pod, ctx: PluginContext):
        working = copy.deepcopy(pod)
        try:
            if operation == Operation.CREATE:
                result = plugin.on_pod_added(self.client, working, ctx)
            elif operation == Operation.UPDATE:
                result = plugin.on_pod_updated(self.client, working, ctx)
            else:
                plugin.on_pod_deleted(self.client, working, ctx)
                return AdmissionResult(True, None, "delete successfully")
        except PluginError as e:
            return self._failed(plugin, operation, pod, e)
        except Exception as e:
            logger.error(f"Unexpected error in plugin {plugin.name}: {e}", exc_info=True)
            err = to_plugin_error(e, PluginErrorType.INTERNAL_ERROR)
            return self._failed(plugin, operation, pod, err)

        if result is None:
            result = working
        return AdmissionResult(True, result, "", mutated=result != pod)

    def _failed(self, plugin: Plugin, operation: Operation, pod, err: PluginError):
        meta = pod.metadata
        message = (
            f"Failed to {operation.verb} pod {meta.namespace}/{meta.name} ,because of {err.message}"
        )
        if err.error_type == PluginErrorType.NOT_IMPLEMENTED_ERROR:
            logger.warning(f"{plugin.name}: {message}")
        else:
            logger.error(f"{plugin.name}: {message}")
        self.recorder.record(pod, EVENT_WARNING, err.error_type.value, message)
        return AdmissionResult(True, copy.deepcopy(pod), message, error_type=err.error_type)
