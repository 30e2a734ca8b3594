"""Find the pod behind a trace job and wait for it to run."""

import time
from enum import Enum
from typing import Callable

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError
from urllib3.exceptions import TimeoutError as RequestTimeoutError

from kubetrace import meta
from kubetrace.config import TraceDefaults
from kubetrace.errors import (
    ClusterApiError,
    DuplicatePodsError,
    PodNeverRanError,
    TraceCancelledError,
    WaitTimeoutError,
)
from kubetrace.signals import CancelToken
from kubetrace.types import PodInfo

_TERMINAL_PHASES = ("Succeeded", "Failed")
_MIN_REQUEST_TIMEOUT = 0.1


class LocatorState(str, Enum):
    SEARCHING = "searching"
    FOUND = "found"
    RUNNING = "running"
    TIMED_OUT = "timed-out"
    ERROR = "error"
    CANCELLED = "cancelled"


def pod_info(pod: client.V1Pod) -> PodInfo:
    created = pod.metadata.creation_timestamp
    return PodInfo(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        node_name=(pod.spec.node_name if pod.spec else None) or "",
        status=(pod.status.phase if pod.status else None) or "Unknown",
        labels=pod.metadata.labels or {},
        creation_time=created.isoformat() if created else "",
    )


def list_trace_pods(
    core_v1: client.CoreV1Api,
    trace_id: str,
    namespace: str,
    request_timeout: float | None = None,
) -> list[PodInfo]:
    kwargs = {}
    if request_timeout is not None:
        kwargs["_request_timeout"] = request_timeout
    try:
        pods = core_v1.list_namespaced_pod(
            namespace=namespace, label_selector=meta.trace_id_selector(trace_id), **kwargs
        )
    except ApiException as e:
        raise ClusterApiError(
            f"Failed listing pods for trace {trace_id}: ({e.status}) {e.reason}",
            status=e.status,
        ) from e
    return [pod_info(pod) for pod in pods.items]


class PodLocator:
    """Poll until exactly one pod for a trace exists and is Running.

    The wait budget is local and unrelated to the trace deadline, which only
    starts counting once the pod is scheduled.
    """

    def __init__(
        self,
        core_v1: client.CoreV1Api,
        timeout: float = 300.0,
        initial_interval: float = 1.0,
        max_interval: float = 10.0,
        factor: float = 2.0,
        request_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.core_v1 = core_v1
        self.timeout = timeout
        self.initial_interval = initial_interval
        self.max_interval = max_interval
        self.factor = factor
        self.request_timeout = request_timeout
        self.clock = clock
        self.state = LocatorState.SEARCHING

    @classmethod
    def from_defaults(cls, core_v1: client.CoreV1Api, defaults: TraceDefaults) -> "PodLocator":
        return cls(
            core_v1,
            timeout=defaults.attach_timeout,
            initial_interval=defaults.poll_initial_interval,
            max_interval=defaults.poll_max_interval,
            factor=defaults.poll_factor,
        )

    def locate(
        self, trace_id: str, namespace: str, cancel: CancelToken | None = None
    ) -> PodInfo:
        cancel = cancel or CancelToken()
        self.state = LocatorState.SEARCHING
        deadline = self.clock() + self.timeout
        interval = self.initial_interval

        pod = None
        while True:
            # A stalled API call must not outlive the budget
            request_timeout = max(
                min(deadline - self.clock(), self.request_timeout), _MIN_REQUEST_TIMEOUT
            )
            try:
                pod = self._poll(trace_id, namespace, request_timeout)
            except (RequestTimeoutError, MaxRetryError) as e:
                if isinstance(e, MaxRetryError) and not isinstance(e.reason, RequestTimeoutError):
                    self.state = LocatorState.ERROR
                    raise
                # No answer this round; the budget check below decides
            except Exception:
                self.state = LocatorState.ERROR
                raise
            if pod is not None and self.state == LocatorState.RUNNING:
                return pod

            if cancel.cancelled:
                self.state = LocatorState.CANCELLED
                raise TraceCancelledError(cancel.reason or "cancelled")

            remaining = deadline - self.clock()
            if remaining <= 0:
                self.state = LocatorState.TIMED_OUT
                what = f"pod {pod.name} to run" if pod else f"a pod for trace {trace_id}"
                raise WaitTimeoutError(
                    f"Timed out after {self.timeout:g}s waiting for {what}"
                )

            if cancel.wait(min(interval, remaining)):
                self.state = LocatorState.CANCELLED
                raise TraceCancelledError(cancel.reason or "cancelled")
            interval = min(interval * self.factor, self.max_interval)

    def _poll(
        self, trace_id: str, namespace: str, request_timeout: float | None = None
    ) -> PodInfo | None:
        pods = list_trace_pods(self.core_v1, trace_id, namespace, request_timeout)
        if not pods:
            self.state = LocatorState.SEARCHING
            return None
        if len(pods) > 1:
            raise DuplicatePodsError(trace_id, [p.name for p in pods])

        pod = pods[0]
        if pod.status == "Running":
            self.state = LocatorState.RUNNING
        elif pod.status in _TERMINAL_PHASES:
            raise PodNeverRanError(pod.name, pod.status)
        else:
            self.state = LocatorState.FOUND
        return pod
