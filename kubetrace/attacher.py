"""Follow the output of a running trace."""

import sys
import threading
from typing import BinaryIO

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from kubetrace.errors import ClusterApiError, StreamInterruptedError, TraceCancelledError
from kubetrace.jobspec import TRACER_CONTAINER
from kubetrace.locator import PodLocator
from kubetrace.signals import CancelToken
from kubetrace.types import PodInfo


class Attacher:
    """Relay a trace pod's log stream to ``out`` until it ends or is cancelled.

    Attaching is read-only: cancelling detaches and leaves the job to finish
    or expire on its own. Deleting it is a separate call.
    """

    def __init__(
        self,
        core_v1: client.CoreV1Api,
        locator: PodLocator | None = None,
        out: BinaryIO | None = None,
        chunk_size: int = 4096,
    ):
        self.core_v1 = core_v1
        self.locator = locator or PodLocator(core_v1)
        self.out = out if out is not None else sys.stdout.buffer
        self.chunk_size = chunk_size

    def attach_job(
        self, trace_id: str, namespace: str, cancel: CancelToken | None = None
    ) -> PodInfo:
        cancel = cancel or CancelToken()
        pod = self.locator.locate(trace_id, namespace, cancel)
        cancel.raise_if_cancelled()

        try:
            response = self.core_v1.read_namespaced_pod_log(
                name=pod.name,
                namespace=namespace,
                container=TRACER_CONTAINER,
                follow=True,
                _preload_content=False,
            )
        except ApiException as e:
            raise ClusterApiError(
                f"Failed opening log stream of pod {pod.name}: ({e.status}) {e.reason}",
                status=e.status,
            ) from e

        self._relay(response, trace_id, cancel)
        return pod

    def _relay(self, response, trace_id: str, cancel: CancelToken) -> None:
        finished = threading.Event()
        write_lock = threading.Lock()
        failures: list[Exception] = []

        def pump() -> None:
            try:
                for chunk in response.stream(self.chunk_size, decode_content=True):
                    with write_lock:
                        if cancel.cancelled:
                            return
                        if chunk:
                            self.out.write(chunk)
                            self.out.flush()
            except Exception as e:
                # A read torn down by cancellation is expected
                if not cancel.cancelled:
                    failures.append(e)
            finally:
                finished.set()

        unregister = cancel.on_cancel(finished.set)
        relay = threading.Thread(
            target=pump, name=f"kubetrace-relay-{trace_id}", daemon=True
        )
        relay.start()
        try:
            finished.wait()
        finally:
            unregister()

        if cancel.cancelled:
            # Let a write already in progress finish; none start after this
            with write_lock:
                response.close()
            relay.join(timeout=1.0)
            raise TraceCancelledError(cancel.reason or "cancelled")

        relay.join()
        response.release_conn()
        if failures:
            error = failures[0]
            if isinstance(error, (HTTPError, OSError)):
                raise StreamInterruptedError(
                    f"Log stream of trace {trace_id} was interrupted: {error}"
                ) from error
            raise error
