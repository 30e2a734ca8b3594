"""Trace operations exposed to the command line: submit, attach, list, delete."""

import sys
from pathlib import Path
from typing import BinaryIO

from kubernetes import client
from kubernetes.client.rest import ApiException

from kubetrace.attacher import Attacher
from kubetrace.config import TraceDefaults
from kubetrace.errors import (
    ClusterApiError,
    DuplicatePodsError,
    InvalidSpecError,
    TraceCancelledError,
    TraceNotFoundError,
)
from kubetrace.jobspec import TRACER_CONTAINER, JobSpecBuilder
from kubetrace.kubernetes import resolve_target
from kubetrace.locator import PodLocator, list_trace_pods
from kubetrace.signals import CancelToken
from kubetrace.tracejob import TraceJobClient, summarize
from kubetrace.types import (
    PodInfo,
    ProgramKind,
    TraceFilter,
    TraceJob,
    TraceJobSummary,
    TraceRequest,
)

# ===== Program loading =====


def read_program(
    eval_program: str | None = None,
    filename: str | None = None,
    toolkit: str | None = None,
) -> tuple[str, ProgramKind]:
    """Pick the program text out of the mutually exclusive sources."""
    if eval_program is None and filename is None and toolkit is None:
        raise InvalidSpecError("You must specify either a script or a toolkit program")
    if eval_program is not None and filename is not None:
        raise InvalidSpecError(
            "Specify the script either via an external file or via a literal string, not both"
        )
    if toolkit is not None and (eval_program is not None or filename is not None):
        raise InvalidSpecError("Cannot specify both a script and a toolkit program")

    if toolkit is not None:
        if not toolkit.strip():
            raise InvalidSpecError("The toolkit program name cannot be empty")
        return toolkit, ProgramKind.TOOLKIT

    if filename is not None:
        if not filename:
            raise InvalidSpecError("The trace program cannot be empty")
        try:
            program = Path(filename).read_text()
        except OSError as e:
            raise InvalidSpecError(f"Error opening program file '{filename}': {e}") from e
    else:
        program = eval_program or ""

    if not program.strip():
        raise InvalidSpecError("The trace program cannot be empty")
    return program, ProgramKind.SCRIPT


# ===== Trace lifecycle =====


class TraceManager:
    """Entry point for trace lifecycle operations against one cluster.

    Holds only the shared API clients and defaults; every call builds its own
    job client, locator and attacher, so concurrent traces do not share state.
    """

    def __init__(
        self,
        core_v1: client.CoreV1Api,
        batch_v1: client.BatchV1Api,
        defaults: TraceDefaults | None = None,
        out: BinaryIO | None = None,
    ):
        self.core_v1 = core_v1
        self.batch_v1 = batch_v1
        self.defaults = defaults or TraceDefaults()
        self.builder = JobSpecBuilder(self.defaults)
        self.out = out

    def _jobs(self, namespace: str) -> TraceJobClient:
        return TraceJobClient(self.batch_v1, self.core_v1, namespace, self.builder)

    def _output(self) -> BinaryIO:
        return self.out if self.out is not None else sys.stdout.buffer

    def prepare(self, request: TraceRequest, namespace: str) -> TraceJob:
        """Resolve the target and build the trace job without submitting it."""
        target = resolve_target(self.core_v1, request.target, namespace)
        return self.builder.build_trace_job(request, target, namespace)

    def submit(self, request: TraceRequest, namespace: str) -> str:
        trace_job = self.prepare(request, namespace)
        self._jobs(namespace).create_job(trace_job)
        return trace_job.id

    def attach(
        self,
        trace_id: str,
        namespace: str,
        cancel: CancelToken | None = None,
        delete_on_cancel: bool = False,
    ) -> PodInfo:
        """Stream the trace's output until it ends.

        On cancellation the job keeps running unless ``delete_on_cancel`` is
        set, in which case it is deleted explicitly before re-raising.
        """
        attacher = Attacher(
            self.core_v1,
            locator=PodLocator.from_defaults(self.core_v1, self.defaults),
            out=self._output(),
        )
        try:
            return attacher.attach_job(trace_id, namespace, cancel)
        except TraceCancelledError:
            if delete_on_cancel:
                self.delete(trace_id, namespace)
            raise

    def delete(self, trace_id: str, namespace: str) -> None:
        self._jobs(namespace).delete_job(trace_id)

    def delete_all(self, namespace: str) -> list[str]:
        jobs = self._jobs(namespace)
        deleted = []
        for handle in jobs.list_jobs():
            try:
                jobs.delete_job(handle.trace_id)
            except TraceNotFoundError:
                # Finished and cleaned up since the listing
                continue
            deleted.append(handle.trace_id)
        return deleted

    def list_traces(
        self, namespace: str, trace_filter: TraceFilter | None = None
    ) -> list[TraceJobSummary]:
        handles = self._jobs(namespace).list_jobs(trace_filter)
        return [summarize(handle) for handle in handles]

    def logs(self, trace_id: str, namespace: str) -> None:
        """Print what the trace has written so far, without following."""
        self._jobs(namespace).get_job(trace_id)
        pods = list_trace_pods(self.core_v1, trace_id, namespace)
        if not pods:
            raise TraceNotFoundError(f"Trace {trace_id} has no pod yet")
        if len(pods) > 1:
            raise DuplicatePodsError(trace_id, [p.name for p in pods])

        pod = pods[0]
        try:
            text = self.core_v1.read_namespaced_pod_log(
                name=pod.name, namespace=namespace, container=TRACER_CONTAINER
            )
        except ApiException as e:
            raise ClusterApiError(
                f"Failed reading logs of pod {pod.name}: ({e.status}) {e.reason}",
                status=e.status,
            ) from e
        out = self._output()
        out.write(text.encode())
        out.flush()
