"""Create, list and delete the cluster objects behind a trace."""

from kubernetes import client
from kubernetes.client.rest import ApiException

from kubetrace import meta
from kubetrace.errors import (
    AlreadyExistsError,
    ClusterApiError,
    InvalidSpecError,
    TraceNotFoundError,
)
from kubetrace.jobspec import JobSpecBuilder
from kubetrace.types import JobHandle, TraceFilter, TraceJob, TraceJobSummary


def _api_error(action: str, e: ApiException) -> ClusterApiError:
    return ClusterApiError(f"Failed {action}: ({e.status}) {e.reason}", status=e.status)


def owner_reference(job: client.V1Job) -> client.V1OwnerReference:
    return client.V1OwnerReference(
        api_version="batch/v1",
        kind="Job",
        name=job.metadata.name,
        uid=job.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )


def job_phase(job: client.V1Job) -> str:
    status = job.status
    if job.spec is not None and job.spec.suspend:
        return "Pending"
    if status is None:
        return "Unknown"
    if status.active:
        return "Running"
    if status.succeeded:
        return "Completed"
    if status.failed:
        return "Failed"
    return "Unknown"


def job_handle(job: client.V1Job) -> JobHandle:
    metadata = job.metadata
    labels = metadata.labels or {}
    annotations = metadata.annotations or {}
    start_time = job.status.start_time if job.status is not None else None
    return JobHandle(
        trace_id=labels.get(meta.TRACE_ID_LABEL_KEY) or meta.trace_id_from_name(metadata.name),
        name=metadata.name,
        namespace=metadata.namespace,
        uid=metadata.uid or "",
        node=annotations.get(meta.NODE_ANNOTATION, ""),
        pod_name=annotations.get(meta.POD_NAME_ANNOTATION, ""),
        container=annotations.get(meta.CONTAINER_ANNOTATION, ""),
        start_time=start_time.isoformat() if start_time else "",
        phase=job_phase(job),
    )


def summarize(handle: JobHandle) -> TraceJobSummary:
    if handle.pod_name:
        target = f"pod/{handle.pod_name}"
        if handle.container:
            target += f" ({handle.container})"
    else:
        target = f"node/{handle.node}"
    return TraceJobSummary(
        id=handle.trace_id,
        namespace=handle.namespace,
        target=target,
        start_time=handle.start_time,
        phase=handle.phase,
    )


class TraceJobClient:
    """Thin wrapper over the batch and core APIs for one namespace.

    Nothing here retries: conflicts and transport errors go straight back to
    the caller, which decides whether to mint a new trace id.
    """

    def __init__(
        self,
        batch_v1: client.BatchV1Api,
        core_v1: client.CoreV1Api,
        namespace: str,
        builder: JobSpecBuilder | None = None,
    ):
        self.batch_v1 = batch_v1
        self.core_v1 = core_v1
        self.namespace = namespace
        self.builder = builder or JobSpecBuilder()

    def create_job(self, trace_job: TraceJob) -> JobHandle:
        """Submit the config map and job for ``trace_job``.

        The job is created suspended so no pod exists yet. The config map is
        then created already owned by the job, and only after that is the job
        released. If the config map cannot be created the job is removed again.
        """
        if trace_job.namespace != self.namespace:
            raise InvalidSpecError(
                f"Trace job belongs to namespace '{trace_job.namespace}', "
                f"client is bound to '{self.namespace}'"
            )
        objects = self.builder.build_objects(trace_job)

        try:
            job = self.batch_v1.create_namespaced_job(
                namespace=self.namespace, body=objects.job
            )
        except ApiException as e:
            if e.status == 409:
                raise AlreadyExistsError(
                    f"Trace job '{trace_job.name}' already exists in namespace '{self.namespace}'"
                ) from e
            raise _api_error(f"creating job {trace_job.name}", e) from e

        config_map = objects.config_map
        config_map.metadata.owner_references = [owner_reference(job)]
        try:
            self.core_v1.create_namespaced_config_map(
                namespace=self.namespace, body=config_map
            )
        except ApiException as e:
            self._discard(job.metadata.name)
            if e.status == 409:
                raise AlreadyExistsError(
                    f"Config map '{trace_job.name}' already exists in namespace '{self.namespace}'"
                ) from e
            raise _api_error(f"creating config map {trace_job.name}", e) from e

        try:
            job = self.batch_v1.patch_namespaced_job(
                name=job.metadata.name,
                namespace=self.namespace,
                body={"spec": {"suspend": False}},
            )
        except ApiException as e:
            self._discard(job.metadata.name)
            raise _api_error(f"starting job {trace_job.name}", e) from e

        return job_handle(job)

    def _discard(self, name: str) -> None:
        # Best effort; the original failure is what the caller needs to see.
        try:
            self.batch_v1.delete_namespaced_job(
                name=name, namespace=self.namespace, propagation_policy="Background"
            )
        except ApiException:
            pass

    def list_jobs(self, trace_filter: TraceFilter | None = None) -> list[JobHandle]:
        trace_filter = trace_filter or TraceFilter()
        selector = meta.TRACE_SELECTOR
        if trace_filter.trace_id:
            selector += "," + meta.trace_id_selector(trace_filter.trace_id)
        try:
            jobs = self.batch_v1.list_namespaced_job(
                namespace=self.namespace, label_selector=selector
            )
        except ApiException as e:
            raise _api_error(f"listing trace jobs in namespace {self.namespace}", e) from e

        handles = [job_handle(job) for job in jobs.items]
        if trace_filter.node:
            handles = [h for h in handles if h.node == trace_filter.node]
        return handles

    def get_job(self, trace_id: str) -> JobHandle:
        name = meta.object_name(trace_id)
        try:
            job = self.batch_v1.read_namespaced_job(name=name, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                raise TraceNotFoundError(
                    f"Trace {trace_id} not found in namespace '{self.namespace}'"
                ) from e
            raise _api_error(f"reading job {name}", e) from e
        return job_handle(job)

    def delete_job(self, trace_id: str) -> None:
        """Delete the trace's job; its config map goes with it through ownership."""
        name = meta.object_name(trace_id)
        try:
            self.batch_v1.delete_namespaced_job(
                name=name, namespace=self.namespace, propagation_policy="Background"
            )
        except ApiException as e:
            if e.status == 404:
                raise TraceNotFoundError(
                    f"Trace {trace_id} not found in namespace '{self.namespace}'"
                ) from e
            raise _api_error(f"deleting job {name}", e) from e
