"""Translate a trace request into the config map and job that run it.

Nothing in this module talks to the cluster: the objects are returned
unsubmitted so a bad request fails before any remote call is made.
"""

from dataclasses import dataclass

from kubernetes import client

from kubetrace import meta
from kubetrace.config import TraceDefaults
from kubetrace.errors import InvalidSpecError
from kubetrace.types import (
    ProgramKind,
    ResolvedTarget,
    TraceJob,
    TraceRequest,
)

TRACER_CONTAINER = "kubetrace"
INIT_CONTAINER = "kubectl-trace-init"

PROGRAMS_MOUNT_PATH = "/programs"
SCRIPT_KEY = "program.bt"
TOOLKIT_KEY = "tool"

_HEADERS_VOLUME = "linux-headers-generated"


@dataclass
class JobObjects:
    config_map: client.V1ConfigMap
    job: client.V1Job


def program_key(kind: ProgramKind) -> str:
    return TOOLKIT_KEY if kind == ProgramKind.TOOLKIT else SCRIPT_KEY


class JobSpecBuilder:
    def __init__(self, defaults: TraceDefaults | None = None):
        self.defaults = defaults or TraceDefaults()

    def build_trace_job(
        self,
        request: TraceRequest,
        target: ResolvedTarget,
        namespace: str,
        trace_id: str | None = None,
    ) -> TraceJob:
        """Fill unset request fields from the defaults and validate the result.

        A fresh trace id is minted unless one is given.
        """
        _validate_request(request, target)
        trace_id = trace_id or meta.new_trace_id()

        deadline = _pick(request.deadline, self.defaults.deadline)
        grace = _pick(request.deadline_grace_period, self.defaults.deadline_grace_period)
        if deadline <= 0:
            raise InvalidSpecError(f"deadline must be positive, got {deadline}")
        if grace < 0:
            raise InvalidSpecError(
                f"deadline grace period must not be negative, got {grace}"
            )

        return TraceJob(
            id=trace_id,
            name=meta.object_name(trace_id),
            namespace=namespace,
            target=target,
            program=request.program,
            program_kind=request.program_kind,
            program_args=tuple(request.program_args),
            fetch_headers=request.fetch_headers,
            image=request.image or self.defaults.image,
            init_image=request.init_image or self.defaults.init_image,
            service_account=request.service_account or self.defaults.service_account,
            deadline=deadline,
            deadline_grace_period=grace,
        )

    def build_objects(self, trace_job: TraceJob) -> JobObjects:
        return JobObjects(
            config_map=self.build_config_map(trace_job),
            job=self.build_job(trace_job),
        )

    def build_config_map(self, trace_job: TraceJob) -> client.V1ConfigMap:
        # The owner reference is attached by the client once the job has a UID.
        return client.V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=client.V1ObjectMeta(
                name=trace_job.name,
                namespace=trace_job.namespace,
                labels=meta.trace_labels(trace_job.id),
            ),
            data={program_key(trace_job.program_kind): trace_job.program},
        )

    def build_job(self, trace_job: TraceJob) -> client.V1Job:
        labels = meta.trace_labels(trace_job.id)

        init_containers = None
        if trace_job.fetch_headers:
            init_containers = [_init_container(trace_job)]

        pod_spec = client.V1PodSpec(
            host_pid=True,
            restart_policy="Never",
            service_account_name=trace_job.service_account,
            init_containers=init_containers,
            containers=[_tracer_container(trace_job)],
            volumes=_volumes(trace_job),
            tolerations=[
                client.V1Toleration(effect="NoSchedule", operator="Exists"),
                client.V1Toleration(effect="NoExecute", operator="Exists"),
            ],
            affinity=_node_affinity(trace_job.target.hostname),
        )

        return client.V1Job(
            api_version="batch/v1",
            kind="Job",
            metadata=client.V1ObjectMeta(
                name=trace_job.name,
                namespace=trace_job.namespace,
                labels=labels,
                annotations=_target_annotations(trace_job.target),
            ),
            spec=client.V1JobSpec(
                # Released by the client once the config map exists
                suspend=True,
                backoff_limit=0,
                parallelism=1,
                completions=1,
                active_deadline_seconds=trace_job.active_deadline,
                ttl_seconds_after_finished=self.defaults.ttl_seconds_after_finished,
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=pod_spec,
                ),
            ),
        )


def tracer_command(trace_job: TraceJob) -> list[str]:
    """Command line of the tracer container.

    The program itself never appears here, only its path inside the mounted
    config map. Toolkit arguments always close the command line.
    """
    command = [
        "/bin/timeout",
        "--preserve-status",
        "--signal",
        "INT",
        str(trace_job.deadline),
        "/bin/trace-runner",
        f"--program={PROGRAMS_MOUNT_PATH}/{program_key(trace_job.program_kind)}",
    ]
    target = trace_job.target
    if target.is_pod:
        command.extend(
            [
                "--inpod",
                f"--container={target.container}",
                f"--poduid={target.pod_uid}",
            ]
        )
    if trace_job.program_kind == ProgramKind.TOOLKIT:
        command.append("--toolkit")
        if trace_job.program_args:
            command.append("--")
            command.extend(trace_job.program_args)
    return command


def _pick(value: int | None, default: int) -> int:
    return default if value is None else value


def _validate_request(request: TraceRequest, target: ResolvedTarget) -> None:
    if not isinstance(request.program_kind, ProgramKind):
        raise InvalidSpecError(f"Unknown program kind: {request.program_kind!r}")
    if not request.program or not request.program.strip():
        raise InvalidSpecError("The trace program cannot be empty")
    if request.program_kind == ProgramKind.SCRIPT and request.program_args:
        raise InvalidSpecError("Positional arguments are only accepted by toolkit programs")
    if not target.hostname:
        raise InvalidSpecError("Could not determine on which node to run the trace program")
    if target.is_pod and not target.container:
        raise InvalidSpecError("A pod target needs a container name")


def _target_annotations(target: ResolvedTarget) -> dict[str, str]:
    annotations = {meta.NODE_ANNOTATION: target.node_name}
    if target.is_pod:
        annotations[meta.POD_NAME_ANNOTATION] = target.pod_name or ""
        annotations[meta.POD_UID_ANNOTATION] = target.pod_uid or ""
        annotations[meta.CONTAINER_ANNOTATION] = target.container or ""
    return annotations


def _node_affinity(hostname: str) -> client.V1Affinity:
    return client.V1Affinity(
        node_affinity=client.V1NodeAffinity(
            required_during_scheduling_ignored_during_execution=client.V1NodeSelector(
                node_selector_terms=[
                    client.V1NodeSelectorTerm(
                        match_expressions=[
                            client.V1NodeSelectorRequirement(
                                key=meta.HOSTNAME_LABEL,
                                operator="In",
                                values=[hostname],
                            )
                        ]
                    )
                ]
            )
        )
    )


def _host_path(name: str, path: str) -> client.V1Volume:
    return client.V1Volume(name=name, host_path=client.V1HostPathVolumeSource(path=path))


def _volumes(trace_job: TraceJob) -> list[client.V1Volume]:
    volumes = [
        client.V1Volume(
            name="program",
            config_map=client.V1ConfigMapVolumeSource(name=trace_job.name),
        ),
        _host_path("sys", "/sys"),
        _host_path("modules", "/lib/modules"),
        _host_path("usr-host", "/usr"),
    ]
    if trace_job.fetch_headers:
        volumes.extend(
            [
                _host_path("lsb-release", "/etc/lsb-release"),
                _host_path("os-release", "/etc/os-release"),
                client.V1Volume(
                    name=_HEADERS_VOLUME,
                    empty_dir=client.V1EmptyDirVolumeSource(),
                ),
            ]
        )
    return volumes


def _tracer_container(trace_job: TraceJob) -> client.V1Container:
    mounts = [
        client.V1VolumeMount(
            name="program", mount_path=PROGRAMS_MOUNT_PATH, read_only=True
        ),
        client.V1VolumeMount(name="sys", mount_path="/sys", read_only=True),
        client.V1VolumeMount(name="modules", mount_path="/lib/modules", read_only=True),
        client.V1VolumeMount(name="usr-host", mount_path="/usr-host", read_only=True),
    ]
    if trace_job.fetch_headers:
        mounts.append(client.V1VolumeMount(name=_HEADERS_VOLUME, mount_path="/usr/src"))

    return client.V1Container(
        name=TRACER_CONTAINER,
        image=trace_job.image,
        image_pull_policy="IfNotPresent",
        command=tracer_command(trace_job),
        volume_mounts=mounts,
        security_context=client.V1SecurityContext(privileged=True),
        resources=client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "100Mi"},
            limits={"cpu": "1", "memory": "1G"},
        ),
    )


def _init_container(trace_job: TraceJob) -> client.V1Container:
    return client.V1Container(
        name=INIT_CONTAINER,
        image=trace_job.init_image,
        image_pull_policy="IfNotPresent",
        volume_mounts=[
            client.V1VolumeMount(
                name="lsb-release", mount_path="/etc/lsb-release.host", read_only=True
            ),
            client.V1VolumeMount(
                name="os-release", mount_path="/etc/os-release.host", read_only=True
            ),
            client.V1VolumeMount(name="modules", mount_path="/lib/modules"),
            client.V1VolumeMount(name=_HEADERS_VOLUME, mount_path="/usr/src"),
        ],
    )
