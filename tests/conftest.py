"""Shared fixtures: an in-memory stand-in for the batch and core APIs."""

import itertools
from datetime import datetime, timezone

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from kubetrace.config import TraceDefaults
from kubetrace.types import NodeTarget, ResolvedTarget, TraceRequest


def _matches(labels: dict[str, str] | None, selector: str | None) -> bool:
    if not selector:
        return True
    labels = labels or {}
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeCluster:
    """Implements the handful of BatchV1Api/CoreV1Api calls kubetrace makes.

    Deleting a job also drops the config maps it owns, the way the garbage
    collector would.
    """

    def __init__(self):
        self.jobs: dict[tuple[str, str], client.V1Job] = {}
        self.config_maps: dict[tuple[str, str], client.V1ConfigMap] = {}
        self.pods: dict[tuple[str, str], client.V1Pod] = {}
        self.nodes: dict[str, client.V1Node] = {}
        self.deleted_config_maps: list[str] = []
        self._uids = itertools.count(1)

    def add_node(self, name: str, hostname: str | None = None):
        labels = {"kubernetes.io/hostname": hostname or name}
        self.nodes[name] = client.V1Node(metadata=client.V1ObjectMeta(name=name, labels=labels))

    # ===== batch/v1 =====

    def create_namespaced_job(self, namespace, body):
        key = (namespace, body.metadata.name)
        if key in self.jobs:
            raise ApiException(status=409, reason="AlreadyExists")
        body.metadata.namespace = namespace
        body.metadata.uid = f"job-uid-{next(self._uids)}"
        body.status = client.V1JobStatus()
        self.jobs[key] = body
        return body

    def patch_namespaced_job(self, name, namespace, body):
        job = self.read_namespaced_job(name, namespace)
        job.spec.suspend = body["spec"]["suspend"]
        if not job.spec.suspend:
            job.status = client.V1JobStatus(
                active=1, start_time=datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
            )
        return job

    def read_namespaced_job(self, name, namespace):
        try:
            return self.jobs[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="NotFound")

    def list_namespaced_job(self, namespace, label_selector=None):
        items = [
            job
            for (ns, _), job in self.jobs.items()
            if ns == namespace and _matches(job.metadata.labels, label_selector)
        ]
        return client.V1JobList(items=items)

    def delete_namespaced_job(self, name, namespace, propagation_policy=None):
        job = self.read_namespaced_job(name, namespace)
        del self.jobs[(namespace, name)]
        for key, config_map in list(self.config_maps.items()):
            owners = config_map.metadata.owner_references or []
            if any(owner.uid == job.metadata.uid for owner in owners):
                del self.config_maps[key]

    # ===== core/v1 =====

    def create_namespaced_config_map(self, namespace, body):
        key = (namespace, body.metadata.name)
        if key in self.config_maps:
            raise ApiException(status=409, reason="AlreadyExists")
        body.metadata.namespace = namespace
        self.config_maps[key] = body
        return body

    def delete_namespaced_config_map(self, name, namespace):
        self.deleted_config_maps.append(name)
        del self.config_maps[(namespace, name)]

    def read_node(self, name):
        try:
            return self.nodes[name]
        except KeyError:
            raise ApiException(status=404, reason="NotFound")

    def list_namespaced_pod(self, namespace, label_selector=None, _request_timeout=None):
        items = [
            pod
            for (ns, _), pod in self.pods.items()
            if ns == namespace and _matches(pod.metadata.labels, label_selector)
        ]
        return client.V1PodList(items=items)


def make_pod(
    name: str,
    phase: str,
    labels: dict[str, str] | None = None,
    namespace: str = "default",
    node_name: str = "node-1",
) -> client.V1Pod:
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
        spec=client.V1PodSpec(
            containers=[client.V1Container(name="kubetrace")], node_name=node_name
        ),
        status=client.V1PodStatus(phase=phase),
    )


@pytest.fixture
def cluster() -> FakeCluster:
    fake = FakeCluster()
    fake.add_node("node-1", hostname="node-1.example.internal")
    return fake


@pytest.fixture
def defaults() -> TraceDefaults:
    return TraceDefaults(
        image="example.com/tracer:test",
        init_image="example.com/init:test",
        deadline=60,
        deadline_grace_period=10,
        attach_timeout=1.0,
        poll_initial_interval=0.01,
        poll_max_interval=0.05,
    )


@pytest.fixture
def node_target() -> ResolvedTarget:
    return ResolvedTarget(hostname="node-1.example.internal", node_name="node-1")


@pytest.fixture
def pod_target() -> ResolvedTarget:
    return ResolvedTarget(
        hostname="node-1.example.internal",
        node_name="node-1",
        pod_name="nginx",
        pod_uid="pod-uid-1",
        container="nginx",
    )


@pytest.fixture
def script_request() -> TraceRequest:
    return TraceRequest(
        target=NodeTarget("node-1"),
        program='kprobe:do_sys_open { printf("%s\\n", comm); }',
    )


@pytest.fixture
def pod_factory():
    return make_pod
