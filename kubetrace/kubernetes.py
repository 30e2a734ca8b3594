"""Cluster access and target resolution for kubetrace."""

from dataclasses import dataclass
from pathlib import Path

from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

from kubetrace import meta
from kubetrace.errors import ClusterApiError, ConfigurationError, TargetResolutionError
from kubetrace.types import NodeTarget, PodTarget, ResolvedTarget, Target

_SERVICE_ACCOUNT_NAMESPACE = Path(
    "/var/run/secrets/kubernetes.io/serviceaccount/namespace"
)
_USAGE = "(POD | TYPE/NAME)"


@dataclass
class KubeClients:
    core_v1: client.CoreV1Api
    batch_v1: client.BatchV1Api
    namespace: str


# ===== Client setup =====


def load_clients(kubeconfig: str | None = None, context: str | None = None) -> KubeClients:
    """Load cluster credentials and build the API clients.

    An explicit kubeconfig or context wins; otherwise in-cluster config is
    tried before the default kubeconfig.
    """
    try:
        if kubeconfig or context:
            k8s_config.load_kube_config(config_file=kubeconfig, context=context)
            namespace = _kubeconfig_namespace(kubeconfig, context)
        else:
            try:
                k8s_config.load_incluster_config()
                namespace = _incluster_namespace()
            except (k8s_config.ConfigException, FileNotFoundError):
                k8s_config.load_kube_config()
                namespace = _kubeconfig_namespace(None, None)
    except (k8s_config.ConfigException, FileNotFoundError) as e:
        raise ConfigurationError(f"Failed to load Kubernetes config: {e}") from e

    api_client = client.ApiClient()
    return KubeClients(
        core_v1=client.CoreV1Api(api_client),
        batch_v1=client.BatchV1Api(api_client),
        namespace=namespace,
    )


def _kubeconfig_namespace(kubeconfig: str | None, context: str | None) -> str:
    contexts, active = k8s_config.list_kube_config_contexts(config_file=kubeconfig)
    if context:
        active = next((c for c in contexts if c.get("name") == context), active)
    if not active:
        return "default"
    return active.get("context", {}).get("namespace") or "default"


def _incluster_namespace() -> str:
    try:
        return _SERVICE_ACCOUNT_NAMESPACE.read_text().strip() or "default"
    except OSError:
        return "default"


# ===== Target resolution =====


def parse_target(resource: str, container: str | None = None) -> Target:
    """Parse ``node/NAME``, ``pod/NAME`` or a bare node name."""
    kind, sep, name = resource.partition("/")
    if not sep:
        kind, name = "node", resource
    kind = kind.lower()
    if not name:
        raise TargetResolutionError(f"First argument must be {_USAGE}")
    if kind in ("node", "nodes", "no"):
        if container:
            raise TargetResolutionError("A container can only be given for a pod target")
        return NodeTarget(name=name)
    if kind in ("pod", "pods", "po"):
        return PodTarget(name=name, container=container)
    raise TargetResolutionError(f"First argument must be {_USAGE}, got '{resource}'")


def resolve_target(
    core_v1: client.CoreV1Api, target: Target, namespace: str
) -> ResolvedTarget:
    if isinstance(target, PodTarget):
        return _resolve_pod(core_v1, target, namespace)
    node_name = target.name
    return ResolvedTarget(hostname=_node_hostname(core_v1, node_name), node_name=node_name)


def _resolve_pod(core_v1: client.CoreV1Api, target: PodTarget, namespace: str) -> ResolvedTarget:
    try:
        pod = core_v1.read_namespaced_pod(name=target.name, namespace=namespace)
    except ApiException as e:
        if e.status == 404:
            raise TargetResolutionError(
                f"Pod '{target.name}' not found in namespace '{namespace}'"
            ) from e
        raise ClusterApiError(
            f"Failed reading pod {target.name}: ({e.status}) {e.reason}", status=e.status
        ) from e

    node_name = pod.spec.node_name
    if not node_name:
        raise TargetResolutionError(
            "Cannot attach a trace program to a pod that is not currently scheduled on a node"
        )

    names = [c.name for c in pod.spec.containers or []]
    if target.container:
        if target.container not in names:
            raise TargetResolutionError(
                "No containers found for the provided pod/container combination"
            )
        container = target.container
    elif names:
        # Default to the first container, like kubectl does
        container = names[0]
    else:
        raise TargetResolutionError(f"Pod '{target.name}' has no containers")

    return ResolvedTarget(
        hostname=_node_hostname(core_v1, node_name),
        node_name=node_name,
        pod_name=pod.metadata.name,
        pod_uid=pod.metadata.uid,
        container=container,
    )


def _node_hostname(core_v1: client.CoreV1Api, node_name: str) -> str:
    try:
        node = core_v1.read_node(name=node_name)
    except ApiException as e:
        if e.status == 404:
            raise TargetResolutionError(f"Node '{node_name}' not found") from e
        raise ClusterApiError(
            f"Failed reading node {node_name}: ({e.status}) {e.reason}", status=e.status
        ) from e

    hostname = (node.metadata.labels or {}).get(meta.HOSTNAME_LABEL)
    if not hostname:
        raise TargetResolutionError(
            f"Label {meta.HOSTNAME_LABEL} not found in node '{node_name}'"
        )
    return hostname
