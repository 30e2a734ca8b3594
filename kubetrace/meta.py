"""Trace identifiers and the names, labels and annotations derived from them."""

import uuid

OBJECT_NAME_PREFIX = "kubetrace-"

_LABEL_PREFIX = "kubetrace.io/"
TRACE_LABEL_KEY = _LABEL_PREFIX + "trace"
TRACE_LABEL_VALUE = "kubetrace"
TRACE_ID_LABEL_KEY = _LABEL_PREFIX + "trace-id"

NODE_ANNOTATION = _LABEL_PREFIX + "node"
POD_NAME_ANNOTATION = _LABEL_PREFIX + "pod-name"
POD_UID_ANNOTATION = _LABEL_PREFIX + "pod-uid"
CONTAINER_ANNOTATION = _LABEL_PREFIX + "container"

HOSTNAME_LABEL = "kubernetes.io/hostname"

TRACE_SELECTOR = f"{TRACE_LABEL_KEY}={TRACE_LABEL_VALUE}"


def new_trace_id() -> str:
    return str(uuid.uuid4())


def object_name(trace_id: str) -> str:
    return f"{OBJECT_NAME_PREFIX}{trace_id}"


def trace_id_from_name(name: str) -> str:
    if not name.startswith(OBJECT_NAME_PREFIX):
        raise ValueError(f"'{name}' is not a kubetrace object name")
    return name[len(OBJECT_NAME_PREFIX) :]


def trace_labels(trace_id: str) -> dict[str, str]:
    return {TRACE_LABEL_KEY: TRACE_LABEL_VALUE, TRACE_ID_LABEL_KEY: trace_id}


def trace_id_selector(trace_id: str) -> str:
    return f"{TRACE_ID_LABEL_KEY}={trace_id}"
