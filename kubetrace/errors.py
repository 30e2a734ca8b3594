"""Error types for kubetrace."""


class TraceError(Exception):
    """Base class for every error raised by kubetrace."""


class InvalidSpecError(TraceError, ValueError):
    """The trace request cannot be turned into a workload (bad program or target)."""


class ConfigurationError(TraceError, ValueError):
    pass


class TargetResolutionError(TraceError):
    """The requested node or pod cannot host a trace."""


class AlreadyExistsError(TraceError):
    """An object with the derived trace name already exists."""


class TraceNotFoundError(TraceError):
    pass


class PodNeverRanError(TraceError):
    """The trace pod reached a terminal phase before it was seen running."""

    def __init__(self, pod_name: str, phase: str):
        super().__init__(f"Pod '{pod_name}' is {phase} and never ran")
        self.pod_name = pod_name
        self.phase = phase


class DuplicatePodsError(TraceError):
    """More than one pod claims to belong to the same trace."""

    def __init__(self, trace_id: str, pod_names: list[str]):
        super().__init__(
            f"Found {len(pod_names)} pods for trace {trace_id}: {', '.join(pod_names)}"
        )
        self.trace_id = trace_id
        self.pod_names = pod_names


class WaitTimeoutError(TraceError, TimeoutError):
    pass


class StreamInterruptedError(TraceError):
    pass


class TraceCancelledError(TraceError):
    """The caller cancelled the operation; not a failure."""


class ClusterApiError(TraceError):
    """A cluster API call failed. The original ApiException is the __cause__."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
