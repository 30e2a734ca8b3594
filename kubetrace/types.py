"""Type definitions for kubetrace."""

from dataclasses import dataclass, field
from enum import Enum


class ProgramKind(str, Enum):
    SCRIPT = "script"
    TOOLKIT = "toolkit"


@dataclass(frozen=True)
class NodeTarget:
    name: str


@dataclass(frozen=True)
class PodTarget:
    name: str
    container: str | None = None


Target = NodeTarget | PodTarget


@dataclass(frozen=True)
class ResolvedTarget:
    """Where a trace runs. Pod fields are kept for correlation only."""

    hostname: str
    node_name: str
    pod_name: str | None = None
    pod_uid: str | None = None
    container: str | None = None

    @property
    def is_pod(self) -> bool:
        return self.pod_uid is not None


@dataclass(frozen=True)
class TraceRequest:
    target: Target
    program: str
    program_kind: ProgramKind = ProgramKind.SCRIPT
    program_args: tuple[str, ...] = ()
    fetch_headers: bool = False
    # None means "use the configured default"
    image: str | None = None
    init_image: str | None = None
    service_account: str | None = None
    deadline: int | None = None
    deadline_grace_period: int | None = None


@dataclass(frozen=True)
class TraceJob:
    id: str
    name: str
    namespace: str
    target: ResolvedTarget
    program: str
    program_kind: ProgramKind
    program_args: tuple[str, ...]
    fetch_headers: bool
    image: str
    init_image: str
    service_account: str
    deadline: int
    deadline_grace_period: int

    @property
    def active_deadline(self) -> int:
        return self.deadline + self.deadline_grace_period


@dataclass
class JobHandle:
    trace_id: str
    name: str
    namespace: str
    uid: str
    node: str = ""
    pod_name: str = ""
    container: str = ""
    start_time: str = ""  # ISO 8601, empty until the workload starts
    phase: str = "Unknown"


@dataclass(frozen=True)
class TraceFilter:
    trace_id: str | None = None
    node: str | None = None


@dataclass(frozen=True)
class TraceJobSummary:
    id: str
    namespace: str
    target: str
    start_time: str
    phase: str


@dataclass
class PodInfo:
    name: str
    namespace: str
    node_name: str
    status: str
    labels: dict[str, str] = field(default_factory=dict)
    creation_time: str = ""
