"""Default settings for trace jobs, overridable through KUBETRACE_* variables."""

import os
from dataclasses import dataclass

from kubetrace.errors import ConfigurationError

DEFAULT_IMAGE = "quay.io/iovisor/kubectl-trace-bpftrace:latest"
DEFAULT_INIT_IMAGE = "quay.io/iovisor/kubectl-trace-init:latest"
# Maximum time a trace program is allowed to run, in seconds
DEFAULT_DEADLINE = 3600
# Extra time to print maps or histograms after the deadline, in seconds.
# The deadline counts from pod start, so this also absorbs startup time.
DEFAULT_DEADLINE_GRACE_PERIOD = 30


@dataclass(frozen=True)
class TraceDefaults:
    image: str = DEFAULT_IMAGE
    init_image: str = DEFAULT_INIT_IMAGE
    service_account: str = "default"
    deadline: int = DEFAULT_DEADLINE
    deadline_grace_period: int = DEFAULT_DEADLINE_GRACE_PERIOD
    ttl_seconds_after_finished: int = 5
    # Pod readiness wait, independent of the trace deadline
    attach_timeout: float = 300.0
    poll_initial_interval: float = 1.0
    poll_max_interval: float = 10.0
    poll_factor: float = 2.0

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "TraceDefaults":
        env = os.environ if environ is None else environ
        base = cls()
        return cls(
            image=env.get("KUBETRACE_IMAGE", base.image),
            init_image=env.get("KUBETRACE_INIT_IMAGE", base.init_image),
            service_account=env.get(
                "KUBETRACE_SERVICE_ACCOUNT", base.service_account
            ),
            deadline=_env_number(env, "KUBETRACE_DEADLINE", base.deadline, int),
            deadline_grace_period=_env_number(
                env, "KUBETRACE_DEADLINE_GRACE_PERIOD", base.deadline_grace_period, int
            ),
            ttl_seconds_after_finished=_env_number(
                env, "KUBETRACE_TTL_AFTER_FINISHED", base.ttl_seconds_after_finished, int
            ),
            attach_timeout=_env_number(
                env, "KUBETRACE_ATTACH_TIMEOUT", base.attach_timeout, float
            ),
        )


def _env_number(env, key: str, default, cast):
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got '{raw}'")
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative, got '{raw}'")
    return value
