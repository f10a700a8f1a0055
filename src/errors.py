"""Exception types for rollout-driver.

Fatal precondition errors (BuildError, TrackingListError,
UnknownWorkloadError, NamespaceError) abort a run before anything is
submitted to the cluster. ApplyError and the status read errors are
recorded in the report instead of aborting.
"""


class RolloutError(Exception):
    """Base class for rollout-driver errors."""


class BuildError(RolloutError):
    """Manifest build or parse failed."""


class TrackingListError(RolloutError, ValueError):
    """A workload tracking entry is malformed."""


class UnknownWorkloadError(RolloutError):
    """Tracked workloads are not present in the manifest set."""

    def __init__(self, missing):
        self.missing = list(missing)
        names = ', '.join(str(ref) for ref in self.missing)
        super().__init__(f"Tracked workload(s) not found in manifests: {names}")


class NamespaceError(RolloutError):
    """Target namespace could not be ensured."""


class ApplyError(RolloutError):
    """kubectl apply aborted without per-object results."""


class StatusReadError(RolloutError):
    """Reading a workload's status from the cluster failed."""


class WorkloadNotFoundError(StatusReadError):
    """The workload does not exist (yet) in the cluster."""
