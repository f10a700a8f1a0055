"""kubectl-backed cluster actions."""

from actions.kubectl import (
    ApplyOutcome,
    EnsureNamespaceAction,
    KubectlApplyAction,
)
from actions.status import KubectlStatusReader, StatusReader

__all__ = [
    'ApplyOutcome',
    'EnsureNamespaceAction',
    'KubectlApplyAction',
    'KubectlStatusReader',
    'StatusReader',
]
