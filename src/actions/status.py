"""Workload status reads via kubectl get."""

import json
import logging
import math
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from common import run_command
from config import ApplyConfig
from errors import StatusReadError, WorkloadNotFoundError
from workloads import WorkloadRef

logger = logging.getLogger(__name__)


@runtime_checkable
class StatusReader(Protocol):
    """Protocol for cluster status reads used by the readiness poller."""

    def read(self, ref: WorkloadRef, timeout: float) -> dict:
        """Return the live object for ref.

        Raises:
            WorkloadNotFoundError: If the object does not exist
            StatusReadError: On any other read failure
        """


@dataclass
class KubectlStatusReader:
    """Read live workload objects with 'kubectl get -o json'."""
    config: ApplyConfig

    def read(self, ref: WorkloadRef, timeout: float) -> dict:
        if timeout <= 0:
            raise StatusReadError(f"No time left to read {ref}")

        # --request-timeout bounds the API call, the process timeout bounds kubectl itself
        seconds = max(1, math.ceil(timeout))
        cmd = self.config.kubectl_base() + [
            'get', ref.kind.lower(), ref.name,
            f'--namespace={ref.namespace}',
            '-o', 'json',
            f'--request-timeout={seconds}s',
        ]
        rc, out, err = run_command(cmd, timeout=timeout)
        if rc != 0:
            if 'NotFound' in err:
                raise WorkloadNotFoundError(f"{ref} not found")
            raise StatusReadError(f"Cannot read {ref}: {err.strip() or f'exit code {rc}'}")

        try:
            obj = json.loads(out)
        except json.JSONDecodeError as e:
            raise StatusReadError(f"Invalid JSON for {ref}: {e}") from e
        if not isinstance(obj, dict):
            raise StatusReadError(f"Unexpected status payload for {ref}")
        return obj
