"""Readiness state tracking for rollout orchestration.

Each tracked workload has a ReadinessState whose phase moves
PENDING -> OBSERVING -> READY | FAILED | TIMED_OUT. Terminal phases are
final: any attempt to leave one raises ValueError.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from workloads import WorkloadRef

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    PENDING = 'pending'
    OBSERVING = 'observing'
    READY = 'ready'
    FAILED = 'failed'
    TIMED_OUT = 'timed-out'

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.READY, Phase.FAILED, Phase.TIMED_OUT)


@dataclass
class ReadinessState:
    """Per-workload readiness record.

    Attributes:
        ref: Workload being tracked
        phase: Current phase
        observed_replicas: Replicas (or completions) reported ready
        desired_replicas: Replicas (or completions) wanted
        condition_status: Short description of the deciding condition
        last_error: Last read error or failure reason
        polls: Number of status reads attempted
        started_at: Timestamp of the first read
        finished_at: Timestamp of reaching a terminal phase
    """
    ref: WorkloadRef
    phase: Phase = Phase.PENDING
    observed_replicas: Optional[int] = None
    desired_replicas: Optional[int] = None
    condition_status: str = ''
    last_error: Optional[str] = None
    polls: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def _transition(self, phase: Phase) -> None:
        if self.phase.is_terminal:
            raise ValueError(f"{self.ref} is already {self.phase.value}; cannot become {phase.value}")
        if phase != self.phase:
            logger.debug(f"{self.ref}: {self.phase.value} -> {phase.value}")
        self.phase = phase
        if phase.is_terminal:
            self.finished_at = time.time()

    def observe(self, observed: Optional[int], desired: Optional[int], condition: str = '') -> None:
        """Record a successful read that is not yet conclusive."""
        self._transition(Phase.OBSERVING)
        self.observed_replicas = observed
        self.desired_replicas = desired
        self.condition_status = condition
        self.last_error = None

    def record_error(self, error: str) -> None:
        """Record a failed read; the workload stays non-terminal."""
        if self.phase.is_terminal:
            raise ValueError(f"{self.ref} is already {self.phase.value}")
        self.last_error = error

    def mark_ready(self, observed: Optional[int], desired: Optional[int], condition: str = '') -> None:
        self._transition(Phase.READY)
        self.observed_replicas = observed
        self.desired_replicas = desired
        self.condition_status = condition
        self.last_error = None

    def fail(self, reason: str, observed: Optional[int] = None,
             desired: Optional[int] = None, condition: str = '') -> None:
        self._transition(Phase.FAILED)
        if observed is not None:
            self.observed_replicas = observed
        if desired is not None:
            self.desired_replicas = desired
        if condition:
            self.condition_status = condition
        self.last_error = reason

    def time_out(self) -> None:
        self._transition(Phase.TIMED_OUT)

    def count_poll(self) -> None:
        if self.started_at is None:
            self.started_at = time.time()
        self.polls += 1

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return self.finished_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'kind': self.ref.kind,
            'namespace': self.ref.namespace,
            'name': self.ref.name,
            'status': self.phase.value,
        }
        if self.observed_replicas is not None:
            d['observed_replicas'] = self.observed_replicas
        if self.desired_replicas is not None:
            d['desired_replicas'] = self.desired_replicas
        if self.condition_status:
            d['condition'] = self.condition_status
        if self.last_error is not None:
            d['error'] = self.last_error
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        d['polls'] = self.polls
        return d


class TrackingState:
    """Readiness states for every workload of one run, in tracking order."""

    def __init__(self, refs: Iterable[WorkloadRef]):
        self._states: dict[WorkloadRef, ReadinessState] = {}
        for ref in refs:
            if ref not in self._states:
                self._states[ref] = ReadinessState(ref=ref)

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self):
        return iter(self._states.values())

    def __contains__(self, ref: WorkloadRef) -> bool:
        return ref in self._states

    def get(self, ref: WorkloadRef) -> ReadinessState:
        """Get state by ref.

        Raises:
            KeyError: If ref is not tracked
        """
        return self._states[ref]

    @property
    def refs(self) -> list[WorkloadRef]:
        return list(self._states)

    def pending(self) -> list[ReadinessState]:
        """States that still need polling."""
        return [s for s in self._states.values() if not s.is_terminal]

    @property
    def all_terminal(self) -> bool:
        return not self.pending()

    @property
    def all_ready(self) -> bool:
        return all(s.phase == Phase.READY for s in self._states.values())

    def in_phase(self, phase: Phase) -> list[ReadinessState]:
        return [s for s in self._states.values() if s.phase == phase]

    def time_out_pending(self) -> list[ReadinessState]:
        """Mark every non-terminal workload as timed out."""
        timed_out = self.pending()
        for state in timed_out:
            state.time_out()
        return timed_out

    def counts(self) -> dict[str, int]:
        counts = {phase.value: 0 for phase in Phase}
        for state in self._states.values():
            counts[state.phase.value] += 1
        return counts

    def to_list(self) -> list[dict]:
        return [s.to_dict() for s in self._states.values()]
