"""Workload readiness evaluation and polling.

Readiness is decided per kind from the live object returned by the
cluster. The poller re-reads every non-terminal workload once per cycle,
issuing the reads concurrently and waiting for all of them before
updating state, until every workload is terminal, the wait budget is
spent, or the run is cancelled.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from common import Deadline
from errors import StatusReadError
from rollout_opr.state import Phase, TrackingState
from workloads import WorkloadRef

logger = logging.getLogger(__name__)

READY = 'ready'
FAILED = 'failed'
PROGRESSING = 'progressing'


@dataclass(frozen=True)
class Verdict:
    """Outcome of evaluating one live object."""
    status: str  # 'ready', 'failed', 'progressing'
    observed: Optional[int] = None
    desired: Optional[int] = None
    condition: str = ''
    reason: str = ''


def _status(obj: dict) -> dict:
    return obj.get('status') or {}


def _spec(obj: dict) -> dict:
    return obj.get('spec') or {}


def _int(value, default: int = 0) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else default


def _condition(obj: dict, cond_type: str) -> Optional[dict]:
    for cond in _status(obj).get('conditions') or []:
        if isinstance(cond, dict) and cond.get('type') == cond_type:
            return cond
    return None


def _condition_true(obj: dict, cond_type: str) -> bool:
    cond = _condition(obj, cond_type)
    return cond is not None and cond.get('status') == 'True'


def _generation_observed(obj: dict) -> bool:
    """True once the controller has seen the latest spec.

    An object with a generation but no observedGeneration has not been
    reconciled yet, so its status counters mean nothing.
    """
    generation = (obj.get('metadata') or {}).get('generation')
    if generation is None:
        return True
    observed = _status(obj).get('observedGeneration')
    if observed is None:
        return False
    return _int(observed) >= _int(generation)


def _desired_replicas(obj: dict) -> int:
    replicas = _spec(obj).get('replicas')
    return 1 if replicas is None else _int(replicas)


def deployment_verdict(obj: dict) -> Verdict:
    status = _status(obj)
    desired = _desired_replicas(obj)
    ready = _int(status.get('readyReplicas'))

    progressing = _condition(obj, 'Progressing')
    if progressing and progressing.get('reason') == 'ProgressDeadlineExceeded':
        return Verdict(FAILED, ready, desired, 'Progressing=False',
                       progressing.get('message') or 'progress deadline exceeded')

    if not _generation_observed(obj):
        return Verdict(PROGRESSING, ready, desired, 'waiting for controller to observe spec')

    updated = _int(status.get('updatedReplicas'))
    available = _int(status.get('availableReplicas'))
    total = _int(status.get('replicas'))
    if updated == desired and ready == desired and available == desired and total == desired:
        return Verdict(READY, ready, desired, 'Available=True')
    return Verdict(PROGRESSING, ready, desired,
                   f'{updated} updated, {ready} ready, {available} available of {desired}')


def statefulset_verdict(obj: dict) -> Verdict:
    status = _status(obj)
    desired = _desired_replicas(obj)
    ready = _int(status.get('readyReplicas'))
    if not _generation_observed(obj):
        return Verdict(PROGRESSING, ready, desired, 'waiting for controller to observe spec')

    updated = status.get('updatedReplicas')
    if updated is not None and _int(updated) < desired:
        return Verdict(PROGRESSING, ready, desired, f'{_int(updated)} of {desired} updated')

    current_rev = status.get('currentRevision')
    update_rev = status.get('updateRevision')
    if current_rev and update_rev and current_rev != update_rev:
        return Verdict(PROGRESSING, ready, desired, f'revision {update_rev} rolling out')

    if ready == desired:
        return Verdict(READY, ready, desired, f'{ready}/{desired} ready')
    return Verdict(PROGRESSING, ready, desired, f'{ready}/{desired} ready')


def replicaset_verdict(obj: dict) -> Verdict:
    status = _status(obj)
    desired = _desired_replicas(obj)
    ready = _int(status.get('readyReplicas'))
    if not _generation_observed(obj):
        return Verdict(PROGRESSING, ready, desired, 'waiting for controller to observe spec')
    if ready == desired and _int(status.get('replicas')) == desired:
        return Verdict(READY, ready, desired, f'{ready}/{desired} ready')
    return Verdict(PROGRESSING, ready, desired, f'{ready}/{desired} ready')


def daemonset_verdict(obj: dict) -> Verdict:
    status = _status(obj)
    desired = _int(status.get('desiredNumberScheduled'))
    ready = _int(status.get('numberReady'))
    if not _generation_observed(obj):
        return Verdict(PROGRESSING, ready, desired, 'waiting for controller to observe spec')
    if status.get('desiredNumberScheduled') is None:
        return Verdict(PROGRESSING, ready, desired, 'waiting for pods to be scheduled')

    updated = status.get('updatedNumberScheduled')
    if updated is not None and _int(updated) != desired:
        return Verdict(PROGRESSING, ready, desired, f'{_int(updated)} of {desired} updated')
    if ready == desired:
        return Verdict(READY, ready, desired, f'{ready}/{desired} scheduled ready')
    return Verdict(PROGRESSING, ready, desired, f'{ready}/{desired} scheduled ready')


def job_verdict(obj: dict) -> Verdict:
    status = _status(obj)
    completions = _spec(obj).get('completions')
    desired = 1 if completions is None else _int(completions)
    succeeded = _int(status.get('succeeded'))

    failed = _condition(obj, 'Failed')
    if failed is not None and failed.get('status') == 'True':
        reason = failed.get('message') or failed.get('reason') or 'job failed'
        return Verdict(FAILED, succeeded, desired, 'Failed=True', reason)
    if _condition_true(obj, 'Complete'):
        return Verdict(READY, succeeded, desired, 'Complete=True')
    return Verdict(PROGRESSING, succeeded, desired,
                   f'{succeeded}/{desired} succeeded, {_int(status.get("active"))} active')


def generic_verdict(obj: dict) -> Verdict:
    """Fallback for extra workload kinds: a Ready or Available condition."""
    for cond_type in ('Ready', 'Available'):
        if _condition_true(obj, cond_type):
            return Verdict(READY, condition=f'{cond_type}=True')
    return Verdict(PROGRESSING, condition='no Ready/Available condition')


PREDICATES: dict[str, Callable[[dict], Verdict]] = {
    'Deployment': deployment_verdict,
    'StatefulSet': statefulset_verdict,
    'ReplicaSet': replicaset_verdict,
    'DaemonSet': daemonset_verdict,
    'Job': job_verdict,
}


def evaluate(ref: WorkloadRef, obj: dict) -> Verdict:
    """Evaluate readiness of a live object using its kind's predicate."""
    return PREDICATES.get(ref.kind, generic_verdict)(obj)


class WaitOutcome(str, Enum):
    ALL_READY = 'all-ready'
    PARTIAL_FAILURE = 'partial-failure'
    TIMED_OUT = 'timed-out'
    CANCELLED = 'cancelled'


@dataclass
class _ReadResult:
    ref: WorkloadRef
    obj: Optional[dict] = None
    error: Optional[str] = None


class ReadinessPoller:
    """Polls tracked workloads until all are terminal or the budget is spent.

    Attributes:
        reader: StatusReader used for each read
        timeout: Global budget in seconds
        interval: Seconds between cycles
        read_timeout: Upper bound for a single read
        max_workers: Concurrent reads per cycle
        cancel_event: Set to stop before the next cycle
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        reader,
        timeout: float,
        interval: float = 5.0,
        read_timeout: float = 30.0,
        max_workers: int = 8,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.reader = reader
        self.timeout = timeout
        self.interval = interval
        self.read_timeout = read_timeout
        self.max_workers = max_workers
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        self.cycles = 0

    def _read(self, ref: WorkloadRef, timeout: float) -> _ReadResult:
        try:
            return _ReadResult(ref, obj=self.reader.read(ref, timeout))
        except StatusReadError as e:
            # Includes WorkloadNotFoundError: the object may not be visible yet
            return _ReadResult(ref, error=str(e))

    def _poll_cycle(self, tracking: TrackingState, deadline: Deadline) -> None:
        pending = tracking.pending()
        per_read = deadline.bound(self.read_timeout)
        workers = min(self.max_workers, len(pending))

        # Fan out, then wait for every read before touching state
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='status') as pool:
            futures = [pool.submit(self._read, state.ref, per_read) for state in pending]
            results = [f.result() for f in futures]

        for result in results:
            state = tracking.get(result.ref)
            state.count_poll()
            if result.error is not None:
                logger.debug(f"{result.ref}: {result.error}")
                state.record_error(result.error)
                continue

            verdict = evaluate(result.ref, result.obj or {})
            if verdict.status == READY:
                state.mark_ready(verdict.observed, verdict.desired, verdict.condition)
                logger.info(f"{result.ref} is ready ({verdict.condition})")
            elif verdict.status == FAILED:
                state.fail(verdict.reason, verdict.observed, verdict.desired, verdict.condition)
                logger.error(f"{result.ref} failed: {verdict.reason}")
            else:
                state.observe(verdict.observed, verdict.desired, verdict.condition)

    def wait(self, tracking: TrackingState) -> WaitOutcome:
        """Poll until every workload is terminal, time runs out, or cancel is set.

        On timeout every non-terminal workload becomes TIMED_OUT. On
        cancellation non-terminal workloads keep the phase they had.
        """
        deadline = Deadline(self.timeout, clock=self.clock)
        logger.info(f"Waiting up to {self.timeout}s for {len(tracking)} workload(s)...")

        while True:
            if self.cancel_event.is_set():
                logger.warning("Readiness wait cancelled")
                return WaitOutcome.CANCELLED
            if tracking.all_terminal:
                break
            if deadline.expired:
                for state in tracking.time_out_pending():
                    logger.error(f"{state.ref} timed out after {self.timeout}s")
                break

            self.cycles += 1
            self._poll_cycle(tracking, deadline)
            if tracking.all_terminal:
                break

            pending = tracking.pending()
            logger.info(f"{len(pending)} workload(s) not ready, "
                        f"{deadline.remaining():.0f}s left: "
                        f"{', '.join(str(s.ref) for s in pending)}")
            # Event.wait returns early when cancel is set
            self.cancel_event.wait(min(self.interval, deadline.remaining()))

        if tracking.all_ready:
            return WaitOutcome.ALL_READY
        if tracking.in_phase(Phase.TIMED_OUT):
            return WaitOutcome.TIMED_OUT
        return WaitOutcome.PARTIAL_FAILURE
