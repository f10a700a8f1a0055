"""Shared pytest fixtures for rollout-driver tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ApplyConfig
from errors import StatusReadError, WorkloadNotFoundError

DEPLOYMENT_API = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: api
  namespace: staging
spec:
  replicas: 2
  template:
    spec:
      containers:
        - name: api
          image: example/api:1.0
"""

SERVICE_API = """\
apiVersion: v1
kind: Service
metadata:
  name: api
  namespace: staging
spec:
  ports:
    - port: 80
"""

JOB_MIGRATE = """\
apiVersion: batch/v1
kind: Job
metadata:
  name: migrate
  namespace: staging
spec:
  template:
    spec:
      restartPolicy: Never
      containers:
        - name: migrate
          image: example/migrate:1.0
"""


@pytest.fixture
def make_config():
    """Factory for ApplyConfig with fast test defaults."""
    def _make(**kwargs):
        kwargs.setdefault('namespace', 'staging')
        kwargs.setdefault('poll_interval', 0.001)
        return ApplyConfig(**kwargs)
    return _make


@pytest.fixture
def api_manifests():
    """Deployment + Service, as an overlay build would print them."""
    return f"{DEPLOYMENT_API}---\n{SERVICE_API}"


@pytest.fixture
def overlay_dir(tmp_path):
    """Overlay directory with a kustomization file."""
    overlay = tmp_path / 'overlays' / 'staging'
    overlay.mkdir(parents=True)
    (overlay / 'kustomization.yaml').write_text(
        "resources:\n  - ../../base\nnamespace: staging\n"
    )
    return overlay


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        # Concurrent readers advance the clock from worker threads
        with self._lock:
            self.now += seconds


class FakeReader:
    """StatusReader returning scripted objects per ref.

    Each ref maps to a list of responses consumed one per read; the last
    response repeats. A response may be a dict (live object) or an
    exception instance to raise.
    """

    def __init__(self, responses, clock=None, step: float = 0.0):
        self.responses = {ref: list(items) for ref, items in responses.items()}
        self.clock = clock
        self.step = step
        self.calls = []

    def read(self, ref, timeout):
        self.calls.append((ref, timeout))
        if self.clock is not None:
            self.clock.advance(self.step)
        items = self.responses.get(ref)
        if not items:
            raise WorkloadNotFoundError(f"{ref} not found")
        response = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(response, StatusReadError):
            raise response
        return response


@pytest.fixture
def fake_clock():
    return FakeClock()


def deployment_status(desired=2, ready=None, updated=None, available=None, replicas=None,
                      generation=1, observed_generation=1, conditions=None):
    """Build a live Deployment object."""
    ready = desired if ready is None else ready
    return {
        'apiVersion': 'apps/v1',
        'kind': 'Deployment',
        'metadata': {'name': 'api', 'generation': generation},
        'spec': {'replicas': desired},
        'status': {
            'observedGeneration': observed_generation,
            'replicas': desired if replicas is None else replicas,
            'updatedReplicas': desired if updated is None else updated,
            'readyReplicas': ready,
            'availableReplicas': ready if available is None else available,
            'conditions': conditions or [],
        },
    }


def job_status(complete=False, failed=False, succeeded=0, message=''):
    """Build a live Job object."""
    conditions = []
    if complete:
        conditions.append({'type': 'Complete', 'status': 'True'})
    if failed:
        conditions.append({'type': 'Failed', 'status': 'True', 'reason': 'BackoffLimitExceeded',
                           'message': message or 'Job has reached the specified backoff limit'})
    return {
        'apiVersion': 'batch/v1',
        'kind': 'Job',
        'metadata': {'name': 'migrate'},
        'spec': {'completions': 1},
        'status': {'succeeded': succeeded, 'conditions': conditions},
    }
