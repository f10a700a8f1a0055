"""Common utilities for manifest apply and rollout tracking."""

import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Result returned by an action."""
    success: bool
    message: str = ''
    duration: float = 0.0
    context_updates: dict = field(default_factory=dict)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: float = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    input_text: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    A timeout is reported as returncode -1 with a 'timed out' stderr, the
    same shape as any other failure, so callers only branch on rc.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=input_text,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout or '', result.stderr or ''
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


@dataclass
class Deadline:
    """A wall-clock budget measured on a monotonic clock."""
    seconds: float
    clock: Callable[[], float] = time.monotonic
    started_at: float = field(default=0.0, init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def bound(self, cap: float) -> float:
        """Return a per-call timeout no longer than the remaining budget."""
        return min(cap, self.remaining())
