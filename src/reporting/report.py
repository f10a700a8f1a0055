"""Apply reporting: aggregate outcomes and readiness into one result."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from actions.kubectl import ApplyOutcome
from readiness import WaitOutcome
from rollout_opr.state import Phase, TrackingState


@dataclass
class ApplyReport:
    """Structured result of one apply invocation.

    success is computed from the final aggregate only: no fatal error, no
    error outcome, and (when waited) every tracked workload ready.
    """
    namespace: str
    source: str = ''
    dry_run: bool = False
    outcomes: list[ApplyOutcome] = field(default_factory=list)
    tracking: Optional[TrackingState] = None
    wait_outcome: Optional[WaitOutcome] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def start(self):
        self.started_at = datetime.now()

    def finish(self):
        self.finished_at = datetime.now()

    def record_fatal(self, error: Exception):
        """Record the error that aborted the run."""
        self.error_type = type(error).__name__
        self.error_message = str(error)

    @property
    def waited(self) -> bool:
        return self.wait_outcome is not None

    @property
    def apply_errors(self) -> list[ApplyOutcome]:
        return [o for o in self.outcomes if o.is_error]

    @property
    def success(self) -> bool:
        if self.error_type is not None or self.apply_errors:
            return False
        if not self.waited:
            return True
        return self.wait_outcome == WaitOutcome.ALL_READY and \
            self.tracking is not None and self.tracking.all_ready

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def failures(self) -> list[dict]:
        """Everything that made the run fail, one entry per object."""
        items = []
        if self.error_type is not None:
            items.append({'type': self.error_type, 'message': self.error_message})
        for outcome in self.apply_errors:
            items.append({'type': 'ApplyError', **outcome.to_dict()})
        if self.waited and self.tracking is not None:
            for state in self.tracking:
                if state.phase == Phase.READY:
                    continue
                entry = {'type': _failure_type(state.phase), **state.ref.to_dict(),
                         'status': state.phase.value}
                if state.last_error:
                    entry['message'] = state.last_error
                items.append(entry)
        return items

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        result: dict = {
            'success': self.success,
            'namespace': self.namespace,
            'dry_run': self.dry_run,
            'duration_seconds': round(self.duration, 1),
            'outcomes': [o.to_dict() for o in self.outcomes],
        }
        if self.source:
            result['source'] = self.source
        if self.waited and self.tracking is not None:
            result['readiness'] = {
                'outcome': self.wait_outcome.value,
                'counts': self.tracking.counts(),
                'workloads': self.tracking.to_list(),
            }
        if self.error_type is not None:
            result['error'] = {'type': self.error_type, 'message': self.error_message}
        if not self.success:
            result['failures'] = self.failures()
        return result

    def summary_lines(self) -> list[str]:
        """Human-readable summary for stdout."""
        lines = [str(o) for o in self.outcomes]
        for o in self.apply_errors:
            if o.message:
                lines.append(f"  error: {o.message}")

        if self.waited and self.tracking is not None:
            lines.append('')
            lines.append(f"Readiness: {self.wait_outcome.value}")
            for state in self.tracking:
                detail = ''
                if state.observed_replicas is not None and state.desired_replicas is not None:
                    detail = f" ({state.observed_replicas}/{state.desired_replicas})"
                line = f"  {state.ref}: {state.phase.value}{detail}"
                if state.last_error and state.phase != Phase.READY:
                    line += f" - {state.last_error}"
                lines.append(line)

        if self.error_type is not None:
            lines.append(f"Error ({self.error_type}): {self.error_message}")
        lines.append('')
        lines.append('SUCCESS' if self.success else 'FAILED')
        return lines

    def write(self, report_dir: Path) -> list[Path]:
        """Write JSON and markdown reports to report_dir."""
        report_dir = Path(report_dir)
        report_dir.mkdir(parents=True, exist_ok=True)

        json_path = self._report_filename(report_dir, 'json')
        with open(json_path, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

        md_path = self._report_filename(report_dir, 'md')
        with open(md_path, 'w', encoding="utf-8") as f:
            f.write('\n'.join(self._markdown_lines()))
        return [json_path, md_path]

    def _markdown_lines(self) -> list[str]:
        status = 'PASSED' if self.success else 'FAILED'
        lines = [
            f"# Apply to {self.namespace}",
            "",
            f"**Source**: {self.source or 'N/A'}",
            f"**Status**: {status}",
            f"**Dry run**: {'yes' if self.dry_run else 'no'}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Objects",
            "",
            "| Kind | Namespace | Name | Action | Message |",
            "|------|-----------|------|--------|---------|",
        ]
        for o in self.outcomes:
            lines.append(f"| {o.kind} | {o.namespace} | {o.name} | {o.action} | {o.message} |")

        if self.waited and self.tracking is not None:
            lines.extend([
                "",
                f"## Readiness ({self.wait_outcome.value})",
                "",
                "| Workload | Status | Replicas | Detail |",
                "|----------|--------|----------|--------|",
            ])
            for state in self.tracking:
                replicas = ''
                if state.desired_replicas is not None:
                    replicas = f"{state.observed_replicas or 0}/{state.desired_replicas}"
                detail = state.last_error or state.condition_status
                lines.append(f"| {state.ref} | {state.phase.value} | {replicas} | {detail} |")

        if self.error_type is not None:
            lines.extend(["", f"**Error** ({self.error_type}): {self.error_message}"])

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])
        return lines

    def _report_filename(self, report_dir: Path, ext: str) -> Path:
        """Generate report filename.

        Includes the namespace so parallel runs against different
        namespaces do not collide.
        """
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        return report_dir / f"{timestamp}.{self.namespace}.{status}.{ext}"


def _failure_type(phase: Phase) -> str:
    if phase == Phase.FAILED:
        return 'ReadinessFailure'
    if phase == Phase.TIMED_OUT:
        return 'TimeoutError'
    return 'NotReady'
