"""Rollout executor: resolve, extract, apply, wait, report.

Fatal preconditions (build, tracking list, namespace) are all checked
before anything is submitted, so a failing run never half-applies.
Apply and readiness problems are recorded in the report instead of
aborting, so callers see every object's outcome.
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from actions.kubectl import ApplyOutcome, EnsureNamespaceAction, KubectlApplyAction
from actions.status import KubectlStatusReader
from config import ApplyConfig
from errors import ApplyError, NamespaceError, RolloutError
from manifest import ManifestDocument, build_overlay, load_manifest_file
from readiness import ReadinessPoller
from reporting.report import ApplyReport
from rollout_opr.state import TrackingState
from workloads import WorkloadRef, extract_workloads, parse_tracking_list

logger = logging.getLogger(__name__)

MISSING_NAMESPACE_NOTE = 'namespace missing in dry run'


@dataclass
class RolloutExecutor:
    """Applies one manifest set and tracks its workloads.

    Attributes:
        config: Immutable run configuration
        overlay_dir: Kustomize overlay to build (exclusive with manifest_file)
        manifest_file: Pre-built manifest file, or '-' for stdin
        tracked: Caller-supplied workload identities; empty derives them
        cancel_event: Set to stop readiness polling before the next cycle
        namespace_action: Namespace-ensure collaborator
        apply_action: Apply collaborator
        reader: Status-read collaborator (defaults to kubectl)
    """
    config: ApplyConfig
    overlay_dir: Optional[str] = None
    manifest_file: Optional[str] = None
    tracked: list[Any] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    namespace_action: Any = field(default_factory=EnsureNamespaceAction)
    apply_action: Any = field(default_factory=KubectlApplyAction)
    reader: Any = None

    def __post_init__(self) -> None:
        if bool(self.overlay_dir) == bool(self.manifest_file):
            raise ValueError("Specify exactly one of overlay_dir or manifest_file")
        if self.reader is None:
            self.reader = KubectlStatusReader(self.config)

    @property
    def source(self) -> str:
        return self.overlay_dir or self.manifest_file or ''

    def resolve(self) -> list[ManifestDocument]:
        """Build or load the manifest set."""
        if self.overlay_dir:
            return build_overlay(self.overlay_dir, self.config)
        return load_manifest_file(self.manifest_file)

    def plan(self) -> tuple[list[ManifestDocument], list[WorkloadRef]]:
        """Resolve manifests and the workloads to track, without touching the cluster.

        Raises:
            BuildError, TrackingListError, UnknownWorkloadError
        """
        documents = self.resolve()
        tracked = parse_tracking_list(self.tracked, self.config.namespace,
                                      self.config.workload_kinds)
        refs = extract_workloads(documents, tracked, self.config.namespace,
                                 self.config.workload_kinds)
        return documents, refs

    def _ensure_namespace(self) -> bool:
        """Ensure the namespace; True when a dry run left it absent."""
        result = self.namespace_action.run(self.config)
        if not result.success:
            raise NamespaceError(result.message)
        logger.debug(result.message)
        return bool(result.context_updates.get('namespace_missing'))

    def _mark_missing_namespace(self, outcomes: list[ApplyOutcome]) -> list[ApplyOutcome]:
        """Tag errors caused by the namespace a dry run could not create."""
        namespace = self.config.namespace
        marked = []
        for outcome in outcomes:
            if outcome.is_error and outcome.namespace == namespace:
                outcome = dataclasses.replace(
                    outcome, message=f"{MISSING_NAMESPACE_NOTE}: {outcome.message}")
            marked.append(outcome)
        logger.warning(f"Namespace {namespace} does not exist; dry-run errors in it "
                       f"are marked '{MISSING_NAMESPACE_NOTE}'")
        return marked

    def _apply(self, documents: list[ManifestDocument]) -> list[ApplyOutcome]:
        try:
            return self.apply_action.run(self.config, documents)
        except ApplyError as e:
            logger.error(f"Apply aborted: {e}")
            return [ApplyOutcome.aggregate_error(self.config.namespace, str(e))]

    def _wait(self, refs: list[WorkloadRef], outcomes: list[ApplyOutcome], report: ApplyReport) -> None:
        tracking = TrackingState(refs)

        # Objects the cluster rejected will never become ready
        for outcome in outcomes:
            ref = WorkloadRef(outcome.kind, outcome.namespace, outcome.name)
            if outcome.is_error and ref in tracking:
                tracking.get(ref).fail(f"apply failed: {outcome.message}")

        poller = ReadinessPoller(
            reader=self.reader,
            timeout=self.config.wait_timeout,
            interval=self.config.poll_interval,
            read_timeout=self.config.read_timeout,
            max_workers=self.config.max_workers,
            cancel_event=self.cancel_event,
        )
        report.tracking = tracking
        report.wait_outcome = poller.wait(tracking)

    def run(self) -> ApplyReport:
        """Execute the full workflow and return the report."""
        report = ApplyReport(
            namespace=self.config.namespace,
            source=self.source,
            dry_run=self.config.dry_run,
        )
        report.start()

        try:
            documents, refs = self.plan()
            logger.info(f"Resolved {len(documents)} object(s), tracking {len(refs)} workload(s)")
            for ref in refs:
                logger.debug(f"Tracking {ref}")
            namespace_missing = self._ensure_namespace()
        except RolloutError as e:
            logger.error(f"{type(e).__name__}: {e}")
            report.record_fatal(e)
            report.finish()
            return report

        report.outcomes = self._apply(documents)
        if namespace_missing:
            report.outcomes = self._mark_missing_namespace(report.outcomes)
        for outcome in report.outcomes:
            logger.info(str(outcome))

        aborted = any(o.kind == '*' and o.is_error for o in report.outcomes)
        if not self.config.should_wait:
            reason = 'dry run' if self.config.dry_run else 'wait disabled'
            logger.info(f"Readiness wait skipped ({reason})")
        elif aborted:
            logger.error("Readiness wait skipped: apply aborted")
        else:
            self._wait(refs, report.outcomes, report)

        report.finish()
        logger.info(f"Apply to {self.config.namespace} "
                    f"{'succeeded' if report.success else 'failed'} in {report.duration:.1f}s")
        return report
