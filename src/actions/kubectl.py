"""kubectl actions: namespace ensure and manifest apply."""

import logging
import re
import time
from dataclasses import dataclass

from common import ActionResult, run_command
from config import ApplyConfig
from errors import ApplyError
from manifest import ManifestDocument, dump_manifests

logger = logging.getLogger(__name__)

CREATED = 'created'
CONFIGURED = 'configured'
UNCHANGED = 'unchanged'
WOULD_CHANGE = 'would-change'
ERROR = 'error'

# kubectl apply prints one line per object: "<resource>[.<group>]/<name> <verb>[ (server dry run)]"
_APPLY_LINE_RE = re.compile(
    r'^(?P<resource>[^/\s]+)/(?P<name>\S+)\s+(?P<verb>[a-z-]+)(?P<dry>\s+\((?:server )?dry run\))?\s*$'
)

_VERBS = {
    'created': CREATED,
    'configured': CONFIGURED,
    'unchanged': UNCHANGED,
    'serverside-applied': CONFIGURED,
}


@dataclass(frozen=True)
class ApplyOutcome:
    """Result of applying one object."""
    kind: str
    namespace: str
    name: str
    action: str
    message: str = ''

    @property
    def is_error(self) -> bool:
        return self.action == ERROR

    def __str__(self) -> str:
        location = f"{self.kind}/{self.namespace}" if self.namespace else self.kind
        return f"{location} {self.name}: {self.action}"

    def to_dict(self) -> dict:
        d = {
            'kind': self.kind,
            'namespace': self.namespace,
            'name': self.name,
            'action': self.action,
        }
        if self.message:
            d['message'] = self.message
        return d

    @classmethod
    def for_document(cls, doc: ManifestDocument, namespace: str, action: str,
                     message: str = '') -> 'ApplyOutcome':
        return cls(
            kind=doc.kind,
            namespace=doc.effective_namespace(namespace),
            name=doc.name,
            action=action,
            message=message,
        )

    @classmethod
    def aggregate_error(cls, namespace: str, message: str) -> 'ApplyOutcome':
        """Single outcome standing for an apply that aborted as a whole."""
        return cls(kind='*', namespace=namespace, name='*', action=ERROR, message=message)


def _resource_kind(resource: str) -> str:
    """'deployment.apps' -> 'deployment'."""
    return resource.split('.', 1)[0].lower()


def _error_for(doc: ManifestDocument, stderr_lines: list[str]) -> str:
    """Find the stderr line kubectl wrote for a document."""
    quoted = f'"{doc.name}"'
    kind = doc.kind.lower()
    for line in stderr_lines:
        if quoted in line and kind in line.lower():
            return line.strip()
    return ''


def parse_apply_output(
    documents: list[ManifestDocument],
    stdout: str,
    stderr: str,
    returncode: int,
    namespace: str,
    dry_run: bool = False,
) -> list[ApplyOutcome]:
    """Map kubectl apply output to one outcome per submitted document.

    Reported lines are matched to the first unmatched document with the
    same kind and name, so outcomes keep submission order even when the
    same kind/name appears in several namespaces.

    Raises:
        ApplyError: If kubectl failed without reporting any object
    """
    reported: dict[int, str] = {}
    for line in stdout.splitlines():
        m = _APPLY_LINE_RE.match(line.strip())
        if not m:
            continue
        kind = _resource_kind(m.group('resource'))
        name = m.group('name')
        verb = m.group('verb')
        action = _VERBS.get(verb, CONFIGURED)
        if (dry_run or m.group('dry')) and action != UNCHANGED:
            action = WOULD_CHANGE
        for doc in documents:
            if doc.index not in reported and doc.kind.lower() == kind and doc.name == name:
                reported[doc.index] = action
                break
        else:
            logger.debug(f"Unmatched kubectl apply line: {line}")

    if returncode != 0 and not reported:
        raise ApplyError(stderr.strip() or f"kubectl apply exited with code {returncode}")

    stderr_lines = [line for line in stderr.splitlines() if line.strip()]
    outcomes = []
    for doc in documents:
        if doc.index in reported:
            outcomes.append(ApplyOutcome.for_document(doc, namespace, reported[doc.index]))
        elif returncode != 0:
            message = _error_for(doc, stderr_lines) or stderr.strip() or 'not applied'
            outcomes.append(ApplyOutcome.for_document(doc, namespace, ERROR, message))
        else:
            # kubectl succeeded but printed nothing for this object
            outcomes.append(ApplyOutcome.for_document(
                doc, namespace, WOULD_CHANGE if dry_run else CONFIGURED, 'not reported by kubectl'))
    return outcomes


@dataclass
class EnsureNamespaceAction:
    """Create the target namespace if it does not exist."""
    name: str = 'ensure-namespace'

    def run(self, config: ApplyConfig) -> ActionResult:
        """Check for the namespace and create it when absent.

        In dry-run mode the create is a server dry run, so nothing persists.
        """
        start = time.time()
        namespace = config.namespace
        base = config.kubectl_base()

        rc, _, err = run_command(base + ['get', 'namespace', namespace, '-o', 'name'],
                                 timeout=config.command_budget)
        if rc == 0:
            logger.debug(f"[{self.name}] Namespace {namespace} exists")
            return ActionResult(
                success=True,
                message=f"Namespace {namespace} exists",
                duration=time.time() - start,
            )

        if 'NotFound' not in err and 'not found' not in err:
            return ActionResult(
                success=False,
                message=f"Cannot read namespace {namespace}: {err.strip()}",
                duration=time.time() - start,
            )

        cmd = base + ['create', 'namespace', namespace]
        if config.dry_run:
            cmd.append('--dry-run=server')
        logger.info(f"[{self.name}] Creating namespace {namespace}"
                    f"{' (server dry run)' if config.dry_run else ''}...")
        rc, _, err = run_command(cmd, timeout=config.command_budget)
        if rc != 0 and 'AlreadyExists' not in err:
            return ActionResult(
                success=False,
                message=f"Cannot create namespace {namespace}: {err.strip()}",
                duration=time.time() - start,
            )

        return ActionResult(
            success=True,
            message=f"Namespace {namespace} created",
            duration=time.time() - start,
            context_updates={
                'namespace_created': not config.dry_run and rc == 0,
                # A dry-run create leaves the namespace absent for the apply
                'namespace_missing': config.dry_run and rc == 0,
            },
        )


@dataclass
class KubectlApplyAction:
    """Submit the whole manifest set in one kubectl apply call."""
    name: str = 'apply'

    def build_command(self, config: ApplyConfig) -> list[str]:
        cmd = config.kubectl_base() + [
            'apply',
            '-f', '-',
            f'--namespace={config.namespace}',
            f"--validate={'true' if config.validate else 'false'}",
        ]
        if config.server_side:
            cmd.extend(['--server-side', f'--field-manager={config.field_manager}'])
        if config.dry_run:
            cmd.append('--dry-run=server')
        return cmd

    def run(self, config: ApplyConfig, documents: list[ManifestDocument]) -> list[ApplyOutcome]:
        """Apply documents and return one outcome per document.

        The call is made exactly once; a failed apply is never retried.

        Raises:
            ApplyError: If kubectl aborted without per-object results
        """
        if not documents:
            return []

        cmd = self.build_command(config)
        mode = []
        if config.server_side:
            mode.append('server-side')
        if config.dry_run:
            mode.append('dry-run')
        logger.info(f"[{self.name}] Applying {len(documents)} object(s) to {config.namespace}"
                    f"{' (' + ', '.join(mode) + ')' if mode else ''}...")

        rc, out, err = run_command(cmd, timeout=config.command_budget,
                                   input_text=dump_manifests(documents))
        if rc != 0:
            logger.error(f"[{self.name}] kubectl apply exited with code {rc}")

        return parse_apply_output(
            documents, out, err, rc,
            namespace=config.namespace,
            dry_run=config.dry_run,
        )
