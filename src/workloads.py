"""Workload identity extraction.

Determines which objects of a manifest set are workloads to track, either
by validating a caller-supplied list against the manifests or by deriving
the list from the manifests themselves. A tracked ref always corresponds to
a document in the manifest set, so the rollout never waits on objects
that this apply did not submit.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from errors import TrackingListError, UnknownWorkloadError

logger = logging.getLogger(__name__)

# Kinds that manage pods and have a readiness notion
WORKLOAD_KINDS = ('Deployment', 'StatefulSet', 'DaemonSet', 'Job', 'ReplicaSet')


@dataclass(frozen=True, order=True)
class WorkloadRef:
    """Identity of a trackable workload: (kind, namespace, name)."""
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'namespace': self.namespace, 'name': self.name}

    @classmethod
    def from_document(cls, doc, default_namespace: str) -> 'WorkloadRef':
        return cls(kind=doc.kind, namespace=doc.effective_namespace(default_namespace), name=doc.name)


def _canonical_kind(kind: str, known_kinds: Iterable[str]) -> str:
    """Map a case-insensitive kind to its canonical CamelCase spelling."""
    for known in known_kinds:
        if known.lower() == kind.lower():
            return known
    return kind


def _parse_entry(entry: Any, default_namespace: str, known_kinds: Iterable[str]) -> WorkloadRef:
    if isinstance(entry, WorkloadRef):
        return entry

    if isinstance(entry, str):
        parts = entry.strip().split('/')
        if len(parts) == 3:
            kind, namespace, name = parts
        elif len(parts) == 2:
            kind, name = parts
            namespace = ''
        else:
            raise TrackingListError(
                f"Invalid workload '{entry}': expected Kind/namespace/name or Kind/name"
            )
    elif isinstance(entry, dict):
        kind = entry.get('kind')
        name = entry.get('name')
        namespace = entry.get('namespace') or ''
        if not isinstance(kind, str) or not isinstance(name, str) or not isinstance(namespace, str):
            raise TrackingListError(f"Invalid workload entry {entry!r}: kind and name are required")
    else:
        raise TrackingListError(f"Invalid workload entry {entry!r}")

    if not kind or not name:
        raise TrackingListError(f"Invalid workload entry {entry!r}: kind and name are required")
    return WorkloadRef(
        kind=_canonical_kind(kind, known_kinds),
        namespace=namespace or default_namespace,
        name=name,
    )


def parse_tracking_list(
    entries: Optional[Iterable[Any]],
    default_namespace: str,
    known_kinds: Iterable[str] = WORKLOAD_KINDS,
) -> list[WorkloadRef]:
    """Normalize caller-supplied workload identities.

    Entries may be mappings ({kind, namespace, name}), strings
    (Kind/namespace/name or Kind/name) or WorkloadRefs. A missing
    namespace defaults to default_namespace. Duplicates are dropped,
    keeping the first occurrence.

    Raises:
        TrackingListError: On a malformed entry
    """
    known_kinds = tuple(known_kinds)
    refs: list[WorkloadRef] = []
    seen: set[WorkloadRef] = set()
    for entry in entries or []:
        ref = _parse_entry(entry, default_namespace, known_kinds)
        if ref not in seen:
            seen.add(ref)
            refs.append(ref)
    return refs


def load_tracking_file(path: str) -> list[Any]:
    """Load raw tracking entries from a JSON or YAML file.

    Accepts a top-level list, or a mapping with a 'workloads' list (the
    document 'inspect --json-output' emits).

    Raises:
        TrackingListError: If the file is unreadable or has the wrong shape
    """
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding='utf-8')
    except OSError as e:
        raise TrackingListError(f"Cannot read tracking file {file_path}: {e}") from e

    try:
        if file_path.suffix == '.json':
            data = json.loads(text)
        else:
            # YAML is a superset of JSON
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise TrackingListError(f"Invalid tracking file {file_path}: {e}") from e

    if isinstance(data, dict):
        data = data.get('workloads')
    if data is None:
        return []
    if not isinstance(data, list):
        raise TrackingListError(
            f"Tracking file {file_path} must hold a list or a mapping with a 'workloads' list"
        )
    return data


def extract_workloads(
    documents,
    tracked: Optional[list[WorkloadRef]],
    namespace: str,
    kinds: Iterable[str] = WORKLOAD_KINDS,
) -> list[WorkloadRef]:
    """Derive the ordered set of workloads to track.

    Args:
        documents: ManifestDocuments of this apply, in build order
        tracked: Caller-supplied refs (already normalized); empty or None
            means derive from the manifests
        namespace: Target namespace; used for documents without one
        kinds: Workload kind allow-list for derivation

    Returns:
        Deduplicated refs; caller order when tracked is given, manifest
        encounter order otherwise

    Raises:
        UnknownWorkloadError: If any tracked ref has no matching document
        TrackingListError: If a tracked ref is not of a workload kind
    """
    present = [WorkloadRef.from_document(doc, namespace) for doc in documents]
    allowed = set(kinds)

    if tracked:
        available = set(present)
        missing = [ref for ref in tracked if ref not in available]
        if missing:
            raise UnknownWorkloadError(missing)
        not_workloads = [str(ref) for ref in tracked if ref.kind not in allowed]
        if not_workloads:
            raise TrackingListError(
                f"Not a workload kind ({', '.join(sorted(allowed))}): {', '.join(not_workloads)}"
            )
        refs = list(dict.fromkeys(tracked))
        logger.debug(f"Tracking {len(refs)} caller-supplied workload(s)")
        return refs

    refs = list(dict.fromkeys(ref for ref in present if ref.kind in allowed))
    logger.debug(f"Derived {len(refs)} workload(s) from {len(present)} document(s)")
    return refs
