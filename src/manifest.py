"""Manifest resolution: build a kustomize overlay and parse its output.

The build output is a multi-document YAML stream. Each document is parsed
into a structured tree with yaml.safe_load_all, so anchors, comments and
document separators never affect field lookup. `kind: List` documents are
flattened into their items.
"""

import copy
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from common import run_command
from errors import BuildError

logger = logging.getLogger(__name__)

KUSTOMIZATION_FILES = ('kustomization.yaml', 'kustomization.yml', 'Kustomization')

# Kinds that never carry metadata.namespace
CLUSTER_SCOPED_KINDS = frozenset({
    'Namespace',
    'ClusterRole',
    'ClusterRoleBinding',
    'CustomResourceDefinition',
    'PersistentVolume',
    'StorageClass',
    'PriorityClass',
    'IngressClass',
    'ValidatingWebhookConfiguration',
    'MutatingWebhookConfiguration',
    'APIService',
})


@dataclass(frozen=True)
class ManifestDocument:
    """A single parsed API object from the manifest set.

    Attributes:
        api_version: apiVersion of the object (e.g., apps/v1)
        kind: Object kind (e.g., Deployment)
        name: metadata.name
        namespace: metadata.namespace, empty when omitted
        index: Position in the build output
        body: Full parsed object
    """
    api_version: str
    kind: str
    name: str
    namespace: str = ''
    index: int = 0
    body: dict = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_namespaced(self) -> bool:
        return self.kind not in CLUSTER_SCOPED_KINDS

    @property
    def group(self) -> str:
        """API group ('' for the core group)."""
        if '/' in self.api_version:
            return self.api_version.split('/', 1)[0]
        return ''

    def effective_namespace(self, default: str) -> str:
        """Namespace the object lands in when applied with --namespace=default."""
        if not self.is_namespaced:
            return ''
        return self.namespace or default

    def get(self, *path: str, default: Any = None) -> Any:
        """Walk nested mappings, returning default when any key is absent."""
        node: Any = self.body
        for key in path:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def from_dict(cls, data: Any, index: int = 0, source: str = '<manifests>') -> 'ManifestDocument':
        """Create a document from a parsed YAML mapping.

        Raises:
            BuildError: If the mapping is not a well-formed API object
        """
        where = f"{source} document {index}"
        if not isinstance(data, dict):
            raise BuildError(f"{where}: expected a mapping, got {type(data).__name__}")

        api_version = data.get('apiVersion')
        kind = data.get('kind')
        metadata = data.get('metadata')
        if not isinstance(api_version, str) or not api_version:
            raise BuildError(f"{where}: missing apiVersion")
        if not isinstance(kind, str) or not kind:
            raise BuildError(f"{where}: missing kind")
        if not isinstance(metadata, dict):
            raise BuildError(f"{where}: {kind} has no metadata")

        name = metadata.get('name')
        if not isinstance(name, str) or not name:
            raise BuildError(f"{where}: {kind} has no metadata.name")
        namespace = metadata.get('namespace') or ''
        if not isinstance(namespace, str):
            raise BuildError(f"{where}: {kind} '{name}' has a non-string metadata.namespace")

        return cls(
            api_version=api_version,
            kind=kind,
            name=name,
            namespace=namespace,
            index=index,
            body=copy.deepcopy(data),
        )


def _is_list_kind(data: dict) -> bool:
    kind = data.get('kind', '')
    return isinstance(kind, str) and kind.endswith('List') and isinstance(data.get('items'), list)


def parse_manifests(text: str, source: str = '<manifests>') -> list[ManifestDocument]:
    """Parse a multi-document YAML stream into ManifestDocuments.

    Empty documents are skipped; List kinds are flattened in order.

    Raises:
        BuildError: On malformed YAML or malformed API objects
    """
    try:
        raw_docs = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise BuildError(f"Invalid YAML in {source}: {e}") from e

    documents: list[ManifestDocument] = []
    for raw in raw_docs:
        if raw is None:
            continue
        items = raw['items'] if isinstance(raw, dict) and _is_list_kind(raw) else [raw]
        for item in items:
            documents.append(ManifestDocument.from_dict(item, index=len(documents), source=source))

    logger.debug(f"Parsed {len(documents)} document(s) from {source}")
    return documents


def find_kustomization(overlay_dir: Path) -> Optional[Path]:
    """Return the kustomization file of an overlay directory, if any."""
    for name in KUSTOMIZATION_FILES:
        candidate = overlay_dir / name
        if candidate.is_file():
            return candidate
    return None


def build_overlay(overlay_dir, config) -> list[ManifestDocument]:
    """Build an overlay directory and parse the result.

    Args:
        overlay_dir: Directory containing a kustomization file
        config: ApplyConfig (build command, kubectl flags, timeout)

    Raises:
        BuildError: If the overlay is missing, the build fails, or the
            output does not parse
    """
    overlay_dir = Path(overlay_dir)
    if not overlay_dir.is_dir():
        raise BuildError(f"Overlay directory not found: {overlay_dir}")
    if find_kustomization(overlay_dir) is None:
        raise BuildError(
            f"No kustomization file in {overlay_dir} "
            f"(expected one of: {', '.join(KUSTOMIZATION_FILES)})"
        )

    if config.build_command:
        cmd = list(config.build_command) + [str(overlay_dir)]
    else:
        cmd = config.kubectl_base() + ['kustomize', str(overlay_dir)]

    logger.info(f"Building overlay {overlay_dir}...")
    rc, out, err = run_command(cmd, timeout=config.command_budget)
    if rc != 0:
        raise BuildError(f"Overlay build failed for {overlay_dir}: {err.strip() or f'exit code {rc}'}")

    documents = parse_manifests(out, source=str(overlay_dir))
    if not documents:
        raise BuildError(f"Overlay {overlay_dir} produced no manifests")
    return documents


def load_manifest_file(path: str) -> list[ManifestDocument]:
    """Load pre-built manifests from a file, or stdin when path is '-'.

    Raises:
        BuildError: If the file cannot be read or parsed
    """
    if path == '-':
        source, text = '<stdin>', sys.stdin.read()
    else:
        source = path
        try:
            text = Path(path).read_text(encoding='utf-8')
        except OSError as e:
            raise BuildError(f"Cannot read manifest file {path}: {e}") from e

    documents = parse_manifests(text, source=source)
    if not documents:
        raise BuildError(f"{source} contains no manifests")
    return documents


def dump_manifests(documents: list[ManifestDocument]) -> str:
    """Serialize documents back into one multi-document YAML stream."""
    return yaml.safe_dump_all(
        [doc.body for doc in documents],
        default_flow_style=False,
        sort_keys=False,
    )
