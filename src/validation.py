"""Pre-flight validation checks.

Catches environment problems before any cluster mutation, with
actionable error messages:
- kubectl is installed
- the cluster API is reachable with the configured context
- the overlay directory contains a kustomization file
"""

import json
import logging
import shutil
from pathlib import Path
from typing import Optional

from common import run_command
from config import ApplyConfig
from manifest import KUSTOMIZATION_FILES, find_kustomization

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Tooling
# -----------------------------------------------------------------------------

def validate_kubectl_installed(config: ApplyConfig) -> list[str]:
    """Check the kubectl binary is on PATH (or at the configured path)."""
    if shutil.which(config.kubectl):
        return []
    return [
        f"kubectl not found: '{config.kubectl}'\n"
        f"  Install kubectl or set --kubectl / ROLLOUT_DRIVER_KUBECTL"
    ]


# -----------------------------------------------------------------------------
# Cluster connectivity
# -----------------------------------------------------------------------------

def validate_cluster_reachable(config: ApplyConfig, timeout: int = 15) -> tuple[list[str], str]:
    """Check the API server answers a version request.

    Returns:
        (errors, server_version) tuple; server_version is '' on failure
    """
    cmd = config.kubectl_base() + ['version', '-o', 'json', f'--request-timeout={timeout}s']
    rc, out, err = run_command(cmd, timeout=timeout + 5)

    server_version = ''
    try:
        server_version = (json.loads(out).get('serverVersion') or {}).get('gitVersion', '')
    except (json.JSONDecodeError, AttributeError):
        pass

    if rc != 0 or not server_version:
        context = config.context or 'current context'
        return [
            f"Cluster not reachable ({context}): {err.strip() or 'no server version reported'}\n"
            f"  Check KUBECONFIG and --context"
        ], ''
    return [], server_version


# -----------------------------------------------------------------------------
# Overlay layout
# -----------------------------------------------------------------------------

def validate_overlay(overlay_dir: Optional[str]) -> list[str]:
    """Check the overlay directory exists and holds a kustomization file."""
    if not overlay_dir:
        return []
    path = Path(overlay_dir)
    if not path.is_dir():
        return [f"Overlay directory not found: {path}"]
    if find_kustomization(path) is None:
        return [
            f"No kustomization file in {path}\n"
            f"  Expected one of: {', '.join(KUSTOMIZATION_FILES)}"
        ]
    return []


def preflight_errors(config: ApplyConfig, overlay_dir: Optional[str] = None) -> list[str]:
    """Run the checks apply depends on.

    Returns:
        List of error messages (empty if ready)
    """
    errors = validate_kubectl_installed(config)
    if errors:
        # Remaining checks need kubectl
        return errors
    errors.extend(validate_overlay(overlay_dir))
    cluster_errors, version = validate_cluster_reachable(config)
    errors.extend(cluster_errors)
    if version:
        logger.debug(f"Cluster server version {version}")
    return errors


def run_preflight_checks(config: ApplyConfig,
                         overlay_dir: Optional[str] = None) -> tuple[bool, dict]:
    """Run all checks and group results for display.

    Returns:
        (success, results) tuple where results maps category to
        {'passed': [...], 'failed': [...]}
    """
    results: dict[str, dict[str, list[str]]] = {
        'tooling': {'passed': [], 'failed': []},
        'cluster': {'passed': [], 'failed': []},
        'overlay': {'passed': [], 'failed': []},
    }

    tool_errors = validate_kubectl_installed(config)
    if tool_errors:
        results['tooling']['failed'].extend(tool_errors)
    else:
        results['tooling']['passed'].append(f"kubectl found: {shutil.which(config.kubectl)}")

        cluster_errors, version = validate_cluster_reachable(config)
        if cluster_errors:
            results['cluster']['failed'].extend(cluster_errors)
        else:
            results['cluster']['passed'].append(f"API server reachable (version {version})")
            results['cluster']['passed'].append(f"Target namespace: {config.namespace}")

    if overlay_dir:
        overlay_errors = validate_overlay(overlay_dir)
        if overlay_errors:
            results['overlay']['failed'].extend(overlay_errors)
        else:
            results['overlay']['passed'].append(f"{overlay_dir} has a kustomization file")

    success = all(not cat['failed'] for cat in results.values())
    return success, results


def format_preflight_results(results: dict) -> str:
    """Format preflight check results for display."""
    lines = ["\nPreflight checks:\n"]

    category_names = {
        'tooling': 'Tooling',
        'cluster': 'Cluster connectivity',
        'overlay': 'Overlay',
    }

    for key, name in category_names.items():
        category = results.get(key, {'passed': [], 'failed': []})
        if category['passed'] or category['failed']:
            lines.append(f"{name}:")
            for item in category['passed']:
                lines.append(f"✓ {item}")
            for item in category['failed']:
                # Handle multi-line errors
                first_line = item.split('\n')[0]
                lines.append(f"✗ {first_line}")
                for line in item.split('\n')[1:]:
                    lines.append(f"  {line}")
            lines.append("")

    all_passed = all(not cat['failed'] for cat in results.values())
    lines.append("All checks passed." if all_passed else "Some checks failed.")
    return '\n'.join(lines)
