"""Run configuration for rollout-driver.

Settings are resolved from, lowest to highest priority:
- built-in defaults (ApplyConfig field defaults)
- YAML config file: --config, $ROLLOUT_DRIVER_CONFIG, or
  rollout-driver.yaml inside the overlay directory
- environment: ROLLOUT_DRIVER_KUBECTL, ROLLOUT_DRIVER_CONTEXT,
  ROLLOUT_DRIVER_KUBECONFIG (kubectl itself still honours KUBECONFIG)
- CLI flags

The result is an immutable ApplyConfig passed explicitly to every
component; nothing reads global state after resolution.
"""

import dataclasses
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from workloads import WORKLOAD_KINDS

CONFIG_FILENAME = 'rollout-driver.yaml'
DEFAULT_WAIT_TIMEOUT = 300
DEFAULT_FIELD_MANAGER = 'rollout-driver'

# DNS-1123 label, the format Kubernetes requires for namespace names
_NAMESPACE_RE = re.compile(r'^[a-z0-9]([-a-z0-9]*[a-z0-9])?$')


class ConfigError(Exception):
    """Configuration error."""


@dataclass(frozen=True)
class ApplyConfig:
    """Immutable settings for one apply invocation.

    Attributes:
        namespace: Target namespace; default for documents that omit one
        dry_run: Server-side dry run only; never waits
        server_side: Use server-side apply with field_manager
        validate: Ask kubectl to validate objects against the schema
        wait: Track workload readiness after apply
        wait_timeout: Global readiness budget in seconds
        poll_interval: Seconds between readiness cycles
        read_timeout: Upper bound for a single status read
        command_timeout: Upper bound for build/namespace/apply commands;
            never more than wait_timeout
        max_workers: Concurrent status reads per cycle
        kubectl: kubectl binary
        context: kubeconfig context (--context)
        kubeconfig: kubeconfig path (--kubeconfig)
        field_manager: Field manager for server-side apply
        build_command: Overlay build command; None means 'kubectl kustomize'
        workload_kinds: Kinds treated as workloads when deriving the tracking set
    """
    namespace: str
    dry_run: bool = False
    server_side: bool = False
    validate: bool = True
    wait: bool = True
    wait_timeout: int = DEFAULT_WAIT_TIMEOUT
    poll_interval: float = 5.0
    read_timeout: float = 30.0
    command_timeout: int = 300
    max_workers: int = 8
    kubectl: str = 'kubectl'
    context: Optional[str] = None
    kubeconfig: Optional[str] = None
    field_manager: str = DEFAULT_FIELD_MANAGER
    build_command: Optional[tuple[str, ...]] = None
    workload_kinds: tuple[str, ...] = WORKLOAD_KINDS

    def __post_init__(self):
        validate_namespace(self.namespace)
        if isinstance(self.wait_timeout, bool) or not isinstance(self.wait_timeout, int) \
                or self.wait_timeout <= 0:
            raise ConfigError(f"wait_timeout must be a positive integer, got {self.wait_timeout!r}")
        if self.poll_interval <= 0:
            raise ConfigError(f"poll_interval must be positive, got {self.poll_interval!r}")
        if self.read_timeout <= 0 or self.command_timeout <= 0:
            raise ConfigError("read_timeout and command_timeout must be positive")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be at least 1, got {self.max_workers!r}")
        if not self.workload_kinds:
            raise ConfigError("workload_kinds must not be empty")

    @property
    def should_wait(self) -> bool:
        """Readiness tracking runs only for real (non dry-run) applies."""
        return self.wait and not self.dry_run

    @property
    def command_budget(self) -> int:
        """Timeout for build/namespace/apply commands, capped by the caller's budget."""
        return min(self.command_timeout, self.wait_timeout)

    def kubectl_base(self) -> list[str]:
        """kubectl invocation with connection flags applied."""
        cmd = [self.kubectl]
        if self.kubeconfig:
            cmd.append(f'--kubeconfig={self.kubeconfig}')
        if self.context:
            cmd.append(f'--context={self.context}')
        return cmd

    def replace(self, **changes) -> 'ApplyConfig':
        return dataclasses.replace(self, **changes)


def validate_namespace(namespace: str) -> None:
    """Raise ConfigError unless namespace is a valid DNS-1123 label."""
    if not namespace:
        raise ConfigError("namespace is required (use --namespace or set it in the config file)")
    if len(namespace) > 63 or not _NAMESPACE_RE.match(namespace):
        raise ConfigError(
            f"Invalid namespace '{namespace}': must be a lowercase DNS-1123 label "
            f"(a-z, 0-9, '-', at most 63 characters)"
        )


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML config file and return its mapping."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def find_config_file(explicit: Optional[str] = None,
                     overlay_dir: Optional[str] = None) -> Optional[Path]:
    """Locate the config file.

    Resolution order:
    1. explicit path (--config); must exist
    2. $ROLLOUT_DRIVER_CONFIG; must exist
    3. rollout-driver.yaml in the overlay directory (optional)
    """
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        return path

    if env_path := os.environ.get('ROLLOUT_DRIVER_CONFIG'):
        path = Path(env_path)
        if path.is_file():
            return path
        raise ConfigError(f"ROLLOUT_DRIVER_CONFIG={env_path} does not exist")

    if overlay_dir:
        candidate = Path(overlay_dir) / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


_FILE_KEYS = {
    'namespace': str,
    'server_side': bool,
    'validate': bool,
    'wait': bool,
    'wait_timeout': int,
    'poll_interval': float,
    'read_timeout': float,
    'command_timeout': int,
    'max_workers': int,
    'kubectl': str,
    'context': str,
    'kubeconfig': str,
    'field_manager': str,
}


def _settings_from_file(path: Path) -> dict[str, Any]:
    data = _parse_yaml(path)
    settings: dict[str, Any] = {}
    unknown = set(data) - set(_FILE_KEYS) - {'build_command', 'workload_kinds'}
    if unknown:
        raise ConfigError(f"Unknown key(s) in {path}: {', '.join(sorted(unknown))}")

    for key, kind in _FILE_KEYS.items():
        if key not in data or data[key] is None:
            continue
        value = data[key]
        if kind is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
            raise ConfigError(f"{path}: '{key}' must be {kind.__name__}, got {value!r}")
        settings[key] = value

    if 'build_command' in data:
        cmd = data['build_command']
        if isinstance(cmd, str):
            cmd = cmd.split()
        if not isinstance(cmd, list) or not cmd or not all(isinstance(c, str) for c in cmd):
            raise ConfigError(f"{path}: 'build_command' must be a command string or list")
        settings['build_command'] = tuple(cmd)

    if 'workload_kinds' in data:
        kinds = data['workload_kinds']
        if not isinstance(kinds, list) or not all(isinstance(k, str) for k in kinds):
            raise ConfigError(f"{path}: 'workload_kinds' must be a list of kinds")
        # Extra kinds extend the built-in allow-list
        merged = list(WORKLOAD_KINDS)
        merged.extend(k for k in kinds if k not in merged)
        settings['workload_kinds'] = tuple(merged)

    return settings


def _settings_from_env() -> dict[str, Any]:
    settings: dict[str, Any] = {}
    if kubectl := os.environ.get('ROLLOUT_DRIVER_KUBECTL'):
        settings['kubectl'] = kubectl
    if context := os.environ.get('ROLLOUT_DRIVER_CONTEXT'):
        settings['context'] = context
    if kubeconfig := os.environ.get('ROLLOUT_DRIVER_KUBECONFIG'):
        settings['kubeconfig'] = kubeconfig
    return settings


def load_config(config_file: Optional[str] = None,
                overlay_dir: Optional[str] = None,
                default_namespace: str = '',
                **overrides) -> ApplyConfig:
    """Resolve an ApplyConfig from file, environment and explicit overrides.

    Overrides whose value is None are ignored so argparse defaults do not
    mask file or environment settings. default_namespace applies only when
    neither the file nor the overrides name a namespace.

    Raises:
        ConfigError: On unreadable files, bad values or a missing namespace
    """
    settings: dict[str, Any] = {}
    path = find_config_file(config_file, overlay_dir)
    if path is not None:
        settings.update(_settings_from_file(path))
    settings.update(_settings_from_env())
    settings.update({k: v for k, v in overrides.items() if v is not None})

    namespace = settings.pop('namespace', default_namespace)
    try:
        return ApplyConfig(namespace=namespace, **settings)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
