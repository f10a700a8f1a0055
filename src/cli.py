#!/usr/bin/env python3
"""CLI entry point for rollout-driver.

Verb subcommands:
- apply: Apply a manifest set and wait for its workloads
- inspect: List the workloads a manifest set contains
- preflight: Check kubectl, cluster access and overlay layout
"""

import logging
import subprocess
import sys
from importlib import metadata
from pathlib import Path

# Verb commands
VERB_COMMANDS = {
    "apply": "Apply manifests and wait for their workloads to become ready",
    "inspect": "List the workloads contained in a manifest set",
    "preflight": "Check kubectl, cluster access and overlay layout",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Installed package version, else the latest git tag, else 'dev'."""
    try:
        return metadata.version('rollout-driver')
    except metadata.PackageNotFoundError:
        pass
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage() -> None:
    print("Usage: rollout-driver <verb> [options]")
    print()
    print("Verbs:")
    for verb, description in VERB_COMMANDS.items():
        print(f"  {verb:10} {description}")
    print()
    print("Run 'rollout-driver <verb> --help' for verb-specific options.")


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to verb-specific CLI handler.

    Args:
        verb: The verb command (e.g., "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if verb == "apply":
        from rollout_opr.cli import apply_main
        rc: int = apply_main(argv)
        return rc
    if verb == "inspect":
        from rollout_opr.cli import inspect_main
        rc = inspect_main(argv)
        return rc
    if verb == "preflight":
        from rollout_opr.cli import preflight_main
        rc = preflight_main(argv)
        return rc

    print(f"Error: Unknown verb '{verb}'", file=sys.stderr)
    print(f"Available verbs: {', '.join(VERB_COMMANDS)}", file=sys.stderr)
    return 1


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0 if argv else 1
    if argv[0] == '--version':
        print(f"rollout-driver {get_version()}")
        return 0

    return dispatch_verb(argv[0], argv[1:])


if __name__ == '__main__':
    sys.exit(main())
