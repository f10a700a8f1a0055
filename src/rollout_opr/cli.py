"""CLI handlers for rollout verbs (apply, inspect, preflight).

Usage:
    rollout-driver apply -k <overlay> -n <namespace> [--track Kind/ns/name] [--dry-run] [--no-wait]
    rollout-driver inspect -k <overlay> -n <namespace> [--json-output]
    rollout-driver preflight [-k <overlay>] [-n <namespace>]
"""

import argparse
import contextlib
import json
import logging
import signal
import sys
import threading

from config import ConfigError, load_config
from errors import RolloutError
from rollout_opr.executor import RolloutExecutor
from validation import format_preflight_results, preflight_errors, run_preflight_checks
from workloads import load_tracking_file

logger = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got '{value}'") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got '{value}'")
    return number


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive number, got '{value}'") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive number, got '{value}'")
    return number


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'rollout-driver {verb}',
        description=description,
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        '--kustomize', '-k',
        metavar='DIR',
        help='Kustomize overlay directory to build',
    )
    source.add_argument(
        '--manifest-file', '-f',
        metavar='PATH',
        help="Pre-built manifest file ('-' for stdin)",
    )
    parser.add_argument(
        '--namespace', '-n',
        help='Target namespace (default for objects without one)',
    )
    parser.add_argument(
        '--config',
        metavar='PATH',
        help='Config file (default: $ROLLOUT_DRIVER_CONFIG or <overlay>/rollout-driver.yaml)',
    )
    parser.add_argument(
        '--context',
        help='kubeconfig context to use',
    )
    parser.add_argument(
        '--kubectl',
        metavar='PATH',
        help='kubectl binary (override: ROLLOUT_DRIVER_KUBECTL)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _add_tracking_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--track',
        action='append',
        metavar='KIND/NS/NAME',
        help='Workload to track (repeatable; default: every workload in the manifests)',
    )
    parser.add_argument(
        '--track-file',
        metavar='PATH',
        help="JSON/YAML workload list (e.g. from 'inspect --json-output')",
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _require_source(parser: argparse.ArgumentParser, args) -> None:
    if not args.kustomize and not args.manifest_file:
        parser.error("specify manifests with --kustomize/-k or --manifest-file/-f")


def _emit_error(json_output: bool, error: Exception) -> None:
    """Report an error that stopped the run before a report existed."""
    if json_output:
        print(json.dumps({
            'success': False,
            'error': {'type': type(error).__name__, 'message': str(error)},
        }, indent=2))
    else:
        print(f"Error: {error}", file=sys.stderr)


def _collect_tracking(args) -> list:
    tracked: list = list(args.track or [])
    if args.track_file:
        tracked.extend(load_tracking_file(args.track_file))
    return tracked


@contextlib.contextmanager
def _cancel_on_signals(event: threading.Event):
    """Set event on SIGINT/SIGTERM for the duration of the block."""
    def _handler(signum, _frame):
        logger.warning(f"Received signal {signum}, stopping after the current cycle")
        event.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, _handler)
        except ValueError:
            # Not the main thread; cancellation stays caller-driven
            pass
    try:
        yield event
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply', 'Apply manifests and wait for their workloads')
    _add_tracking_args(parser)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Server-side dry run; nothing is persisted and nothing is waited on. '
             'If the namespace does not exist yet, its objects are reported as errors '
             'marked "namespace missing in dry run"',
    )
    parser.add_argument(
        '--server-side',
        action='store_true',
        default=None,
        help='Use server-side apply',
    )
    parser.add_argument(
        '--field-manager',
        help='Field manager for server-side apply (default: rollout-driver)',
    )
    parser.add_argument(
        '--validate',
        action=argparse.BooleanOptionalAction,
        default=None,
        help='Validate objects against the API schema (default: on)',
    )
    parser.add_argument(
        '--no-wait',
        dest='wait',
        action='store_false',
        default=None,
        help='Do not wait for workload readiness',
    )
    parser.add_argument(
        '--timeout',
        type=_positive_int,
        metavar='SECONDS',
        help='Time budget in seconds for the readiness wait; also caps each '
             'build, namespace and apply call (default: 300)',
    )
    parser.add_argument(
        '--interval',
        type=_positive_float,
        metavar='SECONDS',
        help='Seconds between readiness polls (default: 5)',
    )
    parser.add_argument(
        '--report-dir',
        metavar='DIR',
        help='Also write JSON and markdown reports to DIR',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )
    args = parser.parse_args(argv)
    _require_source(parser, args)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = load_config(
            config_file=args.config,
            overlay_dir=args.kustomize,
            namespace=args.namespace,
            context=args.context,
            kubectl=args.kubectl,
            dry_run=args.dry_run or None,
            server_side=args.server_side,
            field_manager=args.field_manager,
            validate=args.validate,
            wait=args.wait,
            wait_timeout=args.timeout,
            poll_interval=args.interval,
        )
        tracked = _collect_tracking(args)
    except (ConfigError, RolloutError) as e:
        _emit_error(args.json_output, e)
        return 1

    if not args.skip_preflight:
        errors = preflight_errors(config, args.kustomize)
        if errors:
            print("\nPre-flight validation failed:", file=sys.stderr)
            for error in errors:
                for i, line in enumerate(error.split('\n')):
                    prefix = "  ✗ " if i == 0 else "    "
                    print(f"{prefix}{line}", file=sys.stderr)
            print("\nUse --skip-preflight to bypass these checks", file=sys.stderr)
            return 1
        logger.info("Pre-flight validation passed")

    executor = RolloutExecutor(
        config=config,
        overlay_dir=args.kustomize,
        manifest_file=args.manifest_file,
        tracked=tracked,
    )
    with _cancel_on_signals(executor.cancel_event):
        report = executor.run()

    if args.report_dir:
        for path in report.write(args.report_dir):
            logger.info(f"Report written to {path}")

    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print('\n'.join(report.summary_lines()))

    return report.exit_code


def inspect_main(argv: list) -> int:
    """Handle 'inspect' verb: print the workloads apply would track."""
    parser = _common_parser('inspect', 'List the workloads contained in a manifest set')
    _add_tracking_args(parser)
    args = parser.parse_args(argv)
    _require_source(parser, args)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = load_config(
            config_file=args.config,
            overlay_dir=args.kustomize,
            namespace=args.namespace,
            context=args.context,
            kubectl=args.kubectl,
        )
        executor = RolloutExecutor(
            config=config,
            overlay_dir=args.kustomize,
            manifest_file=args.manifest_file,
            tracked=_collect_tracking(args),
        )
        documents, refs = executor.plan()
    except (ConfigError, RolloutError) as e:
        _emit_error(args.json_output, e)
        return 1

    if args.json_output:
        print(json.dumps({
            'namespace': config.namespace,
            'objects': len(documents),
            'workloads': [ref.to_dict() for ref in refs],
        }, indent=2))
    else:
        print(f"{len(documents)} object(s), {len(refs)} workload(s):")
        for ref in refs:
            print(f"  {ref}")
    return 0


def preflight_main(argv: list) -> int:
    """Handle 'preflight' verb."""
    parser = _common_parser('preflight', 'Check kubectl, cluster access and overlay layout')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = load_config(
            config_file=args.config,
            overlay_dir=args.kustomize,
            default_namespace='default',
            namespace=args.namespace,
            context=args.context,
            kubectl=args.kubectl,
        )
    except ConfigError as e:
        _emit_error(args.json_output, e)
        return 1

    success, results = run_preflight_checks(config, args.kustomize)
    if args.json_output:
        print(json.dumps({'success': success, 'checks': results}, indent=2))
    else:
        print(format_preflight_results(results))
    return 0 if success else 1
