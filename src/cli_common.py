"""Shared helpers for stackctl command handlers."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from config import StackConfig, load_stack_config
from errors import OperationCancelled, StackError
from validation import format_preflight_results, validate_operation

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'stackctl {verb}',
        description=description,
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Stack config file (default: $STACKCTL_CONFIG, config/stack.yaml, /etc/stackctl/stack.yaml)',
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
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )
    return parser


def setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    root_logger = logging.getLogger()
    if json_output:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        root_logger.addHandler(stderr_handler)

    if verbose:
        root_logger.setLevel(logging.DEBUG)


def echo_for(json_output: bool):
    """Print function for operator-facing text (stderr when stdout carries JSON)."""
    if json_output:
        return lambda text: print(text, file=sys.stderr)
    return print


def load_config(args) -> StackConfig:
    """Load StackConfig from --config or discovery."""
    return load_stack_config(args.config)


def run_preflight(args, operation: str, config: StackConfig,
                  components: Optional[list[str]] = None,
                  output_dir: Optional[Path] = None) -> Optional[int]:
    """Run pre-flight checks.

    Returns:
        None if checks pass, exit code (1) if checks fail.
    """
    if args.skip_preflight or getattr(args, 'dry_run', False):
        return None
    errors = validate_operation(operation, config, components=components, output_dir=output_dir)
    if errors:
        echo_for(args.json_output)(format_preflight_results(operation, errors))
        return 1
    logger.debug("Pre-flight validation passed")
    return None


def emit_json(verb: str, success: bool, payload: dict, duration: float) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'success': success,
        'duration_seconds': round(duration, 2),
    }
    output.update(payload)
    print(json.dumps(output, indent=2, default=str))


def handle_error(verb: str, error: StackError, args, duration: float) -> int:
    """Report a failed operation and return its exit code."""
    echo = echo_for(args.json_output)
    if isinstance(error, OperationCancelled):
        echo("Aborted.")
        logger.info(error.message)
    else:
        logger.error(f"Error: {error.describe()}")

    state = error.state
    if state is not None and hasattr(state, 'format_table'):
        echo("")
        echo(state.format_table())

    if args.json_output:
        payload = {'error': error.describe(), 'error_type': type(error).__name__}
        if error.component:
            payload['component'] = error.component
        if error.log_path:
            payload['log_path'] = str(error.log_path)
        if state is not None and hasattr(state, 'to_dict'):
            payload['state'] = state.to_dict()
        emit_json(verb, False, payload, duration)
    return 1
