"""CLI handlers for lifecycle verbs (start, stop, restart).

Usage:
    stackctl start [--service NAME ...] [--no-wait] [--json-output] [--verbose]
    stackctl stop [--service NAME ...] [--force] [--no-wait]
    stackctl restart [--force]
"""

import logging
import time

from cli_common import (
    common_parser, echo_for, emit_json, handle_error, load_config, run_preflight, setup_logging,
)
from errors import StackError
from lifecycle.orchestrator import LifecycleOrchestrator

logger = logging.getLogger(__name__)


def _add_service_arg(parser) -> None:
    parser.add_argument(
        '--service', '-s',
        action='append',
        metavar='NAME',
        help='Limit to a service (repeatable); dependency order is preserved',
    )


def start_main(argv: list) -> int:
    """Handle 'start' verb."""
    parser = common_parser('start', 'Start stack services in dependency order')
    _add_service_arg(parser)
    parser.add_argument(
        '--no-wait',
        action='store_true',
        help='Do not wait for health checks between services',
    )
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)
    echo = echo_for(args.json_output)

    start = time.time()
    try:
        config = load_config(args)
        preflight_rc = run_preflight(args, 'start', config)
        if preflight_rc is not None:
            return preflight_rc

        orchestrator = LifecycleOrchestrator.from_config(config)
        logger.info(f"Starting services: {' -> '.join(orchestrator.start_order())}")
        state = orchestrator.start(args.service, wait=not args.no_wait)
    except StackError as e:
        return handle_error('start', e, args, time.time() - start)

    echo("\nService status:")
    echo(state.format_table())
    if args.json_output:
        emit_json('start', True, state.to_dict(), time.time() - start)
    return 0


def stop_main(argv: list) -> int:
    """Handle 'stop' verb."""
    parser = common_parser('stop', 'Stop stack services in reverse dependency order')
    _add_service_arg(parser)
    parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Kill services that do not stop within the timeout',
    )
    parser.add_argument(
        '--no-wait',
        action='store_true',
        help='Do not wait for services to exit',
    )
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)
    echo = echo_for(args.json_output)

    start = time.time()
    try:
        config = load_config(args)
        preflight_rc = run_preflight(args, 'stop', config)
        if preflight_rc is not None:
            return preflight_rc

        orchestrator = LifecycleOrchestrator.from_config(config)
        logger.info(f"Stopping services: {' -> '.join(orchestrator.stop_order())}")
        success, state = orchestrator.stop(args.service, forced=args.force, wait=not args.no_wait)
    except StackError as e:
        return handle_error('stop', e, args, time.time() - start)

    echo("\nService status:")
    echo(state.format_table())
    if not success:
        echo("\nSome services failed to stop. Use --force to kill them.")
    if args.json_output:
        emit_json('stop', success, state.to_dict(), time.time() - start)
    return 0 if success else 1


def restart_main(argv: list) -> int:
    """Handle 'restart' verb."""
    parser = common_parser('restart', 'Stop all services, wait, then start them again')
    parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Kill services that do not stop within the timeout',
    )
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)
    echo = echo_for(args.json_output)

    start = time.time()
    try:
        config = load_config(args)
        preflight_rc = run_preflight(args, 'restart', config)
        if preflight_rc is not None:
            return preflight_rc

        orchestrator = LifecycleOrchestrator.from_config(config)
        state = orchestrator.restart(forced=args.force)
    except StackError as e:
        return handle_error('restart', e, args, time.time() - start)

    echo("\nService status:")
    echo(state.format_table())
    if args.json_output:
        emit_json('restart', True, state.to_dict(), time.time() - start)
    return 0
