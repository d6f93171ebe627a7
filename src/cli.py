#!/usr/bin/env python3
"""CLI entry point for webssh2-init.

Container init for the NGINX + WebSSH2 image:
- init: resolve configuration and run the bootstrap stages
- run: init, then supervise nginx and the WebSSH2 backend
- supervise: start services from a previous init
- healthcheck: composite health probe (exit 0/1/2)
- config: show the resolved configuration (secrets masked)
- stages: list bootstrap stages
"""

import argparse
import json
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from config import BootstrapPaths, ConfigError, read_snapshot, resolve_config, write_snapshot
from stages import EXIT_UNEXPECTED, Pipeline, get_stages
from stages.webssh2 import read_envdir
from supervisor import Supervisor, build_services, run_health_checks

COMMANDS = {
    "init": "Resolve configuration and run bootstrap stages",
    "run": "Bootstrap, then supervise nginx and WebSSH2",
    "supervise": "Supervise services using a previous bootstrap",
    "healthcheck": "Run the container health probe",
    "config": "Show resolved configuration",
    "stages": "List bootstrap stages",
}


def get_version():
    """Installed package version, 'dev' when running from a checkout."""
    try:
        return version('nginx-webssh2-init')
    except PackageNotFoundError:
        return 'dev'


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def _paths(args) -> BootstrapPaths:
    if args.root:
        return BootstrapPaths.under(args.root)
    return BootstrapPaths()


def _add_env_file_arg(parser: argparse.ArgumentParser):
    parser.add_argument(
        '--env-file', '-e',
        type=Path,
        help='Env file with KEY=VALUE lines or a YAML mapping (process environment wins)',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='webssh2-init',
        description='Container init and supervision for NGINX + WebSSH2',
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'webssh2-init {get_version()}'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )
    parser.add_argument(
        '--root',
        type=Path,
        help=argparse.SUPPRESS  # Hidden: rebase filesystem paths (testing)
    )

    sub = parser.add_subparsers(dest='command', metavar='<command>')

    init = sub.add_parser('init', help=COMMANDS['init'])
    _add_env_file_arg(init)
    init.add_argument(
        '--skip', '-s',
        action='append',
        default=[],
        help='Stages to skip (can be repeated)'
    )
    init.add_argument(
        '--dry-run', '-n',
        action='store_true',
        help='Show the stage plan without running it'
    )
    init.add_argument(
        '--json',
        action='store_true',
        help='Print the outcome as JSON'
    )

    run = sub.add_parser('run', help=COMMANDS['run'])
    _add_env_file_arg(run)
    run.add_argument(
        '--skip', '-s',
        action='append',
        default=[],
        help='Stages to skip (can be repeated)'
    )

    sub.add_parser('supervise', help=COMMANDS['supervise'])

    health = sub.add_parser('healthcheck', help=COMMANDS['healthcheck'])
    health.add_argument(
        '--json',
        action='store_true',
        help='Print the report as JSON'
    )

    config = sub.add_parser('config', help=COMMANDS['config'])
    _add_env_file_arg(config)
    config.add_argument(
        '--json',
        action='store_true',
        help='Print as JSON'
    )

    sub.add_parser('stages', help=COMMANDS['stages'])
    return parser


def _bootstrap(args, paths: BootstrapPaths, dry_run: bool = False):
    """Resolve config and run the pipeline. Returns (outcome, snapshot)."""
    known = [stage.name for stage in get_stages(paths)]
    unknown = [s for s in args.skip if s not in known]
    if unknown:
        raise ConfigError(f"Unknown stage(s): {', '.join(unknown)}. Available: {', '.join(known)}")

    snapshot = resolve_config(env_file=args.env_file)
    if not dry_run:
        write_snapshot(snapshot, paths.env_file)

    pipeline = Pipeline(snapshot, paths, skip_stages=args.skip, dry_run=dry_run)
    return pipeline.run(), snapshot


def cmd_init(args) -> int:
    paths = _paths(args)
    try:
        outcome, _ = _bootstrap(args, paths, dry_run=args.dry_run)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_UNEXPECTED

    if args.json:
        print(json.dumps({
            'success': outcome.success,
            'exit_code': outcome.exit_code,
            'failed_stage': outcome.failed_stage,
            'message': outcome.message,
            'warnings': outcome.warnings,
        }, indent=2))
    elif not outcome.success:
        print(f"Bootstrap failed at stage '{outcome.failed_stage}': {outcome.message}", file=sys.stderr)
    return outcome.exit_code


def _supervise(snapshot, paths: BootstrapPaths, backend_env: dict) -> int:
    supervisor = Supervisor(build_services(snapshot, paths, backend_env))
    return supervisor.run()


def cmd_run(args) -> int:
    paths = _paths(args)
    try:
        outcome, snapshot = _bootstrap(args, paths)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_UNEXPECTED

    if not outcome.success:
        logger.error(f"Bootstrap failed at stage '{outcome.failed_stage}', not starting services")
        return outcome.exit_code

    backend_env = outcome.context.get('backend_env') or read_envdir(paths.backend_envdir)
    return _supervise(snapshot, paths, backend_env)


def cmd_supervise(args) -> int:
    paths = _paths(args)
    try:
        snapshot = read_snapshot(paths.env_file)
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_UNEXPECTED

    backend_env = read_envdir(paths.backend_envdir)
    if not backend_env:
        logger.error(f"Backend environment not found in {paths.backend_envdir} (run 'init' first)")
        return EXIT_UNEXPECTED
    return _supervise(snapshot, paths, backend_env)


def cmd_healthcheck(args) -> int:
    paths = _paths(args)
    if paths.env_file.exists():
        try:
            snapshot = read_snapshot(paths.env_file)
        except ConfigError as e:
            logger.warning(f"{e}; using process environment")
            snapshot = resolve_config()
    else:
        snapshot = resolve_config()

    report = run_health_checks(snapshot, paths)
    print(report.to_json() if args.json else report.render())
    return report.exit_code


def cmd_config(args) -> int:
    try:
        snapshot = resolve_config(env_file=args.env_file)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_UNEXPECTED

    values = snapshot.masked()
    if args.json:
        print(json.dumps(values, indent=2, sort_keys=True))
    else:
        for key in sorted(values):
            print(f"{key}={values[key]}")
    return 0


def cmd_stages(args) -> int:
    print("Bootstrap stages (in order):")
    for stage in get_stages(_paths(args)):
        print(f"  {stage.name:<10} {stage.description} (exit {stage.exit_code} on failure)")
    return 0


HANDLERS = {
    "init": cmd_init,
    "run": cmd_run,
    "supervise": cmd_supervise,
    "healthcheck": cmd_healthcheck,
    "config": cmd_config,
    "stages": cmd_stages,
}


def main(argv=None):
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.command:
        parser.print_help()
        return 0

    return HANDLERS[args.command](args)


def healthcheck_main():
    """Entry point for the standalone container healthcheck command."""
    return main(['healthcheck'] + sys.argv[1:])


if __name__ == '__main__':
    sys.exit(main())
