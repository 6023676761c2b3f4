"""
Command-line interface for cronkeeper.

Provides commands for:
- Creating, listing and stopping jobs (these only touch the job table)
- Starting/stopping the background daemon
- Checking status and viewing job output

The CLI and the daemon never talk directly: jobs are shared through the
job table file and the daemon is controlled with signals.
"""

import argparse
import logging
import os
import subprocess
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from cronkeeper import __version__
from cronkeeper.config import CronkeeperConfig, capture_environment
from cronkeeper.errors import (
    CronkeeperError,
    JobNotFoundError,
    LockAcquisitionError,
)
from cronkeeper.logsink import LogSink, STDOUT, STDERR
from cronkeeper.service import SchedulerDaemon, is_daemon_running, get_daemon_info
from cronkeeper.store import JobStore

logger = logging.getLogger(__name__)

START_WAIT_SECONDS = 5
STOP_WAIT_SECONDS = 10


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False,
                  console: bool = True, level: str = "INFO"):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.getLevelName(level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    # Console handler
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=3)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)

    # APScheduler logs every tick at INFO
    logging.getLogger('apscheduler').setLevel(logging.WARNING)


def _load_config(args) -> CronkeeperConfig:
    return CronkeeperConfig(args.data_dir)


def _store(config: CronkeeperConfig) -> JobStore:
    return JobStore(config.jobs_file)


def spawn_daemon(config: CronkeeperConfig) -> Optional[int]:
    """
    Launch a detached daemon process and wait for its PID file.

    Returns:
        The daemon PID, or None if it did not come up in time
    """
    config.ensure_dirs()
    cmd = [
        sys.executable, '-m', 'cronkeeper.cli',
        '--data-dir', str(config.data_dir),
        'serve', '--detached'
    ]
    with open(config.daemon_output_file, 'ab') as out:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT,
            cwd=str(config.data_dir),
            start_new_session=True,
            close_fds=True
        )

    deadline = time.monotonic() + START_WAIT_SECONDS
    while time.monotonic() < deadline:
        running, pid = is_daemon_running(config.pid_file)
        if running:
            return pid
        if process.poll() is not None:
            logger.error(f"Daemon exited with code {process.returncode}, see {config.daemon_output_file}")
            return None
        time.sleep(0.1)

    logger.warning(f"Daemon did not report ready within {START_WAIT_SECONDS}s")
    return None


def cmd_create(args):
    """Create a new job."""
    config = _load_config(args)
    config.ensure_dirs()

    job_id = _store(config).add(args.job_command, args.schedule, env=capture_environment())
    print(f"Added job {job_id} with schedule '{args.schedule}'")
    print(f"Command: {args.job_command}")

    if args.no_start:
        return

    running, _ = is_daemon_running(config.pid_file)
    if not running:
        if spawn_daemon(config) is not None:
            print("Started daemon for job execution")
        else:
            print("Warning: could not start the daemon, run 'cronkeeper start'", file=sys.stderr)


def cmd_list(args):
    """List all jobs."""
    config = _load_config(args)
    table = _store(config).load()

    if not len(table):
        print("No jobs found.")
        return

    width = max(len("Schedule"), max(len(job.schedule) for job in table))
    print(f"{'ID':>3} | {'Schedule':<{width}} | Command")
    print(f"{'-' * 3}-|-{'-' * width}-|-{'-' * 7}")
    for job in sorted(table, key=lambda j: j.id):
        print(f"{job.id:>3} | {job.schedule:<{width}} | {job.command}")


def cmd_stop(args):
    """Delete a job so it no longer fires."""
    config = _load_config(args)
    store = _store(config)

    job = store.get(args.id)
    if job is None or not store.remove(args.id):
        raise JobNotFoundError(args.id)

    print(f"Stopped job {job.id} with schedule '{job.schedule}'")
    print(f"Command: {job.command}")


def cmd_version(args):
    """Print version information."""
    print(f"cronkeeper {__version__}")


def cmd_status(args):
    """Show daemon and job status."""
    config = _load_config(args)
    table = _store(config).load()
    info = get_daemon_info(config)

    print(f"cronkeeper version: {__version__}")
    print(f"Data directory: {config.data_dir}")
    print(f"Active jobs: {len(table)}")

    if info is None:
        print("Daemon is not running.")
        return

    print(f"Daemon is running (PID: {info['pid']}).")
    if info.get('started_at'):
        print(f"  Started: {info['started_at']}")
    runs = info.get('running') or []
    if runs:
        print(f"  Running now: {len(runs)}")
        for run in runs:
            print(f"    job {run['job_id']} [{run['run_id']}] pid {run['pid']}: {run['command']}")


def cmd_start(args):
    """Start the daemon."""
    config = _load_config(args)

    errors = config.settings.validate()
    if errors:
        for error in errors:
            logger.error(f"Invalid setting: {error}")
        sys.exit(1)

    running, pid = is_daemon_running(config.pid_file)
    if running:
        print(f"Daemon is already running (PID: {pid}).")
        return

    if args.foreground:
        _serve(args, config, console=True)
        return

    pid = spawn_daemon(config)
    if pid is None:
        logger.error("Failed to start daemon")
        sys.exit(1)
    print(f"Started daemon (PID: {pid}).")


def cmd_daemon_stop(args):
    """Stop the daemon."""
    config = _load_config(args)

    running, pid = is_daemon_running(config.pid_file)
    if not running:
        print("Daemon is not running.")
        return

    import signal

    logger.info(f"Stopping daemon (PID: {pid})...")
    os.kill(pid, signal.SIGTERM)

    # Wait for process to stop
    deadline = time.monotonic() + STOP_WAIT_SECONDS
    while time.monotonic() < deadline:
        if not is_daemon_running(config.pid_file)[0]:
            print("Stopped daemon.")
            return
        time.sleep(0.2)

    logger.error(f"Daemon (PID: {pid}) did not stop within {STOP_WAIT_SECONDS}s")
    sys.exit(1)


def cmd_serve(args):
    """Run the daemon loop in this process."""
    config = _load_config(args)
    _serve(args, config, console=not args.detached)


def _serve(args, config: CronkeeperConfig, console: bool):
    config.ensure_dirs()
    setup_logging(
        log_file=config.daemon_log_file,
        verbose=args.verbose,
        console=console,
        level=config.settings.log_level
    )

    errors = config.settings.validate()
    if errors:
        for error in errors:
            logger.error(f"Invalid setting: {error}")
        sys.exit(1)

    try:
        SchedulerDaemon(config).serve()
    except LockAcquisitionError as e:
        logger.error(f"Refusing to start: {e}")
        sys.exit(1)


def cmd_logs(args):
    """Show the tail of a job's output log."""
    config = _load_config(args)
    if _store(config).get(args.id) is None:
        raise JobNotFoundError(args.id)

    settings = config.settings
    sink = LogSink(config.logs_dir, settings.log_max_bytes, settings.log_backup_count)
    kind = STDERR if args.stderr else STDOUT
    lines = sink.read_tail(args.id, kind, lines=args.tail)

    if not lines:
        print(f"No {kind} output recorded for job {args.id}.")
        return
    for line in lines:
        print(line)


def cmd_show_config(args):
    """Show the resolved data directory and settings."""
    config = _load_config(args)

    print(f"\nConfiguration file: {config.config_file}"
          f"{'' if config.config_file.exists() else ' (not present, using defaults)'}")
    for key, value in config.as_dict().items():
        print(f"  {key}: {value}")

    errors = config.settings.validate()
    for error in errors:
        print(f"  ! {error}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cronkeeper',
        description="cronkeeper - run commands on a cron schedule (seconds field first)",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '--data-dir',
        type=str,
        help='Data directory (default: $CRONKEEPER_DATA_DIR or ~/.cronkeeper)'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Create command
    create_parser = subparsers.add_parser('create', help='Create a new job')
    create_parser.add_argument('job_command', metavar='command',
                               help='Command to execute (e.g. "echo hello")')
    create_parser.add_argument('schedule',
                               help='Six-field cron expression, e.g. "0 * * * * *" (every minute)')
    create_parser.add_argument('--no-start', action='store_true',
                               help="Don't start the daemon if it is not running")
    create_parser.set_defaults(func=cmd_create)

    # List command
    list_parser = subparsers.add_parser('ls', help='List all jobs')
    list_parser.set_defaults(func=cmd_list)

    # Stop command
    stop_parser = subparsers.add_parser('stop', help='Stop (delete) a job')
    stop_parser.add_argument('id', type=int, help='Job id')
    stop_parser.set_defaults(func=cmd_stop)

    # Status command
    status_parser = subparsers.add_parser('status', help='Show daemon status')
    status_parser.set_defaults(func=cmd_status)

    # Version command
    version_parser = subparsers.add_parser('version', help='Show version information')
    version_parser.set_defaults(func=cmd_version)

    # Start command
    start_parser = subparsers.add_parser('start', help='Start the daemon')
    start_parser.add_argument(
        '--foreground',
        action='store_true',
        help='Run in foreground (blocking mode)'
    )
    start_parser.set_defaults(func=cmd_start)

    # Daemon stop command
    daemon_stop_parser = subparsers.add_parser('daemon-stop', help='Stop the daemon')
    daemon_stop_parser.set_defaults(func=cmd_daemon_stop)

    # Serve command (what the detached daemon and service managers run)
    serve_parser = subparsers.add_parser('serve', help='Run the daemon loop in this process')
    serve_parser.add_argument('--detached', action='store_true', help=argparse.SUPPRESS)
    serve_parser.set_defaults(func=cmd_serve)

    # Logs command
    logs_parser = subparsers.add_parser('logs', help="View a job's output")
    logs_parser.add_argument('id', type=int, help='Job id')
    logs_parser.add_argument('--stderr', action='store_true', help='Show stderr instead of stdout')
    logs_parser.add_argument('--tail', '-n', type=int, default=50,
                             help='Show last N lines (default: 50)')
    logs_parser.set_defaults(func=cmd_logs)

    # Show config command
    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command != 'serve':
        setup_logging(verbose=args.verbose, level="DEBUG" if args.verbose else "WARNING")

    try:
        args.func(args)
    except CronkeeperError as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            logger.exception("Command failed")
        sys.exit(1)


if __name__ == '__main__':
    main()
