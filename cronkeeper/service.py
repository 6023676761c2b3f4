"""
The scheduling daemon.

One SchedulerDaemon is constructed by the process entry point and owns all
runtime state. Every tick it reloads the job table, asks the schedule
evaluator which jobs are due, and hands due jobs to the process runner
without waiting for them. The tick timer is an APScheduler interval job.

Lifecycle:
    idle -> tick -> (per job: due? dispatch : skip) -> idle
    any state -> shutting_down on SIGTERM/SIGINT; the next tick boundary
    stops the timer. In-flight runs are not killed.

A PID file doubles as the single-instance lock, so two daemons never fire
the same jobs.
"""

import atexit
import json
import logging
import os
import signal
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable, Tuple

from apscheduler.schedulers.blocking import BlockingScheduler

from cronkeeper import __version__
from cronkeeper.config import CronkeeperConfig, Settings
from cronkeeper.errors import (
    CorruptStoreError,
    InvalidScheduleError,
    LockAcquisitionError,
    StorageError,
)
from cronkeeper.jobs import ProcessRunner, RunHandle, RunRegistry
from cronkeeper.logsink import LogSink, STDOUT, STDERR
from cronkeeper.schedule import is_due
from cronkeeper.store import Job, JobStore, JobTable

logger = logging.getLogger(__name__)

IDLE = "idle"
TICK = "tick"
SHUTTING_DOWN = "shutting_down"


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


def read_pid(pid_file: Path) -> Optional[int]:
    """Read the PID stored in a PID file, or None if missing or garbled."""
    try:
        return int(Path(pid_file).read_text().strip())
    except (OSError, ValueError):
        return None


def is_daemon_running(pid_file: Path) -> Tuple[bool, Optional[int]]:
    """
    Check if the daemon is running by reading the PID file.

    Stale or unreadable PID files are removed.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = Path(pid_file)
    if not pid_file.exists():
        return False, None

    pid = read_pid(pid_file)
    if pid is not None and _is_process_running(pid):
        return True, pid

    try:
        pid_file.unlink()
        logger.debug(f"Removed stale PID file: {pid_file}")
    except FileNotFoundError:
        pass
    return False, None


def acquire_pid_lock(pid_file: Path, pid: Optional[int] = None) -> int:
    """
    Create the PID file exclusively, reclaiming it if its owner is gone.

    Args:
        pid_file: Lock file location
        pid: PID to record (defaults to the current process)

    Returns:
        The PID written

    Raises:
        LockAcquisitionError: If a live process already holds the lock
    """
    pid_file = Path(pid_file)
    pid = pid if pid is not None else os.getpid()
    pid_file.parent.mkdir(parents=True, exist_ok=True)

    for _ in range(2):
        try:
            fd = os.open(pid_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            running, holder = is_daemon_running(pid_file)
            if running:
                raise LockAcquisitionError(
                    f"Daemon already running (PID: {holder})", pid=holder
                )
            continue
        except OSError as e:
            raise LockAcquisitionError(f"Cannot create PID file {pid_file}: {e}") from e

        with os.fdopen(fd, 'w') as f:
            f.write(str(pid))
        logger.debug(f"Wrote PID file: {pid_file}")
        return pid

    raise LockAcquisitionError(f"Could not acquire PID file {pid_file}")


def release_pid_lock(pid_file: Path, pid: Optional[int] = None):
    """Remove the PID file if it still belongs to ``pid``."""
    pid_file = Path(pid_file)
    pid = pid if pid is not None else os.getpid()
    if read_pid(pid_file) != pid:
        return
    try:
        pid_file.unlink()
        logger.debug(f"Removed PID file: {pid_file}")
    except FileNotFoundError:
        pass


def get_daemon_info(config: CronkeeperConfig) -> Optional[Dict[str, Any]]:
    """
    Get information about the running daemon.

    Returns:
        Dict with daemon info, or None if the daemon is not running
    """
    running, pid = is_daemon_running(config.pid_file)
    if not running:
        return None

    info = {'pid': pid, 'running': True, 'data_dir': str(config.data_dir)}
    try:
        with open(config.info_file, 'r') as f:
            info.update(json.load(f))
    except (OSError, json.JSONDecodeError):
        return info

    info['running'] = True
    info['pid'] = pid
    return info


class SchedulerDaemon:
    """
    Explicit state of one running scheduler.

    The store, runner, sink and clock are injectable so the tick logic can
    be driven in isolation; serve() wires the real timer, signals and PID
    lock around it.
    """

    def __init__(
        self,
        config: CronkeeperConfig,
        store: Optional[JobStore] = None,
        sink: Optional[LogSink] = None,
        runner: Optional[ProcessRunner] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the daemon.

        Args:
            config: Paths and settings for the data directory
            store: Job table access (defaults to config.jobs_file)
            sink: Job output sink (defaults to config.logs_dir)
            runner: Process runner (defaults to one tracking up to
                    settings.max_tracked_runs runs)
            clock: Returns the current aware datetime
        """
        self.config = config
        self.settings: Settings = config.settings
        self.store = store or JobStore(config.jobs_file)
        self.sink = sink or LogSink(
            config.logs_dir,
            max_bytes=self.settings.log_max_bytes,
            backup_count=self.settings.log_backup_count
        )
        self.runner = runner or ProcessRunner(
            registry=RunRegistry(self.settings.max_tracked_runs)
        )

        tz = self.settings.tzinfo()
        self.clock = clock or (lambda: datetime.now(tz))

        self.state = IDLE
        self._stop_requested = threading.Event()
        self.table = JobTable()
        self.started_at = self.clock().replace(microsecond=0)
        self.last_checked: Dict[int, datetime] = {}
        self.invalid_schedules: Dict[int, str] = {}
        self._last_tick: Optional[datetime] = None
        self._reported_runs: Optional[frozenset] = None
        self._scheduler: Optional[BlockingScheduler] = None

    @property
    def shutting_down(self) -> bool:
        return self._stop_requested.is_set()

    def request_stop(self):
        """Ask the daemon to stop at the next tick boundary."""
        if not self.shutting_down:
            logger.info("Stop requested, shutting down at next tick")
        self._stop_requested.set()
        self.state = SHUTTING_DOWN

    def reload(self) -> JobTable:
        """
        Reload the job table, keeping the previous one if it cannot be read.
        """
        try:
            table = self.store.load()
        except (CorruptStoreError, StorageError) as e:
            logger.error(f"Failed to reload job table, keeping previous ({len(self.table)} job(s)): {e}")
            return self.table

        live_ids = set(table.ids())
        for job_id in list(self.last_checked):
            if job_id not in live_ids:
                del self.last_checked[job_id]
        for job_id in list(self.invalid_schedules):
            if job_id not in live_ids:
                del self.invalid_schedules[job_id]

        self.table = table
        return table

    def tick(self, now: Optional[datetime] = None) -> List[RunHandle]:
        """
        Run one scheduling pass.

        Args:
            now: Instant to evaluate at (defaults to the clock)

        Returns:
            Handles of the runs dispatched during this tick
        """
        if self.shutting_down:
            return []

        now = (now or self.clock()).replace(microsecond=0)
        previous = self._last_tick or self.started_at
        self.state = TICK
        dispatched = []

        try:
            table = self.reload()
            for job in table:
                if self.shutting_down:
                    break
                if self.invalid_schedules.get(job.id) == job.schedule:
                    continue

                last_checked = self.last_checked.get(job.id, previous)
                try:
                    due = is_due(job.schedule, now, last_checked)
                except InvalidScheduleError as e:
                    logger.error(f"[job {job.id}] Skipping job with invalid schedule: {e}")
                    self.invalid_schedules[job.id] = job.schedule
                    continue
                self.last_checked[job.id] = now

                if due:
                    handle = self.dispatch(job)
                    if handle is not None:
                        dispatched.append(handle)
        finally:
            self._last_tick = now
            # A stop may arrive from the signal handler while this tick runs
            self.state = SHUTTING_DOWN if self.shutting_down else IDLE

        return dispatched

    def dispatch(self, job: Job) -> Optional[RunHandle]:
        """Start a job's command bound to its log streams."""
        logger.info(f"[job {job.id}] Due, executing: {job.command}")
        return self.runner.run(
            job.command,
            self.sink.stream(job.id, STDOUT),
            self.sink.stream(job.id, STDERR),
            env=job.env,
            job_id=job.id
        )

    def running(self) -> List[RunHandle]:
        return self.runner.running()

    def _on_timer(self):
        if self.shutting_down:
            if self._scheduler is not None and self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            return

        try:
            self.tick()
        except Exception:
            # Keep the timer alive whatever one pass does
            logger.exception("Scheduling tick failed")

        self._write_info_if_changed()

    def serve(self):
        """
        Run until a stop signal arrives.

        Raises:
            LockAcquisitionError: If another daemon holds the PID file
        """
        self.config.ensure_dirs()
        acquire_pid_lock(self.config.pid_file)
        atexit.register(self._cleanup)

        try:
            self._setup_signal_handlers()
            self._write_info_file()
            self.reload()
            logger.info(
                f"Daemon started (PID: {os.getpid()}), {len(self.table)} job(s), "
                f"tick every {self.settings.tick_interval}s"
            )

            self._scheduler = BlockingScheduler(timezone=self.settings.tzinfo())
            self._scheduler.add_job(
                self._on_timer,
                'interval',
                seconds=self.settings.tick_interval,
                id='cronkeeper-tick',
                next_run_time=self.clock(),
                max_instances=1,
                coalesce=True,
                misfire_grace_time=None
            )
            self._scheduler.start()
        finally:
            self._stop_requested.set()
            self.state = SHUTTING_DOWN
            in_flight = self.running()
            if in_flight:
                logger.info(f"Leaving {len(in_flight)} run(s) to finish")
            self._cleanup()
            logger.info("Daemon stopped")

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.request_stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _info(self) -> Dict[str, Any]:
        return {
            'pid': os.getpid(),
            'version': __version__,
            'started_at': self.started_at.isoformat(),
            'data_dir': str(self.config.data_dir),
            'jobs_file': str(self.store.path),
            'log_dir': str(self.sink.log_dir),
            'tick_interval': self.settings.tick_interval,
            'timezone': self.settings.timezone,
            'running': [handle.to_dict() for handle in self.running()],
        }

    def _write_info_file(self):
        try:
            with open(self.config.info_file, 'w') as f:
                json.dump(self._info(), f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to write daemon info file: {e}")

    def _write_info_if_changed(self):
        current = frozenset(handle.run_id for handle in self.running())
        if current != self._reported_runs:
            self._reported_runs = current
            self._write_info_file()

    def _cleanup(self):
        release_pid_lock(self.config.pid_file)
        try:
            self.config.info_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Failed to remove daemon info file: {e}")

    def __repr__(self):
        return f"SchedulerDaemon(state={self.state}, jobs={len(self.table)})"


def serve(config: CronkeeperConfig):
    """Entry point: build the daemon for a data directory and run it."""
    SchedulerDaemon(config).serve()
