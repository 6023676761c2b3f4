"""
Command execution for scheduled jobs.

Commands are split with shell-word rules (quotes and backslash escapes
honored) and executed directly, without a shell, so pipes and redirection
are not interpreted. Spawning returns immediately: stdout and stderr are
streamed to their sinks by reader threads while the process runs, and a
watcher thread records completion.
"""

import logging
import os
import shlex
import subprocess
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Callable

from cronkeeper.errors import SpawnError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


def split_command(command: str) -> List[str]:
    """
    Split a command line into argv.

    Raises:
        SpawnError: If the command is empty or has unbalanced quotes
    """
    try:
        argv = shlex.split(command)
    except ValueError as e:
        raise SpawnError(f"Failed to parse command: {e}") from e

    if not argv:
        raise SpawnError("Empty command")
    return argv


class RunHandle:
    """An in-flight (or finished) execution of a job's command."""

    def __init__(
        self,
        process: subprocess.Popen,
        command: str,
        job_id: Optional[int] = None
    ):
        self.process = process
        self.command = command
        self.job_id = job_id
        self.run_id = str(uuid.uuid4())[:8]
        self.started_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self._threads: List[threading.Thread] = []
        self._done = threading.Event()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self._done.is_set() else None

    @property
    def log_prefix(self) -> str:
        if self.job_id is not None:
            return f"[job {self.job_id}:{self.run_id}]"
        return f"[{self.run_id}]"

    def done(self) -> bool:
        """Whether the process exited and all of its output was flushed."""
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Block until the run finishes and its output has been written.

        Returns:
            The exit code, or None if the timeout expired first
        """
        if not self._done.wait(timeout):
            return None
        return self.process.returncode

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'run_id': self.run_id,
            'pid': self.pid,
            'command': self.command,
            'started_at': self.started_at.isoformat(),
        }

    def __repr__(self):
        return f"RunHandle(job={self.job_id}, run={self.run_id}, pid={self.pid})"


class RunRegistry:
    """
    Bounded record of in-flight runs, used only for status reporting.

    When the registry is full new runs still execute; they are just not
    tracked.
    """

    def __init__(self, max_size: int = 256):
        self.max_size = max_size
        self._runs: Dict[str, RunHandle] = {}
        self._lock = threading.Lock()

    def add(self, handle: RunHandle) -> bool:
        with self._lock:
            if len(self._runs) >= self.max_size:
                logger.warning(
                    f"{handle.log_prefix} Run registry full ({self.max_size}), not tracking run"
                )
                return False
            self._runs[handle.run_id] = handle
            return True

    def discard(self, handle: RunHandle):
        with self._lock:
            self._runs.pop(handle.run_id, None)

    def running(self) -> List[RunHandle]:
        with self._lock:
            return list(self._runs.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)


class ProcessRunner:
    """
    Spawns job commands without waiting for them.

    The runner knows nothing about schedules or job tables. It is handed a
    command and two sinks (anything with a ``write(bytes)`` method) and
    returns a handle for the running process.
    """

    def __init__(
        self,
        registry: Optional[RunRegistry] = None,
        working_dir: Optional[str] = None,
        on_exit: Optional[Callable[[RunHandle], None]] = None
    ):
        """
        Initialize the runner.

        Args:
            registry: Where in-flight runs are recorded (a private one if None)
            working_dir: Working directory for spawned commands
            on_exit: Called from the watcher thread when a run finishes
        """
        self.registry = registry if registry is not None else RunRegistry()
        self.working_dir = working_dir
        self.on_exit = on_exit

    def run(
        self,
        command: str,
        stdout_sink,
        stderr_sink,
        env: Optional[Dict[str, str]] = None,
        job_id: Optional[int] = None
    ) -> Optional[RunHandle]:
        """
        Start a command and return immediately.

        Args:
            command: Command line, split with shell-word rules
            stdout_sink: Receives stdout chunks as they are produced
            stderr_sink: Receives stderr chunks as they are produced
            env: Extra environment variables layered over the current ones
            job_id: Job id, used for logging and status only

        Returns:
            Handle for the running process, or None if it could not be
            spawned. Spawn failures are written as one line to stderr_sink.
        """
        log_prefix = f"[job {job_id}]" if job_id is not None else ""

        try:
            process = self._spawn(command, env)
        except SpawnError as e:
            logger.warning(f"{log_prefix} {e}")
            stderr_sink.write(f"cronkeeper: {e}\n".encode('utf-8', errors='replace'))
            return None

        handle = RunHandle(process, command, job_id=job_id)
        logger.info(f"{handle.log_prefix} Started pid {handle.pid}: {command}")

        readers = [
            threading.Thread(
                target=self._pump,
                args=(process.stdout, stdout_sink, handle),
                name=f"{handle.run_id}-stdout"
            ),
            threading.Thread(
                target=self._pump,
                args=(process.stderr, stderr_sink, handle),
                name=f"{handle.run_id}-stderr"
            ),
        ]
        handle._threads = readers
        watcher = threading.Thread(
            target=self._watch,
            args=(handle,),
            name=f"{handle.run_id}-watch"
        )

        self.registry.add(handle)
        for thread in readers:
            thread.start()
        watcher.start()

        return handle

    def running(self) -> List[RunHandle]:
        return self.registry.running()

    def _spawn(self, command: str, env: Optional[Dict[str, str]]) -> subprocess.Popen:
        argv = split_command(command)

        process_env = None
        if env:
            process_env = {**os.environ, **env}

        try:
            return subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.working_dir,
                env=process_env
            )
        except OSError as e:
            reason = e.strerror or str(e)
            raise SpawnError(f"Failed to spawn '{argv[0]}': {reason}") from e

    @staticmethod
    def _pump(stream, sink, handle: RunHandle):
        try:
            for chunk in iter(lambda: stream.read1(READ_CHUNK_SIZE), b''):
                sink.write(chunk)
        except (OSError, ValueError) as e:
            logger.error(f"{handle.log_prefix} Output stream failed: {e}")
        finally:
            stream.close()

    def _watch(self, handle: RunHandle):
        start = time.monotonic()
        returncode = handle.process.wait()
        for thread in handle._threads:
            thread.join()
        handle.finished_at = datetime.now(timezone.utc)
        duration = time.monotonic() - start

        if returncode == 0:
            logger.info(f"{handle.log_prefix} Completed successfully in {duration:.2f}s")
        else:
            logger.warning(f"{handle.log_prefix} Exited with code {returncode} after {duration:.2f}s")

        self.registry.discard(handle)
        handle._done.set()

        if self.on_exit is not None:
            try:
                self.on_exit(handle)
            except Exception:
                logger.exception(f"{handle.log_prefix} Exit callback failed")
