"""
Per-job output logs with size-based rotation.

Each job has two independent streams, stdout and stderr, written to
``{logs_dir}/{job_id}.out.log`` and ``{logs_dir}/{job_id}.err.log``.
When appending a chunk would push the current segment past ``max_bytes``
the segment is renamed to ``.1`` (older backups shift to ``.2``, ``.3``,
...; anything past ``backup_count`` is deleted) and a fresh segment is
started. Chunks larger than ``max_bytes`` are split, so no segment is ever
larger than the threshold.

The current size is always read from the filesystem; nothing about
rotation is persisted separately.
"""

import logging
import os
import threading
from collections import deque
from pathlib import Path
from typing import Dict, List, Tuple

from cronkeeper.config import LOG_ROTATION_BYTES

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"

_SUFFIXES = {STDOUT: "out", STDERR: "err"}


class StreamWriter:
    """One job's stdout or stderr, bound to a LogSink."""

    def __init__(self, sink: 'LogSink', job_id: int, kind: str):
        self.sink = sink
        self.job_id = job_id
        self.kind = kind

    def write(self, data: bytes) -> bool:
        return self.sink.write(self.job_id, self.kind, data)

    def __repr__(self):
        return f"StreamWriter(job={self.job_id}, kind={self.kind})"


class LogSink:
    """
    Append-only writer for job output.

    Thread safe: overlapping runs of the same job may write to the same
    stream concurrently, so each (job, stream) pair has its own lock.
    """

    def __init__(
        self,
        log_dir: Path,
        max_bytes: int = LOG_ROTATION_BYTES,
        backup_count: int = 5
    ):
        """
        Initialize the sink.

        Args:
            log_dir: Directory holding all job log segments
            max_bytes: Size threshold for a single segment
            backup_count: Number of rotated segments kept per stream
        """
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        if backup_count < 1:
            raise ValueError("backup_count must be at least 1")

        self.log_dir = Path(log_dir)
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self._locks: Dict[Tuple[int, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, job_id: int, kind: str) -> Path:
        """Path of the current segment for a job's stream."""
        try:
            suffix = _SUFFIXES[kind]
        except KeyError:
            raise ValueError(f"Unknown stream kind: {kind!r}") from None
        return self.log_dir / f"{job_id}.{suffix}.log"

    def stream(self, job_id: int, kind: str) -> StreamWriter:
        self.path_for(job_id, kind)  # validates kind
        return StreamWriter(self, job_id, kind)

    def write(self, job_id: int, kind: str, data: bytes) -> bool:
        """
        Append bytes to a job's stream, rotating as needed.

        I/O failures are logged and the chunk is dropped; they never
        propagate to the caller.

        Returns:
            True if all bytes were written
        """
        if not data:
            return True

        path = self.path_for(job_id, kind)
        with self._lock_for(job_id, kind):
            try:
                self._append(path, memoryview(data))
            except OSError as e:
                logger.error(f"[job {job_id}] Failed to write {kind} log {path}: {e}")
                return False
        return True

    def _append(self, path: Path, view: memoryview):
        path.parent.mkdir(parents=True, exist_ok=True)
        size = path.stat().st_size if path.exists() else 0

        while view:
            if size and size + len(view) > self.max_bytes:
                self._rotate(path)
                size = 0
            piece = view[:self.max_bytes]
            with open(path, 'ab') as f:
                f.write(piece)
            size += len(piece)
            view = view[len(piece):]

    def _rotate(self, path: Path):
        oldest = self._backup(path, self.backup_count)
        if oldest.exists():
            oldest.unlink()

        for i in range(self.backup_count - 1, 0, -1):
            src = self._backup(path, i)
            if src.exists():
                os.replace(src, self._backup(path, i + 1))

        os.replace(path, self._backup(path, 1))
        logger.debug(f"Rotated {path}")

    @staticmethod
    def _backup(path: Path, index: int) -> Path:
        return path.with_name(f"{path.name}.{index}")

    def _lock_for(self, job_id: int, kind: str) -> threading.Lock:
        key = (job_id, kind)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def segments(self, job_id: int, kind: str) -> List[Path]:
        """Existing segments for a stream, oldest first (current segment last)."""
        path = self.path_for(job_id, kind)
        found = [
            self._backup(path, i)
            for i in range(self.backup_count, 0, -1)
            if self._backup(path, i).exists()
        ]
        if path.exists():
            found.append(path)
        return found

    def read_all(self, job_id: int, kind: str) -> bytes:
        """Concatenate every retained segment of a stream in write order."""
        return b"".join(p.read_bytes() for p in self.segments(job_id, kind))

    def read_tail(self, job_id: int, kind: str, lines: int = 50) -> List[str]:
        """Last lines of the current segment, decoded leniently."""
        path = self.path_for(job_id, kind)
        if not path.exists():
            return []
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return [line.rstrip('\n') for line in deque(f, maxlen=lines)]
