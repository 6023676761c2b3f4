"""
File-backed job table.

The table is a single JSON document rewritten on every mutation:

    {
      "next_id": 3,
      "jobs": [
        {"id": 0, "command": "echo hello", "schedule": "0 * * * * *",
         "created_at": "2024-01-01T00:00:00+00:00", "env": {...}},
        ...
      ]
    }

Writes go to a temp file in the same directory which is then renamed over
the original, so readers (the daemon reloads on every tick) never see a
partial file. There is no locking beyond that; the last writer wins.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, List, Any, Iterator

from cronkeeper.errors import CorruptStoreError, StorageError

logger = logging.getLogger(__name__)


@dataclass
class Job:
    """A persisted job record. Commands and schedules are immutable once created."""
    id: int
    command: str
    schedule: str  # six-field cron expression, stored verbatim
    created_at: str  # ISO format timestamp, informational only
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        """Create from a decoded JSON object, validating field types."""
        if not isinstance(data, dict):
            raise CorruptStoreError(f"Job entry is not an object: {data!r}")

        try:
            job_id = data['id']
            command = data['command']
            schedule = data['schedule']
        except KeyError as e:
            raise CorruptStoreError(f"Job entry missing field {e}") from e

        # bool is an int subclass, reject it explicitly
        if not isinstance(job_id, int) or isinstance(job_id, bool) or job_id < 0:
            raise CorruptStoreError(f"Invalid job id: {job_id!r}")
        if not isinstance(command, str) or not isinstance(schedule, str):
            raise CorruptStoreError(f"Job {job_id}: 'command' and 'schedule' must be strings")

        env = data.get('env') or {}
        if not isinstance(env, dict):
            raise CorruptStoreError(f"Job {job_id}: 'env' must be an object")

        return cls(
            id=job_id,
            command=command,
            schedule=schedule,
            created_at=str(data.get('created_at', '')),
            env={str(k): str(v) for k, v in env.items()}
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class JobTable:
    """Ordered jobs plus the id counter. next_id only ever grows."""
    next_id: int = 0
    jobs: List[Job] = field(default_factory=list)

    def get(self, job_id: int) -> Optional[Job]:
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None

    def ids(self) -> List[int]:
        return [job.id for job in self.jobs]

    def __iter__(self) -> Iterator[Job]:
        return iter(self.jobs)

    def __len__(self) -> int:
        return len(self.jobs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'next_id': self.next_id,
            'jobs': [job.to_dict() for job in self.jobs]
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'JobTable':
        if not isinstance(data, dict):
            raise CorruptStoreError("Job table is not a JSON object")

        next_id = data.get('next_id')
        if not isinstance(next_id, int) or isinstance(next_id, bool) or next_id < 0:
            raise CorruptStoreError(f"Invalid next_id: {next_id!r}")

        raw_jobs = data.get('jobs')
        if not isinstance(raw_jobs, list):
            raise CorruptStoreError("Missing 'jobs' list in job table")

        jobs = [Job.from_dict(item) for item in raw_jobs]

        seen = set()
        for job in jobs:
            if job.id in seen:
                raise CorruptStoreError(f"Duplicate job id {job.id}")
            seen.add(job.id)

        if seen and next_id <= max(seen):
            logger.warning(
                f"next_id {next_id} is not above the largest job id {max(seen)}, "
                f"advancing it to {max(seen) + 1}"
            )
            next_id = max(seen) + 1

        return cls(next_id=next_id, jobs=jobs)


class JobStore:
    """
    Data access for the job table file.

    Every mutating call loads the current file, applies the change and
    saves it back, so the CLI and the daemon always share one source of
    truth on disk.
    """

    def __init__(self, path: Path):
        """
        Initialize the store.

        Args:
            path: Location of the job table JSON file
        """
        self.path = Path(path)

    def load(self) -> JobTable:
        """
        Load the job table.

        Returns:
            The table, or an empty one if the file does not exist yet

        Raises:
            CorruptStoreError: If the file exists but is not a valid table
            StorageError: If the file cannot be read
        """
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return JobTable()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptStoreError(f"Failed to parse job table {self.path}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to read job table {self.path}: {e}") from e

        return JobTable.from_dict(data)

    def save(self, table: JobTable):
        """
        Atomically replace the job table file.

        Raises:
            StorageError: If the write fails; the previous file is left intact
        """
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(table.to_dict(), f, indent=2)
                f.write('\n')
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise StorageError(f"Failed to write job table {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug(f"Could not remove temp file {tmp_name}")

        logger.debug(f"Saved {len(table)} job(s) to {self.path}")

    def add(self, command: str, schedule: str, env: Optional[Dict[str, str]] = None) -> int:
        """
        Append a new job with a fresh id.

        The schedule is stored verbatim; it is only validated when the
        daemon evaluates it.

        Returns:
            The id assigned to the new job
        """
        table = self.load()
        job_id = table.next_id
        table.jobs.append(Job(
            id=job_id,
            command=command,
            schedule=schedule,
            created_at=datetime.now(timezone.utc).isoformat(timespec='seconds'),
            env=dict(env or {})
        ))
        table.next_id = job_id + 1
        self.save(table)

        logger.info(f"Added job {job_id}: '{schedule}' {command}")
        return job_id

    def remove(self, job_id: int) -> bool:
        """
        Remove a job by id.

        Returns:
            True if the job existed and was removed, False otherwise
        """
        table = self.load()
        remaining = [job for job in table.jobs if job.id != job_id]
        if len(remaining) == len(table.jobs):
            return False

        table.jobs = remaining
        self.save(table)

        logger.info(f"Removed job {job_id}")
        return True

    def get(self, job_id: int) -> Optional[Job]:
        """Get a job by id, or None if it does not exist."""
        return self.load().get(job_id)

    def __repr__(self):
        return f"JobStore(path={self.path})"
