"""
Exception types raised by cronkeeper.

Failures local to one job (bad schedule, spawn failure) are contained by
the daemon and reported per job. Failures in shared infrastructure (the
job table, the PID lock) abort whatever operation triggered them.
"""


class CronkeeperError(Exception):
    """Base class for all cronkeeper errors."""
    pass


class CorruptStoreError(CronkeeperError):
    """Raised when the job table file exists but cannot be parsed."""
    pass


class StorageError(CronkeeperError):
    """Raised when the job table cannot be read or written."""
    pass


class InvalidScheduleError(CronkeeperError):
    """Raised when a cron expression is malformed or can never fire."""
    pass


class SpawnError(CronkeeperError):
    """Raised when a job's command cannot be started."""
    pass


class LockAcquisitionError(CronkeeperError):
    """Raised when another daemon instance already holds the PID file."""

    def __init__(self, message: str, pid: int = None):
        super().__init__(message)
        self.pid = pid


class JobNotFoundError(CronkeeperError):
    """Raised when a job id does not exist in the table."""

    def __init__(self, job_id: int):
        super().__init__(f"No job with id {job_id}")
        self.job_id = job_id


class ConfigError(CronkeeperError):
    """Raised when the settings file cannot be read."""
    pass
