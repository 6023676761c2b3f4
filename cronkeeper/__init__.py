"""
cronkeeper - a single-host recurring job scheduler

Register shell commands with a six-field cron schedule (seconds first);
a background daemon runs them on time and captures their output to
per-job rotating log files.

Features:
- Durable JSON job table with stable, never-reused ids
- Second-resolution cron schedules
- Non-blocking execution, overlapping runs allowed
- Per-job stdout/stderr logs rotated at 5 MiB
- Single-instance daemon guarded by a PID file
"""

__version__ = "0.1.0"

from cronkeeper.config import CronkeeperConfig, Settings
from cronkeeper.jobs import ProcessRunner, RunHandle
from cronkeeper.logsink import LogSink
from cronkeeper.schedule import is_due, next_due, parse_schedule
from cronkeeper.service import SchedulerDaemon
from cronkeeper.store import Job, JobStore, JobTable

__all__ = [
    "CronkeeperConfig",
    "Settings",
    "Job",
    "JobStore",
    "JobTable",
    "LogSink",
    "ProcessRunner",
    "RunHandle",
    "SchedulerDaemon",
    "is_due",
    "next_due",
    "parse_schedule",
]
