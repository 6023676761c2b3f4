"""
Cronkeeper configuration management.

Resolves the data directory, lays out the files that live inside it, and
loads the daemon's tunable settings.

Data directory resolution order (highest to lowest priority):
1. Explicitly passed data_dir argument (the CLI's --data-dir)
2. CRONKEEPER_DATA_DIR environment variable
3. Default: ~/.cronkeeper

Directory structure:
    {data_dir}/
    ├── jobs.json           # Job table shared by the CLI and the daemon
    ├── logs/               # Per-job stdout/stderr segments
    ├── config.json         # Optional settings overrides
    ├── cronkeeper.pid      # Daemon single-instance lock
    ├── daemon_info.json    # Runtime info written by the daemon
    ├── daemon.log          # The daemon's own log
    └── daemon.out          # Raw stdout/stderr of a detached daemon
"""

import json
import logging
import os
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Optional, List, Dict, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from cronkeeper.errors import ConfigError

load_dotenv()

logger = logging.getLogger(__name__)

ENV_DATA_DIR = "CRONKEEPER_DATA_DIR"
DEFAULT_DATA_DIR = Path.home() / ".cronkeeper"

LOG_ROTATION_BYTES = 5 * 1024 * 1024

# Environment captured with each job so it runs with the user's PATH
CAPTURED_ENV_KEYS = ("PATH", "HOME", "USER", "SHELL", "LANG", "LC_ALL")

# Settings that may be overridden from the environment: name -> (env var, type)
_ENV_OVERRIDES = {
    "tick_interval": ("CRONKEEPER_TICK_INTERVAL", float),
    "log_max_bytes": ("CRONKEEPER_LOG_MAX_BYTES", int),
    "log_backup_count": ("CRONKEEPER_LOG_BACKUP_COUNT", int),
    "timezone": ("CRONKEEPER_TIMEZONE", str),
    "log_level": ("CRONKEEPER_LOG_LEVEL", str),
}


def resolve_data_dir(data_dir: Optional[str] = None) -> Path:
    """
    Resolve the data directory from the argument, environment or default.

    Args:
        data_dir: Explicit directory, takes priority when given

    Returns:
        Absolute path of the data directory (not created)
    """
    if data_dir:
        logger.debug(f"Using explicitly provided data_dir: {data_dir}")
        return Path(data_dir).expanduser().resolve()

    env_dir = os.environ.get(ENV_DATA_DIR)
    if env_dir:
        logger.debug(f"Using data_dir from {ENV_DATA_DIR}: {env_dir}")
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_DATA_DIR


def capture_environment() -> Dict[str, str]:
    """Snapshot the environment variables a job needs to find its binaries."""
    return {key: os.environ[key] for key in CAPTURED_ENV_KEYS if key in os.environ}


@dataclass
class Settings:
    """Tunable daemon settings."""
    tick_interval: float = 1.0  # seconds between scheduling ticks
    log_max_bytes: int = LOG_ROTATION_BYTES
    log_backup_count: int = 5
    timezone: str = "UTC"  # zone cron expressions are evaluated in
    max_tracked_runs: int = 256
    log_level: str = "INFO"

    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def validate(self) -> List[str]:
        """
        Validate settings.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.tick_interval <= 0:
            errors.append("'tick_interval' must be positive")
        if self.log_max_bytes <= 0:
            errors.append("'log_max_bytes' must be positive")
        if self.log_backup_count < 1:
            errors.append("'log_backup_count' must be at least 1")
        if self.max_tracked_runs < 1:
            errors.append("'max_tracked_runs' must be at least 1")
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            errors.append(f"Unknown 'log_level': {self.log_level}")

        try:
            self.tzinfo()
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"Unknown 'timezone': {self.timezone}")

        return errors


class CronkeeperConfig:
    """
    Paths and settings for one cronkeeper data directory.

    Settings are read from defaults, then {data_dir}/config.json, then
    CRONKEEPER_* environment variables.
    """

    def __init__(self, data_dir: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            data_dir: Base directory for all cronkeeper files. If None, it is
                      resolved from the environment or the default.
        """
        self.data_dir = resolve_data_dir(data_dir)
        self.settings = Settings()

        if self.config_file.exists():
            self.load()
        self._apply_env_overrides()

    @property
    def jobs_file(self) -> Path:
        return self.data_dir / "jobs.json"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def config_file(self) -> Path:
        return self.data_dir / "config.json"

    @property
    def pid_file(self) -> Path:
        return self.data_dir / "cronkeeper.pid"

    @property
    def info_file(self) -> Path:
        return self.data_dir / "daemon_info.json"

    @property
    def daemon_log_file(self) -> Path:
        return self.data_dir / "daemon.log"

    @property
    def daemon_output_file(self) -> Path:
        return self.data_dir / "daemon.out"

    def ensure_dirs(self):
        """Create the data and log directories."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def load(self):
        """Load settings from config.json."""
        try:
            with open(self.config_file, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load config from {self.config_file}: {e}")
            raise ConfigError(f"Failed to load config from {self.config_file}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"{self.config_file} must contain a JSON object")

        known = {f.name: f.type for f in fields(Settings)}
        unknown = set(data) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown settings in {self.config_file}: {sorted(unknown)}")

        values = {}
        for name, expected in known.items():
            if name not in data:
                continue
            value = data[name]
            # ints are fine where a float is expected, bools never are
            accepted = (int, float) if expected is float else expected
            if isinstance(value, bool) or not isinstance(value, accepted):
                raise ConfigError(
                    f"{self.config_file}: '{name}' must be {expected.__name__}, got {value!r}"
                )
            values[name] = expected(value)

        self.settings = Settings(**values)
        logger.debug(f"Loaded settings from {self.config_file}")

    def _apply_env_overrides(self):
        for name, (env_var, cast) in _ENV_OVERRIDES.items():
            raw = os.environ.get(env_var)
            if raw is None:
                continue
            try:
                setattr(self.settings, name, cast(raw))
            except ValueError:
                logger.warning(f"Ignoring invalid {env_var}={raw!r}")

    def as_dict(self) -> Dict[str, Any]:
        return {'data_dir': str(self.data_dir), **asdict(self.settings)}

    def __repr__(self):
        return f"CronkeeperConfig(data_dir={self.data_dir})"
