"""
Tests for the scheduling daemon's tick loop and single-instance lock.
"""

import logging
import os
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from cronkeeper.config import CronkeeperConfig
from cronkeeper.errors import LockAcquisitionError
from cronkeeper.logsink import STDOUT
from cronkeeper.service import (
    IDLE,
    SHUTTING_DOWN,
    SchedulerDaemon,
    acquire_pid_lock,
    get_daemon_info,
    is_daemon_running,
    release_pid_lock,
)
from cronkeeper.store import JobStore

START = datetime(2024, 5, 6, 12, 0, 30, tzinfo=timezone.utc)


def _seconds(n: int) -> datetime:
    return START + timedelta(seconds=n)


class FakeRunner:
    """Records dispatches instead of spawning processes."""

    def __init__(self):
        self.calls = []

    def run(self, command, stdout_sink, stderr_sink, env=None, job_id=None):
        self.calls.append((job_id, command))
        return (job_id, command)

    def running(self):
        return []

    @property
    def dispatched_ids(self):
        return [job_id for job_id, _ in self.calls]


@pytest.fixture
def config(tmp_path, monkeypatch):
    for var in ("CRONKEEPER_TICK_INTERVAL", "CRONKEEPER_TIMEZONE", "CRONKEEPER_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    config = CronkeeperConfig(str(tmp_path))
    config.ensure_dirs()
    return config


@pytest.fixture
def store(config):
    return JobStore(config.jobs_file)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def daemon(config, store, runner):
    return SchedulerDaemon(config, store=store, runner=runner, clock=lambda: START)


def test_echo_job_fires_once_per_minute(config, store):
    job_id = store.add("echo hello", "0 * * * * *")
    daemon = SchedulerDaemon(config, store=store, clock=lambda: START)

    assert daemon.tick(_seconds(1)) == []

    handles = daemon.tick(_seconds(30))  # 12:01:00
    assert len(handles) == 1
    assert handles[0].wait(timeout=10) == 0
    assert daemon.sink.read_all(job_id, STDOUT) == b"hello\n"

    assert daemon.tick(_seconds(30)) == [], "same second must not fire twice"
    assert daemon.tick(_seconds(31)) == []
    assert daemon.state == IDLE


def test_no_double_fire_within_a_second(daemon, store, runner):
    store.add("date", "* * * * * *")
    daemon.tick(_seconds(1))
    daemon.tick(_seconds(1) + timedelta(milliseconds=400))
    daemon.tick(_seconds(1) + timedelta(milliseconds=900))
    assert runner.dispatched_ids == [0]


def test_late_tick_still_fires(daemon, store, runner):
    store.add("date", "0 * * * * *")
    daemon.tick(_seconds(29))  # 12:00:59
    daemon.tick(_seconds(32))  # 12:01:02, skipped over 12:01:00
    assert runner.dispatched_ids == [0]


def test_no_catch_up_for_time_before_start(daemon, store, runner):
    # 12:00:00 passed before the daemon started at 12:00:30
    store.add("date", "0 0 12 * * *")
    daemon.tick(_seconds(1))
    assert runner.calls == []


def test_job_added_while_running_fires_on_next_match(daemon, store, runner):
    daemon.tick(_seconds(29))
    store.add("date", "0 * * * * *")
    daemon.tick(_seconds(30))
    assert runner.dispatched_ids == [0]


def test_stopped_job_no_longer_fires(daemon, store, runner):
    keep = store.add("echo keep", "* * * * * *")
    drop = store.add("echo drop", "* * * * * *")
    daemon.tick(_seconds(1))
    assert sorted(runner.dispatched_ids) == [keep, drop]

    store.remove(drop)
    runner.calls.clear()
    daemon.tick(_seconds(2))

    assert runner.dispatched_ids == [keep]
    assert drop not in daemon.last_checked


def test_invalid_schedule_does_not_block_other_jobs(daemon, store, runner, caplog):
    bad = store.add("echo bad", "* * * * *")
    good = store.add("echo good", "* * * * * *")

    with caplog.at_level(logging.ERROR, logger="cronkeeper.service"):
        daemon.tick(_seconds(1))
        daemon.tick(_seconds(2))

    assert runner.dispatched_ids == [good, good]
    errors = [r for r in caplog.records if "invalid schedule" in r.getMessage()]
    assert len(errors) == 1, "an invalid schedule is reported once, not every tick"
    assert f"[job {bad}]" in errors[0].getMessage()


def test_fixed_schedule_is_evaluated_again(daemon, store, runner):
    job_id = store.add("echo", "* * * * *")
    daemon.tick(_seconds(1))
    assert job_id in daemon.invalid_schedules

    table = store.load()
    table.get(job_id).schedule = "* * * * * *"
    store.save(table)

    daemon.tick(_seconds(2))
    assert runner.dispatched_ids == [job_id]


def test_corrupt_table_keeps_previous(daemon, store, runner, config, caplog):
    store.add("echo", "* * * * * *")
    daemon.tick(_seconds(1))

    config.jobs_file.write_text("{broken")
    with caplog.at_level(logging.ERROR, logger="cronkeeper.service"):
        daemon.tick(_seconds(2))

    assert daemon.table.ids() == [0]
    assert runner.dispatched_ids == [0, 0]
    assert "keeping previous" in caplog.text


def test_request_stop_makes_tick_a_no_op(daemon, store, runner):
    store.add("echo", "* * * * * *")
    daemon.request_stop()
    assert daemon.tick(_seconds(1)) == []
    assert runner.calls == []
    assert daemon.shutting_down


def test_stop_requested_during_tick_is_kept(config, store, runner):
    store.add("echo", "* * * * * *")
    holder = {}

    def clock():
        # Stop arrives after the tick has started, as from a signal handler
        if "daemon" in holder:
            holder["daemon"].request_stop()
            return _seconds(1)
        return START

    daemon = SchedulerDaemon(config, store=store, runner=runner, clock=clock)
    holder["daemon"] = daemon

    assert daemon.tick() == []
    assert runner.calls == []
    assert daemon.shutting_down
    assert daemon.state == SHUTTING_DOWN
    assert daemon.tick(_seconds(2)) == []


def test_spawn_failure_is_not_fatal(config, store):
    job_id = store.add("/nonexistent/binary", "* * * * * *")
    daemon = SchedulerDaemon(config, store=store, clock=lambda: START)

    assert daemon.tick(_seconds(1)) == []
    assert b"Failed to spawn" in daemon.sink.read_all(job_id, "stderr")
    assert daemon.state == IDLE


def test_acquire_and_release_pid_lock(tmp_path):
    pid_file = tmp_path / "cronkeeper.pid"
    assert acquire_pid_lock(pid_file) == os.getpid()
    assert pid_file.read_text() == str(os.getpid())
    assert is_daemon_running(pid_file) == (True, os.getpid())

    release_pid_lock(pid_file)
    assert not pid_file.exists()


def test_second_instance_is_refused(tmp_path):
    pid_file = tmp_path / "cronkeeper.pid"
    acquire_pid_lock(pid_file)

    with pytest.raises(LockAcquisitionError) as exc_info:
        acquire_pid_lock(pid_file, pid=os.getpid() + 1)
    assert exc_info.value.pid == os.getpid()
    assert pid_file.read_text() == str(os.getpid())


@pytest.mark.parametrize("contents", ["999999999", "not-a-pid", ""])
def test_stale_pid_file_is_reclaimed(tmp_path, contents):
    pid_file = tmp_path / "cronkeeper.pid"
    pid_file.write_text(contents)

    assert acquire_pid_lock(pid_file) == os.getpid()
    assert pid_file.read_text() == str(os.getpid())


def test_release_ignores_foreign_pid_file(tmp_path):
    pid_file = tmp_path / "cronkeeper.pid"
    pid_file.write_text("1")
    release_pid_lock(pid_file)
    assert pid_file.exists()


def test_serve_refuses_when_lock_is_held(config, store):
    acquire_pid_lock(config.pid_file)
    daemon = SchedulerDaemon(config, store=store, runner=FakeRunner())
    try:
        with pytest.raises(LockAcquisitionError):
            daemon.serve()
        assert config.pid_file.exists()
    finally:
        release_pid_lock(config.pid_file)


def test_daemon_info_when_not_running(config):
    assert get_daemon_info(config) is None


def test_serve_ticks_until_stopped(config, store, monkeypatch):
    store.add("echo", "* * * * * *")
    config.settings.tick_interval = 0.05
    runner = FakeRunner()
    daemon = SchedulerDaemon(config, store=store, runner=runner)
    # Signal handlers can only be installed from the main thread
    monkeypatch.setattr(daemon, "_setup_signal_handlers", lambda: None)

    errors = []

    def run():
        try:
            daemon.serve()
        except Exception as e:
            errors.append(e)

    thread = threading.Thread(target=run)
    thread.start()
    try:
        deadline = time.monotonic() + 5
        while not runner.calls and time.monotonic() < deadline:
            time.sleep(0.05)

        assert runner.dispatched_ids, "the interval timer must drive ticks"
        assert config.pid_file.read_text() == str(os.getpid())
        assert config.info_file.exists()
    finally:
        daemon.request_stop()
        thread.join(timeout=5)

    assert not thread.is_alive(), "the scheduler must stop at the next tick"
    assert errors == []
    assert daemon.state == SHUTTING_DOWN
    assert not config.pid_file.exists()
    assert not config.info_file.exists()
