import os
import signal
import subprocess
import sys
import threading

import psutil
import pytest

from opencode_runner import watchdog as watchdog_module
from opencode_runner.process import LaunchCommand, Liveness, Role, is_alive, launch
from opencode_runner.registry import RegistryRecord
from opencode_runner.watchdog import Watchdog, WatchdogState, detached_commands, monitor_command

from conftest import sleeper, wait_for


@pytest.fixture()
def commands():
    return {Role.SERVICE: sleeper(Role.SERVICE), Role.PROXY: sleeper(Role.PROXY)}


@pytest.fixture()
def session(config, registry, commands, pids):
    """A registry pointing at a live service and proxy."""
    service = launch(commands[Role.SERVICE], config.log_file)
    proxy = launch(commands[Role.PROXY], config.log_file)
    pids.extend([service.pid, proxy.pid])
    record = RegistryRecord(service.pid, proxy.pid, os.getpid())
    registry.write(record)
    return record


@pytest.fixture()
def watchdog(config, registry, commands, pids):
    wd = Watchdog(registry, commands, config.log_file, interval=config.monitor_interval)
    yield wd
    pids.extend(proc.pid for proc in wd.processes.values())


def kill_and_reap(pid):
    os.kill(pid, signal.SIGKILL)
    try:
        os.waitpid(pid, 0)
    except ChildProcessError:
        # A running watchdog got to it first
        pass


def test_stops_when_stop_requested(watchdog, registry, session):
    registry.request_stop()

    assert watchdog.tick() is False
    assert watchdog.state is WatchdogState.STOPPED
    # Stopped for good
    registry.clear_stop()
    assert watchdog.tick() is False


def test_stops_when_registry_missing(watchdog, registry):
    assert registry.read() is None

    assert watchdog.tick() is False
    assert watchdog.state is WatchdogState.STOPPED


def test_healthy_session_is_left_alone(watchdog, registry, session):
    assert watchdog.tick() is True

    assert watchdog.state is WatchdogState.POLLING
    assert registry.read() == session
    assert watchdog.processes == {}


def test_relaunches_dead_service_only(watchdog, registry, session):
    kill_and_reap(session.service_pid)

    assert watchdog.tick() is True

    record = registry.read()
    assert record.service_pid != session.service_pid
    assert is_alive(record.service_pid)
    assert record.proxy_pid == session.proxy_pid
    assert record.monitor_pid == session.monitor_pid
    assert watchdog.processes[Role.SERVICE].pid == record.service_pid


def test_relaunches_dead_proxy_only(watchdog, registry, session):
    kill_and_reap(session.proxy_pid)

    assert watchdog.tick() is True

    record = registry.read()
    assert record.proxy_pid != session.proxy_pid
    assert is_alive(record.proxy_pid)
    assert record.service_pid == session.service_pid


def test_relaunches_both_when_both_died(watchdog, registry, session):
    kill_and_reap(session.service_pid)
    kill_and_reap(session.proxy_pid)

    watchdog.tick()

    record = registry.read()
    assert is_alive(record.service_pid)
    assert is_alive(record.proxy_pid)
    assert {record.service_pid, record.proxy_pid}.isdisjoint({session.service_pid, session.proxy_pid})


def test_zombie_service_triggers_relaunch(watchdog, registry, session):
    # Exits immediately and stays unreaped: we are its parent and never wait
    zombie = subprocess.Popen([sys.executable, "-c", "pass"])
    assert wait_for(lambda: psutil.Process(zombie.pid).status() == psutil.STATUS_ZOMBIE)
    registry.write(session.with_pid(Role.SERVICE, zombie.pid))

    assert watchdog.tick() is True

    record = registry.read()
    assert record.service_pid != zombie.pid
    assert is_alive(record.service_pid)
    assert not psutil.pid_exists(zombie.pid)


def test_launch_failure_is_retried_next_tick(watchdog, registry, session, commands):
    watchdog.commands = {
        Role.SERVICE: LaunchCommand(role=Role.SERVICE, args=("/nonexistent/opencode", "serve")),
        Role.PROXY: commands[Role.PROXY],
    }
    kill_and_reap(session.service_pid)

    assert watchdog.tick() is True
    assert watchdog.state is WatchdogState.POLLING
    assert registry.read() == session

    watchdog.commands = commands
    assert watchdog.tick() is True
    assert is_alive(registry.read().service_pid)


def test_stop_requested_during_check_prevents_relaunch(watchdog, registry, session, monkeypatch):
    def dead_and_stopping(pid):
        registry.request_stop()
        return Liveness.DEAD

    monkeypatch.setattr(watchdog_module, "check_liveness", dead_and_stopping)

    assert watchdog.tick() is False
    assert watchdog.state is WatchdogState.STOPPED
    assert registry.read() == session
    assert watchdog.processes == {}


def test_run_survives_tick_errors_and_stops_on_sentinel(watchdog, registry, session, monkeypatch):
    calls = []
    real_tick = watchdog.tick

    def flaky_tick():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        if len(calls) == 3:
            registry.request_stop()
        return real_tick()

    sleeps = []
    monkeypatch.setattr(watchdog, "tick", flaky_tick)
    watchdog._sleep = sleeps.append

    watchdog.run()

    assert len(calls) == 3
    assert sleeps == [watchdog.interval] * 3
    assert watchdog.state is WatchdogState.STOPPED


def test_recovers_crash_and_honours_stop(watchdog, registry, session):
    thread = threading.Thread(target=watchdog.run, daemon=True)
    thread.start()

    kill_and_reap(session.service_pid)
    assert wait_for(lambda: registry.read().service_pid != session.service_pid)
    assert registry.read().proxy_pid == session.proxy_pid

    registry.request_stop()
    thread.join(timeout=5)
    assert not thread.is_alive()

    # Nothing comes back once stopped
    current = registry.read()
    kill_and_reap(current.service_pid)
    kill_and_reap(current.proxy_pid)
    assert not wait_for(lambda: registry.read() != current, timeout=0.5)


def test_monitor_command_runs_package_with_config_env(config):
    command = monitor_command(config)

    assert command.role is Role.MONITOR
    assert command.args == (sys.executable, "-m", "opencode_runner", "--watchdog")
    assert command.env["OPENCODE_DATA_DIR"] == str(config.data_dir)
    assert command.env["OPENCODE_MONITOR_INTERVAL"] == str(config.monitor_interval)


def test_stop_during_second_relaunch_keeps_first_recorded(watchdog, registry, session, monkeypatch):
    def stop_arrives_at_proxy(pid):
        if pid == session.proxy_pid:
            registry.request_stop()
        return Liveness.DEAD

    monkeypatch.setattr(watchdog_module, "check_liveness", stop_arrives_at_proxy)

    assert watchdog.tick() is False

    record = registry.read()
    assert set(watchdog.processes) == {Role.SERVICE}
    assert record.service_pid == watchdog.processes[Role.SERVICE].pid
    assert record.proxy_pid == session.proxy_pid


def test_role_without_command_is_not_relaunched(watchdog, registry, session, commands):
    watchdog.commands = lambda: {Role.PROXY: commands[Role.PROXY]}
    kill_and_reap(session.service_pid)

    assert watchdog.tick() is True

    assert watchdog.state is WatchdogState.POLLING
    assert registry.read() == session
    assert watchdog.processes == {}


def test_detached_commands_need_the_password(config):
    config.opencode_bin = "/nonexistent/opencode"
    config.caddy_bin = "/nonexistent/caddy"

    commands = detached_commands(config)
    assert Role.SERVICE not in commands
    assert commands[Role.PROXY].args[0] == "/nonexistent/caddy"

    config.password_file.write_text("s3cret\n")
    commands = detached_commands(config)
    assert commands[Role.SERVICE].env["OPENCODE_SERVER_PASSWORD"] == "s3cret"
    assert commands[Role.SERVICE].args[:2] == ("/nonexistent/opencode", "serve")
