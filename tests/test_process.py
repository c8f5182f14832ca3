import os
import signal
import subprocess
import sys

import psutil
import pytest

from opencode_runner.errors import LaunchError
from opencode_runner.process import (
    LaunchCommand,
    Liveness,
    Role,
    check_liveness,
    is_alive,
    launch,
    terminate,
)

from conftest import sleeper, wait_for


def test_launch_returns_live_detached_process(config, pids):
    proc = launch(sleeper(Role.SERVICE), config.log_file)
    pids.append(proc.pid)

    assert proc.role is Role.SERVICE
    assert is_alive(proc.pid)
    # Own session, so it survives the caller's process group going away
    assert os.getsid(proc.pid) == proc.pid


def test_launch_appends_output_and_passes_env(config):
    config.log_file.write_text("earlier line\n")
    command = LaunchCommand(
        role=Role.PROXY,
        args=(sys.executable, "-c", "import os, sys; print(os.environ['RUNNER_TEST']); print('oops', file=sys.stderr)"),
        env={"RUNNER_TEST": "from-env"},
    )

    proc = launch(command, config.log_file)
    proc.process.wait(timeout=10)

    content = config.log_file.read_text()
    assert content.startswith("earlier line\n")
    assert "from-env" in content
    assert "oops" in content


def test_launch_missing_binary_raises(config):
    command = LaunchCommand(role=Role.SERVICE, args=("/nonexistent/opencode", "serve"))

    with pytest.raises(LaunchError):
        launch(command, config.log_file)


def test_liveness_of_missing_pid():
    assert check_liveness(None) is Liveness.DEAD
    assert check_liveness(0) is Liveness.DEAD

    finished = subprocess.Popen([sys.executable, "-c", "pass"])
    finished.wait()
    assert check_liveness(finished.pid) is Liveness.DEAD


def test_zombie_is_reaped_and_reported_dead():
    child = subprocess.Popen([sys.executable, "-c", "pass"])

    assert wait_for(lambda: psutil.Process(child.pid).status() == psutil.STATUS_ZOMBIE)

    assert check_liveness(child.pid) is Liveness.ZOMBIE_REAPED
    assert not psutil.pid_exists(child.pid)
    assert not is_alive(child.pid)


def test_terminate_stops_processes(config):
    service = launch(sleeper(Role.SERVICE), config.log_file)
    proxy = launch(sleeper(Role.PROXY), config.log_file)

    stopped = terminate([service.pid, proxy.pid], timeout=5)

    assert sorted(stopped) == sorted([service.pid, proxy.pid])
    assert not is_alive(service.pid)
    assert not is_alive(proxy.pid)


def test_terminate_escalates_to_sigkill(config, pids):
    command = LaunchCommand(
        role=Role.SERVICE,
        args=(
            sys.executable,
            "-c",
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "print('ready', flush=True); time.sleep(60)",
        ),
    )
    proc = launch(command, config.log_file)
    pids.append(proc.pid)
    assert wait_for(lambda: "ready" in config.log_file.read_text())

    stopped = terminate([proc.pid], timeout=0.5)

    assert stopped == [proc.pid]
    assert not is_alive(proc.pid)


def test_terminate_ignores_missing_processes(config):
    proc = launch(sleeper(Role.SERVICE), config.log_file)
    os.kill(proc.pid, signal.SIGKILL)
    proc.process.wait(timeout=10)

    assert terminate([proc.pid, 0], timeout=1) == []
