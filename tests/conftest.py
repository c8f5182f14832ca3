import sys
import time
from pathlib import Path

import pytest

from opencode_runner.config import Config
from opencode_runner.process import LaunchCommand, Role, terminate
from opencode_runner.registry import Registry

ENV_VARS = [
    "OPENCODE_PORT",
    "OPENCODE_INTERNAL_PORT",
    "OPENCODE_MONITOR_INTERVAL",
    "OPENCODE_SETTLE_DELAY",
    "OPENCODE_STOP_TIMEOUT",
    "OPENCODE_DATA_DIR",
    "OPENCODE_SERVICE_HOST",
    "OPENCODE_USERNAME",
    "OPENCODE_BIN",
    "CADDY_BIN",
    "OPENSSL_BIN",
]


def sleeper(role: Role, seconds: int = 60) -> LaunchCommand:
    """A stand-in for opencode/caddy that just stays alive."""
    return LaunchCommand(
        role=role,
        args=(sys.executable, "-c", f"import time; time.sleep({seconds})"),
    )


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(autouse=True)
def _clear_runner_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def config(tmp_path: Path) -> Config:
    cfg = Config(
        data_dir=tmp_path / "data",
        service_host="192.0.2.10",
        monitor_interval=0.05,
        settle_delay=0,
        stop_timeout=2,
    )
    cfg.ensure_dirs()
    return cfg


@pytest.fixture()
def registry(config: Config) -> Registry:
    return Registry.from_config(config)


@pytest.fixture()
def pids():
    """PIDs to clean up after a test, whatever state it ends in."""
    tracked: list[int] = []
    yield tracked
    terminate(tracked, timeout=2)
