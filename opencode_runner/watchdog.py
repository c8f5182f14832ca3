"""
Watchdog for the opencode server and its proxy.

Runs as a detached process for the lifetime of a session. Every interval it
checks both supervised PIDs from the registry and relaunches whichever has
died, each independently. It stops for good when the stop file appears or
the PID file disappears, and for no other reason: launch failures and
unexpected errors are logged and retried on the next tick.
"""

import logging
import signal
import sys
import time
from enum import Enum
from pathlib import Path
from typing import Callable

from .config import Config
from .credentials import read_password
from .errors import LaunchError
from .install import find_binary
from .process import LaunchCommand, Liveness, Role, SupervisedProcess, check_liveness, launch
from .registry import Registry
from .services import build_commands

logger = logging.getLogger(__name__)

SUPERVISED_ROLES = (Role.SERVICE, Role.PROXY)


class WatchdogState(Enum):
    POLLING = "polling"
    CHECKING = "checking"
    RELAUNCHING = "relaunching"
    STOPPED = "stopped"


class Watchdog:
    """Polls supervised processes and relaunches the ones that died."""

    def __init__(
        self,
        registry: Registry,
        commands: dict[Role, LaunchCommand] | Callable[[], dict[Role, LaunchCommand]],
        log_path: Path,
        interval: float = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.commands = commands
        self.log_path = Path(log_path)
        self.interval = interval
        self._sleep = sleep
        self.state = WatchdogState.POLLING
        self.processes: dict[Role, SupervisedProcess] = {}

    def _stop(self, reason: str) -> bool:
        logger.info(f"Watchdog stopping: {reason}")
        self.state = WatchdogState.STOPPED
        return False

    def _commands(self) -> dict[Role, LaunchCommand]:
        if callable(self.commands):
            return self.commands()
        return self.commands

    def tick(self) -> bool:
        """
        Run one check-and-relaunch pass.

        Returns False once the watchdog has reached the stopped state.
        """
        if self.state is WatchdogState.STOPPED:
            return False

        with self.registry.lock():
            if self.registry.stop_requested():
                return self._stop("stop requested")

            record = self.registry.read()
            if record is None:
                return self._stop("PID file removed")

            self.state = WatchdogState.CHECKING
            updated = record
            commands = None

            for role in SUPERVISED_ROLES:
                pid = record.pid_for(role)
                liveness = check_liveness(pid)
                if liveness is Liveness.ALIVE:
                    continue

                if liveness is Liveness.ZOMBIE_REAPED:
                    logger.warning(f"{role.value} (PID {pid}) exited and was reaped")
                else:
                    logger.warning(f"{role.value} (PID {pid}) is not running")

                # The stop may have been requested after the check above
                if self.registry.stop_requested():
                    # Keep anything relaunched this tick visible to stop()
                    if updated != record:
                        self.registry.write(updated)
                    return self._stop("stop requested")

                if commands is None:
                    commands = self._commands()
                command = commands.get(role)
                if command is None:
                    logger.error(f"No launch command for {role.value}, not relaunching")
                    continue

                self.state = WatchdogState.RELAUNCHING
                try:
                    proc = launch(command, self.log_path)
                except LaunchError as e:
                    logger.error(f"Relaunch of {role.value} failed, will retry: {e}")
                    continue

                self.processes[role] = proc
                updated = updated.with_pid(role, proc.pid)
                logger.info(f"Relaunched {role.value} as PID {proc.pid}")

            if updated != record:
                self.registry.write(updated)

        self.state = WatchdogState.POLLING
        return True

    def run(self):
        """Poll until the stop file appears or the PID file is removed."""
        logger.info(f"Watchdog started, checking every {self.interval}s")
        while self.state is not WatchdogState.STOPPED:
            self._sleep(self.interval)
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Error in watchdog tick: {e}")
                self.state = WatchdogState.POLLING


def monitor_command(config: Config) -> LaunchCommand:
    """Command that runs the watchdog as its own detached process."""
    return LaunchCommand(
        role=Role.MONITOR,
        args=(sys.executable, "-m", "opencode_runner", "--watchdog"),
        env=config.child_env(),
    )


def spawn_watchdog(config: Config) -> int:
    """Start the detached watchdog process and return its PID."""
    proc = launch(monitor_command(config), config.log_file)
    return proc.pid


def _handle_sigterm(signum, frame):
    logger.info("Watchdog received SIGTERM, exiting")
    sys.exit(0)


def detached_commands(config: Config) -> dict[Role, LaunchCommand]:
    """
    Launch commands for the detached watchdog, rebuilt on every relaunch.

    Without a stored password the server is not relaunched: it would come up
    behind the public proxy with no password at all.
    """
    password = read_password(config.password_file)
    commands = build_commands(
        config,
        password or "",
        opencode_bin=find_binary(config.opencode_bin) or config.opencode_bin,
        caddy_bin=find_binary(config.caddy_bin) or config.caddy_bin,
    )
    if not password:
        logger.error(f"Password file {config.password_file} is missing, refusing to relaunch the server")
        del commands[Role.SERVICE]
    return commands


def run_detached(config: Config):
    """Entry point of the detached watchdog process."""
    signal.signal(signal.SIGTERM, _handle_sigterm)

    watchdog = Watchdog(
        registry=Registry.from_config(config),
        commands=lambda: detached_commands(config),
        log_path=config.log_file,
        interval=config.monitor_interval,
    )
    watchdog.run()
