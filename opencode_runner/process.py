"""
Process launching, liveness checks and termination.

Supervised processes are started detached in their own session with output
appended to the shared log file. Liveness is judged by PID only, because the
process that launched a service is not necessarily the one checking on it.
A process left in the zombie state is reaped and reported as dead.
"""

import logging
import os
import signal
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

import psutil

from .errors import LaunchError

logger = logging.getLogger(__name__)


class Role(Enum):
    SERVICE = "service"
    PROXY = "proxy"
    MONITOR = "monitor"


class Liveness(Enum):
    ALIVE = "alive"
    DEAD = "dead"
    ZOMBIE_REAPED = "zombie_reaped"


@dataclass(frozen=True)
class LaunchCommand:
    """How to (re)start one supervised process."""

    role: Role
    args: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)
    cwd: str = None


@dataclass
class SupervisedProcess:
    """A launched process under watch."""

    role: Role
    pid: int
    command: LaunchCommand
    log_path: Path
    process: subprocess.Popen = None
    started_at: datetime = field(default_factory=datetime.now)


def launch(command: LaunchCommand, log_path: Path) -> SupervisedProcess:
    """
    Start a command in the background and return immediately.

    The child gets its own session so it outlives the caller, and its
    stdout/stderr are appended to ``log_path``. Only failure to start the
    process raises; what the process does afterwards is not checked.
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    env = os.environ.copy()
    env.update(command.env)

    try:
        with open(log_path, "ab") as log:
            process = subprocess.Popen(
                list(command.args),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                cwd=command.cwd,
                env=env,
                start_new_session=True,  # Detach from the caller's process group
            )
    except OSError as e:
        raise LaunchError(f"Failed to start {command.role.value}: {e}") from e

    logger.info(f"Started {command.role.value} with PID {process.pid}")
    return SupervisedProcess(
        role=command.role,
        pid=process.pid,
        command=command,
        log_path=log_path,
        process=process,
    )


def _reap(pid: int):
    """Collect the exit status of a zombie child, if it is ours."""
    try:
        os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        # Not our child; its parent (or init) reaps it
        pass


def check_liveness(pid: int | None) -> Liveness:
    """Classify a PID as alive, dead, or a zombie that has just been reaped."""
    if not pid or pid <= 0:
        return Liveness.DEAD

    try:
        status = psutil.Process(pid).status()
    except psutil.NoSuchProcess:
        return Liveness.DEAD
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return Liveness.ALIVE

    if status in (psutil.STATUS_ZOMBIE, psutil.STATUS_DEAD):
        _reap(pid)
        logger.debug(f"PID {pid} was a zombie, reaped")
        return Liveness.ZOMBIE_REAPED

    return Liveness.ALIVE


def is_alive(pid: int | None) -> bool:
    """Check whether a PID belongs to a running, non-zombie process."""
    return check_liveness(pid) is Liveness.ALIVE


def _signal(pid: int, sig: int) -> bool:
    """Signal a process group (or the bare process if it shares ours)."""
    try:
        pgid = os.getpgid(pid)
        if pgid == pid and pgid != os.getpgid(0):
            os.killpg(pgid, sig)
        else:
            os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError as e:
        logger.warning(f"Not permitted to signal PID {pid}: {e}")
        return False


def terminate(pids: list[int], timeout: float = 10) -> list[int]:
    """
    Stop processes: SIGTERM first, SIGKILL for anything still alive after
    ``timeout`` seconds. Missing processes are skipped silently.

    Returns the PIDs that were running and have been stopped.
    """
    procs = []
    for pid in pids:
        if not is_alive(pid):
            continue
        try:
            proc = psutil.Process(pid)
        except psutil.NoSuchProcess:
            continue
        if _signal(pid, signal.SIGTERM):
            procs.append(proc)

    if not procs:
        return []

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    alive = [p for p in alive if is_alive(p.pid)]

    for proc in alive:
        logger.warning(f"PID {proc.pid} did not stop gracefully, forcing kill")
        _signal(proc.pid, signal.SIGKILL)

    if alive:
        psutil.wait_procs(alive, timeout=5)
        for proc in alive:
            # Collect the exit status if it is our child
            check_liveness(proc.pid)

    return [p.pid for p in procs]
