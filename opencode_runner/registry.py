"""
Durable session state shared by the controller and the watchdog.

Two files carry the whole protocol:

- the PID file holds ``service_pid proxy_pid monitor_pid`` on one line and
  exists only while a session is active;
- the stop file is a presence-only flag meaning "intentional stop in
  progress", which suppresses every relaunch.

Writes go through a temp file and ``os.replace`` so a reader never sees a
partial record. An advisory ``flock`` on a separate lock file serialises the
watchdog's relaunch section against the controller's stop.
"""

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from .process import Role

logger = logging.getLogger(__name__)


class SessionState(Enum):
    ABSENT = "absent"
    ACTIVE = "active"
    STOP_REQUESTED = "stop_requested"


@dataclass(frozen=True)
class RegistryRecord:
    """The three PIDs of a running session."""

    service_pid: int
    proxy_pid: int
    monitor_pid: int

    def pid_for(self, role: Role) -> int:
        return self.service_pid if role is Role.SERVICE else self.proxy_pid

    def with_pid(self, role: Role, pid: int) -> "RegistryRecord":
        if role is Role.SERVICE:
            return replace(self, service_pid=pid)
        return replace(self, proxy_pid=pid)

    def serialize(self) -> str:
        return f"{self.service_pid} {self.proxy_pid} {self.monitor_pid}\n"

    @classmethod
    def parse(cls, text: str) -> "RegistryRecord":
        parts = text.split()
        if len(parts) != 3:
            raise ValueError(f"expected 3 PIDs, got {len(parts)}")
        service_pid, proxy_pid, monitor_pid = (int(p) for p in parts)
        return cls(service_pid, proxy_pid, monitor_pid)


class Registry:
    """PID file, stop sentinel and lock for one data directory."""

    def __init__(self, pid_file: Path, stop_file: Path, lock_file: Path):
        self.pid_file = Path(pid_file)
        self.stop_file = Path(stop_file)
        self.lock_file = Path(lock_file)

    @classmethod
    def from_config(cls, config) -> "Registry":
        return cls(config.pid_file, config.stop_file, config.lock_file)

    # Registry record

    def exists(self) -> bool:
        return self.pid_file.exists()

    def read(self) -> RegistryRecord | None:
        """Read the current record. A missing or unreadable file yields None."""
        try:
            text = self.pid_file.read_text()
        except FileNotFoundError:
            return None

        try:
            return RegistryRecord.parse(text)
        except ValueError as e:
            logger.warning(f"Ignoring malformed PID file {self.pid_file}: {e}")
            return None

    def write(self, record: RegistryRecord):
        """Atomically replace the record."""
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.pid_file.parent, prefix=f".{self.pid_file.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(record.serialize())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.pid_file)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise
        logger.debug(f"Registry updated: {record}")

    def clear(self) -> bool:
        """Delete the record. Returns True if it existed."""
        try:
            self.pid_file.unlink()
            return True
        except FileNotFoundError:
            return False

    # Stop sentinel

    def stop_requested(self) -> bool:
        return self.stop_file.exists()

    def request_stop(self):
        self.stop_file.parent.mkdir(parents=True, exist_ok=True)
        self.stop_file.touch()

    def clear_stop(self):
        try:
            self.stop_file.unlink()
        except FileNotFoundError:
            pass

    def state(self) -> SessionState:
        """
        Compose the two flags into one session state.

        The stop file outlives a completed stop, so without a record the
        session is simply absent.
        """
        if not self.exists():
            return SessionState.ABSENT
        if self.stop_requested():
            return SessionState.STOP_REQUESTED
        return SessionState.ACTIVE

    @contextmanager
    def lock(self):
        """Hold the exclusive inter-process lock for the duration of the block."""
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_file, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
