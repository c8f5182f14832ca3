"""
Session lifecycle: start, stop and status.

``start`` is idempotent: if the registry points at a live server and proxy it
only reports them. Otherwise it cleans up whatever a previous session left
behind, provisions the password, certificate and Caddyfile, launches the
server, the proxy and the watchdog, and records their PIDs.

``stop`` writes the stop file before signalling anything, so the watchdog
never relaunches a process that is being shut down on purpose.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from .caddy import probe, remove_caddyfile, write_caddyfile
from .certs import ensure_certificate
from .config import Config
from .credentials import ensure_password
from .install import ensure_authenticated, ensure_dependencies
from .process import Liveness, Role, check_liveness, is_alive, launch, terminate
from .registry import Registry, RegistryRecord, SessionState
from .services import build_commands
from .watchdog import spawn_watchdog

logger = logging.getLogger(__name__)


class StartStatus(Enum):
    STARTED = "started"
    ALREADY_RUNNING = "already_running"


class StopStatus(Enum):
    STOPPED = "stopped"
    NOT_RUNNING = "not_running"


@dataclass
class ConnectionInfo:
    """What a client needs to reach the server."""

    host: str
    port: int
    username: str
    password: str

    @property
    def url(self) -> str:
        return f"https://{self.host}:{self.port}"


@dataclass
class StartResult:
    status: StartStatus
    record: RegistryRecord
    connection: ConnectionInfo


@dataclass
class StopResult:
    status: StopStatus
    stopped_pids: list[int] = field(default_factory=list)


@dataclass
class StatusReport:
    state: SessionState
    record: RegistryRecord | None
    liveness: dict[Role, Liveness] = field(default_factory=dict)
    http_status: int | None = None

    @property
    def running(self) -> bool:
        return self.state is SessionState.ACTIVE and all(
            self.liveness.get(role) is Liveness.ALIVE for role in (Role.SERVICE, Role.PROXY)
        )


class Controller:
    """Starts, stops and inspects a supervised opencode session."""

    def __init__(self, config: Config, registry: Registry = None):
        self.config = config
        self.registry = registry or Registry.from_config(config)

    def connection_info(self, password: str) -> ConnectionInfo:
        return ConnectionInfo(
            host=self.config.get_service_host(),
            port=self.config.port,
            username=self.config.username,
            password=password,
        )

    def running_record(self) -> RegistryRecord | None:
        """The registry record, if both supervised processes are alive."""
        record = self.registry.read()
        if record is None:
            return None
        if is_alive(record.service_pid) and is_alive(record.proxy_pid):
            return record
        return None

    def _clear_stale(self):
        """Drop a leftover record and stop whatever it still points at."""
        # Held throughout, so an old watchdog cannot relaunch behind our back
        with self.registry.lock():
            record = self.registry.read()
            if record is None:
                return
            logger.info(f"Cleaning up stale session {record}")
            self.registry.clear()
            # Watchdog first so it cannot relaunch what we are about to stop
            terminate([record.monitor_pid], timeout=self.config.stop_timeout)
            terminate([record.service_pid, record.proxy_pid], timeout=self.config.stop_timeout)

    def provision(self, skip_auth: bool = False) -> dict[str, str]:
        """Install/resolve external binaries and check authentication."""
        binaries = ensure_dependencies(self.config)
        if skip_auth:
            logger.info("Skipping opencode authentication check")
        else:
            ensure_authenticated(binaries["opencode"])
        return binaries

    def start(self, skip_auth: bool = False) -> StartResult:
        """Start a session, or report the one already running."""
        self.config.ensure_dirs()

        record = self.running_record()
        if record is not None:
            logger.info(f"Server already running (PIDs {record.service_pid}, {record.proxy_pid})")
            password = ensure_password(self.config.password_file)
            return StartResult(StartStatus.ALREADY_RUNNING, record, self.connection_info(password))

        self._clear_stale()
        self.registry.clear_stop()

        binaries = self.provision(skip_auth)
        password = ensure_password(self.config.password_file)
        ensure_certificate(self.config)
        write_caddyfile(self.config)

        commands = build_commands(
            self.config,
            password,
            opencode_bin=binaries.get("opencode"),
            caddy_bin=binaries.get("caddy"),
        )

        launched = []
        try:
            service = launch(commands[Role.SERVICE], self.config.log_file)
            launched.append(service.pid)
            # Give the server a moment to bind before the proxy connects to it
            time.sleep(self.config.settle_delay)
            proxy = launch(commands[Role.PROXY], self.config.log_file)
            launched.append(proxy.pid)

            # The watchdog waits on this lock, so it never sees a missing record
            with self.registry.lock():
                monitor_pid = spawn_watchdog(self.config)
                launched.append(monitor_pid)
                record = RegistryRecord(service.pid, proxy.pid, monitor_pid)
                self.registry.write(record)
        except Exception as e:
            logger.error(f"Start failed, stopping what was launched: {e}")
            # Nothing is recorded yet, so this is the only chance to stop them
            terminate(list(reversed(launched)), timeout=self.config.stop_timeout)
            raise

        logger.info(f"Session started: server {service.pid}, proxy {proxy.pid}, watchdog {monitor_pid}")
        return StartResult(StartStatus.STARTED, record, self.connection_info(password))

    def stop(self) -> StopResult:
        """Stop the session for good. Safe to call when nothing is running."""
        with self.registry.lock():
            self.registry.request_stop()

        record = self.registry.read()
        if record is None:
            logger.info("No running server found")
            return StopResult(StopStatus.NOT_RUNNING)

        stopped = terminate([record.monitor_pid], timeout=self.config.stop_timeout)
        stopped += terminate(
            [record.service_pid, record.proxy_pid],
            timeout=self.config.stop_timeout,
        )

        self.registry.clear()
        remove_caddyfile(self.config)

        logger.info(f"Session stopped (PIDs {', '.join(str(p) for p in stopped) or 'none alive'})")
        return StopResult(StopStatus.STOPPED, stopped)

    def status(self, check_http: bool = True) -> StatusReport:
        """Report the session state, process liveness and HTTPS reachability."""
        state = self.registry.state()
        record = self.registry.read()
        report = StatusReport(state=state, record=record)

        if record is not None:
            report.liveness = {
                Role.SERVICE: check_liveness(record.service_pid),
                Role.PROXY: check_liveness(record.proxy_pid),
                Role.MONITOR: check_liveness(record.monitor_pid),
            }
            if check_http:
                report.http_status = probe(f"https://127.0.0.1:{self.config.port}")

        return report
