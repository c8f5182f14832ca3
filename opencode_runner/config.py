"""
Configuration for the opencode runner.

Loads settings from environment variables with sensible defaults. Persistent
artifacts live in a project-local ``.opencode-server/`` directory when run
inside a git checkout, otherwise in ``~/.config/``.
"""

import os
import socket
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

PROJECT_DIR_NAME = ".opencode-server"


def _env(name: str, default: str) -> str:
    return os.environ.get(name, default)


def find_git_toplevel(cwd: Path = None) -> Path | None:
    """Return the top-level directory of the enclosing git checkout, if any."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            cwd=cwd,
            timeout=10,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None

    if result.returncode != 0 or not result.stdout.strip():
        return None
    return Path(result.stdout.strip())


@dataclass
class Config:
    """Runner configuration."""

    # Paths
    data_dir: Path = None
    password_file: Path = None
    pid_file: Path = None
    stop_file: Path = None
    lock_file: Path = None
    cert_dir: Path = None
    cert_file: Path = None
    key_file: Path = None
    caddyfile: Path = None
    log_file: Path = None

    # Ports
    port: int = field(default_factory=lambda: int(_env("OPENCODE_PORT", "4096")))
    internal_port: int = field(default_factory=lambda: int(_env("OPENCODE_INTERNAL_PORT", "4097")))

    # Connection info
    username: str = field(default_factory=lambda: _env("OPENCODE_USERNAME", "opencode"))
    service_host: str = field(default_factory=lambda: _env("OPENCODE_SERVICE_HOST", ""))

    # Supervision
    monitor_interval: float = field(default_factory=lambda: float(_env("OPENCODE_MONITOR_INTERVAL", "5")))
    settle_delay: float = field(default_factory=lambda: float(_env("OPENCODE_SETTLE_DELAY", "1")))
    stop_timeout: float = field(default_factory=lambda: float(_env("OPENCODE_STOP_TIMEOUT", "10")))

    # External binaries
    opencode_bin: str = field(default_factory=lambda: _env("OPENCODE_BIN", "opencode"))
    caddy_bin: str = field(default_factory=lambda: _env("CADDY_BIN", "caddy"))
    openssl_bin: str = field(default_factory=lambda: _env("OPENSSL_BIN", "openssl"))

    log_level: str = field(default_factory=lambda: _env("LOG_LEVEL", "INFO"))

    def __post_init__(self):
        """Resolve the data directory and derive artifact paths."""
        if self.data_dir is None:
            self.data_dir = self.resolve_data_dir()
        self.data_dir = Path(self.data_dir)

        self.password_file = self.password_file or self.data_dir / "opencode-server-local"
        self.pid_file = self.pid_file or self.data_dir / "opencode-server.pid"
        self.stop_file = self.stop_file or self.data_dir / "opencode-server.stop"
        self.lock_file = self.lock_file or self.data_dir / "opencode-server.lock"
        self.cert_dir = self.cert_dir or self.data_dir / "opencode-certs"
        self.cert_file = self.cert_file or self.cert_dir / "cert.pem"
        self.key_file = self.key_file or self.cert_dir / "key.pem"
        self.caddyfile = self.caddyfile or self.data_dir / "opencode-caddyfile"
        self.log_file = self.log_file or self.data_dir / "opencode-server.log"

    @staticmethod
    def resolve_data_dir() -> Path:
        """Pick the storage directory: explicit override, git checkout, or ~/.config."""
        override = os.environ.get("OPENCODE_DATA_DIR")
        if override:
            return Path(override).expanduser()

        toplevel = find_git_toplevel()
        if toplevel is not None:
            return toplevel / PROJECT_DIR_NAME

        return Path.home() / ".config"

    def ensure_dirs(self):
        """Create the data and certificate directories."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.cert_dir.mkdir(parents=True, exist_ok=True)

    def get_service_host(self) -> str:
        """Get the address to use in connection info and the certificate."""
        if self.service_host:
            return self.service_host
        # Auto-detect local IP
        try:
            s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            s.connect(("8.8.8.8", 80))
            ip = s.getsockname()[0]
            s.close()
            return ip
        except Exception:
            return "127.0.0.1"

    def child_env(self) -> dict[str, str]:
        """Environment that lets a detached process rebuild this config."""
        return {
            "OPENCODE_DATA_DIR": str(self.data_dir),
            "OPENCODE_PORT": str(self.port),
            "OPENCODE_INTERNAL_PORT": str(self.internal_port),
            "OPENCODE_MONITOR_INTERVAL": str(self.monitor_interval),
            "OPENCODE_BIN": self.opencode_bin,
            "CADDY_BIN": self.caddy_bin,
            "LOG_LEVEL": self.log_level,
        }
