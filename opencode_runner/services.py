"""Launch commands for the opencode server and its Caddy proxy."""

from .caddy import LOOPBACK
from .config import Config
from .process import LaunchCommand, Role


def service_command(config: Config, password: str, opencode_bin: str = None) -> LaunchCommand:
    """opencode bound to loopback only; the proxy is the public face."""
    return LaunchCommand(
        role=Role.SERVICE,
        args=(
            opencode_bin or config.opencode_bin,
            "serve",
            "--hostname", LOOPBACK,
            "--port", str(config.internal_port),
        ),
        env={"OPENCODE_SERVER_PASSWORD": password},
    )


def proxy_command(config: Config, caddy_bin: str = None) -> LaunchCommand:
    return LaunchCommand(
        role=Role.PROXY,
        args=(
            caddy_bin or config.caddy_bin,
            "run",
            "--config", str(config.caddyfile),
            "--adapter", "caddyfile",
        ),
    )


def build_commands(
    config: Config,
    password: str,
    opencode_bin: str = None,
    caddy_bin: str = None,
) -> dict[Role, LaunchCommand]:
    """Launch commands for both supervised roles."""
    return {
        Role.SERVICE: service_command(config, password, opencode_bin),
        Role.PROXY: proxy_command(config, caddy_bin),
    }
