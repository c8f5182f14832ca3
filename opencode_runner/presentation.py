"""Human-readable output for the CLI."""

from .controller import ConnectionInfo, StatusReport
from .process import Liveness, Role


def format_connection_info(info: ConnectionInfo) -> str:
    """Connection details, one labelled block per value."""
    lines = [
        "IP Address:",
        info.host,
        "",
        "HTTPS Port:",
        str(info.port),
        "",
        "Username:",
        info.username,
        "",
        "Password:",
        info.password,
        "",
        f"Connect via: {info.url}",
    ]
    return "\n".join(lines)


def format_status(report: StatusReport) -> str:
    lines = [f"Session: {report.state.value}"]

    if report.record is None:
        lines.append("No PID file")
        return "\n".join(lines)

    pids = {
        Role.SERVICE: report.record.service_pid,
        Role.PROXY: report.record.proxy_pid,
        Role.MONITOR: report.record.monitor_pid,
    }
    for role, pid in pids.items():
        liveness = report.liveness.get(role, Liveness.DEAD)
        lines.append(f"{role.value:<8} PID {pid:<8} {liveness.value}")

    if report.http_status is None:
        lines.append("HTTPS: no response")
    elif report.http_status == 401:
        lines.append("HTTPS: up (401, authentication required)")
    else:
        lines.append(f"HTTPS: {report.http_status}")

    return "\n".join(lines)
