"""CLI entry point for opencode-runner."""

import argparse
import logging
import sys

from .config import Config
from .controller import Controller, StartStatus, StopStatus
from .errors import RunnerError
from .presentation import format_connection_info, format_status
from .watchdog import run_detached

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opencode-runner",
        description="Run an opencode server behind a self-signed HTTPS proxy, kept alive by a watchdog",
    )
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--stop", action="store_true", help="Stop the running server permanently")
    action.add_argument("--status", action="store_true", help="Show session and process status")
    action.add_argument("--watchdog", action="store_true", help=argparse.SUPPRESS)
    parser.add_argument("--skip-auth", action="store_true", help="Skip the opencode provider login check")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level (default: $LOG_LEVEL or INFO)")
    return parser


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def main(argv: list[str] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = Config()
    if args.log_level:
        config.log_level = args.log_level
    setup_logging(config.log_level)

    if args.watchdog:
        run_detached(config)
        return 0

    controller = Controller(config)

    if args.stop:
        result = controller.stop()
        if result.status is StopStatus.NOT_RUNNING:
            print("No running server found")
        else:
            print("Server stopped")
        return 0

    if args.status:
        print(format_status(controller.status()))
        return 0

    try:
        result = controller.start(skip_auth=args.skip_auth)
    except RunnerError as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    record = result.record
    if result.status is StartStatus.ALREADY_RUNNING:
        print(f"Server already running (opencode PID: {record.service_pid}, Caddy PID: {record.proxy_pid})")
    print()
    print(format_connection_info(result.connection))
    print()
    if result.status is StartStatus.STARTED:
        print(f"Caddy HTTPS proxy started (PID: {record.proxy_pid})")
        print(f"OpenCode server started (PID: {record.service_pid})")
        print(f"Watchdog started (PID: {record.monitor_pid})")
        print(f"Logs: {config.log_file}")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI bootstrap
    sys.exit(main())
