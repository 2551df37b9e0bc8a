"""
Buckle CLI.

Usage:
    buckle up                          # Start the server and supervise it (foreground)
    buckle up -p 8080 -c ./buckle.yml  # Custom port and server config
    buckle up --open                   # Open the browser once the server is healthy
    buckle up --detach                 # Start in the background and return
    buckle down                        # Stop a running server
    buckle status                      # Show whether a server is running
    buckle --version                   # Print the installed version
"""

import argparse
import asyncio
import logging
import signal
import sys
import webbrowser
from pathlib import Path
from typing import Awaitable, Optional

import httpx

from buckle import __version__
from buckle.config import Settings, build_launch_config, load_settings
from buckle.core.health import HealthWaiter
from buckle.core.liveness import process_alive
from buckle.core.state import StateStore
from buckle.core.supervisor import Supervisor, stop_recorded_server
from buckle.errors import AlreadyRunningError, BuckleError, StateError
from buckle.exit_codes import ExitCode
from buckle.lib.logger import setup_logging

logger = logging.getLogger(__name__)


# --- Helpers ---


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that exits with INCORRECT_CLI_ARGUMENTS on bad input."""

    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(ExitCode.INCORRECT_CLI_ARGUMENTS, f"{self.prog}: error: {message}\n")


def _open_browser(url: str) -> None:
    """Open `url` in the user's browser. Failure is not fatal."""
    try:
        if not webbrowser.open(url):
            logger.warning(f"No browser available to open {url}")
    except webbrowser.Error as e:
        logger.warning(f"Could not open browser: {e}")


def _load(args: argparse.Namespace) -> Settings:
    config = getattr(args, "config", None)
    settings = load_settings(Path(config) if config else None)
    setup_logging(settings.log_level, settings.log_format)
    return settings


def _run_interruptible(coro: Awaitable[ExitCode]) -> ExitCode:
    """
    Run `coro` on a fresh event loop.

    SIGINT and SIGTERM cancel it, so scoped cleanup inside still runs.
    """
    received: list[int] = []

    async def _main() -> ExitCode:
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()

        def _on_signal(signum: int) -> None:
            logger.info(f"Received signal {signal.Signals(signum).name}, shutting down")
            received.append(signum)
            task.cancel()

        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _on_signal, sig)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # No signal handlers outside the main thread or on Windows
                pass

        try:
            return await coro
        except asyncio.CancelledError:
            if received:
                return ExitCode.INTERRUPTED
            raise
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    try:
        return asyncio.run(_main())
    except KeyboardInterrupt:
        return ExitCode.INTERRUPTED


# --- up ---


async def _up(supervisor: Supervisor) -> ExitCode:
    config = supervisor.config

    async with supervisor.session():
        outcome = await supervisor.start()

        if outcome.healthy:
            print(f"Buckle is running at {outcome.url} (process: {outcome.pid})")
        else:
            print(
                f"Warning: server (process: {outcome.pid}) did not become healthy at "
                f"{config.health_url} in time. It is still running.",
                file=sys.stderr,
            )

        if config.detach:
            print(f"Running detached. Logs: {supervisor.store.log_file}")
            print("Run 'buckle down' to stop it.")
            return ExitCode.SUCCESS

        code = await supervisor.wait()

    # Negative codes mean the server was stopped by a signal (e.g. `buckle down`)
    if code <= 0:
        print("Server stopped.")
        return ExitCode.SUCCESS
    print(f"Server exited with code {code}", file=sys.stderr)
    return ExitCode.FAILED_TO_START_SERVER


def cmd_up(args: argparse.Namespace) -> ExitCode:
    """Start the server and supervise it."""
    settings = _load(args)
    config = build_launch_config(
        settings,
        port=args.port,
        open_browser=args.open,
        detach=args.detach,
    )
    store = StateStore(settings.state_dir)
    waiter = HealthWaiter(
        request_timeout=settings.health_request_timeout,
        overall_timeout=settings.health_timeout,
        interval=settings.health_interval,
    )
    supervisor = Supervisor(
        config,
        store,
        waiter,
        stop_timeout=settings.stop_timeout,
        on_ready=_open_browser,
    )

    code = _run_interruptible(_up(supervisor))
    if code == ExitCode.INTERRUPTED:
        print("\nInterrupted. Server stopped.", file=sys.stderr)
    return code


# --- down ---


def cmd_down(args: argparse.Namespace) -> ExitCode:
    """Stop the recorded server."""
    settings = _load(args)
    store = StateStore(settings.state_dir)

    pid = stop_recorded_server(store, timeout=settings.stop_timeout)
    if pid is None:
        print("Buckle is not running.")
    else:
        print(f"Buckle stopped (process: {pid})")
    return ExitCode.SUCCESS


# --- status ---


def cmd_status(args: argparse.Namespace) -> ExitCode:
    """Show whether a recorded server is running and healthy."""
    settings = _load(args)
    store = StateStore(settings.state_dir)

    try:
        record = store.read_record()
    except StateError as e:
        print(f"Buckle: unknown ({e})")
        return ExitCode.SUCCESS

    if record is None or not process_alive(record.pid):
        print("Buckle: not running")
        return ExitCode.SUCCESS

    # Probe the port the server was started on unless one is given explicitly
    port = args.port if args.port is not None else record.port
    config = build_launch_config(settings, port=port)
    try:
        response = httpx.get(
            config.health_url,
            timeout=settings.health_request_timeout,
            trust_env=False,
        )
        health = "ok" if response.is_success else f"HTTP {response.status_code}"
    except httpx.HTTPError:
        health = "not responding"

    print(f"Buckle: running (process: {record.pid}, port {config.port})")
    if record.started_at:
        print(f"  Started: {record.started_at.astimezone().isoformat(timespec='seconds')}")
    print(f"  Health: {health}")
    return ExitCode.SUCCESS


# --- CLI entry point ---


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="buckle",
        description="Buckle: start and supervise the Buckle server",
    )
    parser.add_argument(
        "-v", "--version", action="version",
        version=f"Buckle version: {__version__}",
    )
    subparsers = parser.add_subparsers(dest="command", parser_class=_Parser)

    def add_config(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "-c", "--config", default=None,
            help="Path to config file (default: ./buckle.yml)",
        )
        p.add_argument(
            "-p", "--port", type=int, default=None,
            help="Port to run on (default: 7260)",
        )

    up_parser = subparsers.add_parser("up", help="Start the Buckle server")
    add_config(up_parser)
    up_parser.add_argument(
        "-d", "--detach", action="store_true",
        help="Run in detached mode",
    )
    up_parser.add_argument(
        "-o", "--open", action="store_true",
        help="Open browser automatically",
    )

    down_parser = subparsers.add_parser("down", help="Stop the Buckle server")
    add_config(down_parser)

    status_parser = subparsers.add_parser("status", help="Show server status")
    add_config(status_parser)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "up": cmd_up,
        "down": cmd_down,
        "status": cmd_status,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(ExitCode.INCORRECT_CLI_ARGUMENTS)

    try:
        code = command(args)
    except AlreadyRunningError as e:
        print(str(e), file=sys.stderr)
        print("Run 'buckle down' to stop it first.", file=sys.stderr)
        code = e.exit_code
    except BuckleError as e:
        print(f"Error: {e}", file=sys.stderr)
        code = e.exit_code

    sys.exit(int(code))


if __name__ == "__main__":
    main()
