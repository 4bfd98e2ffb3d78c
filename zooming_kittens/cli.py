"""Command line interface for zooming-kittens.

zooming-kittens [-v...] [--config PATH] <command>

Commands:
    run         Run the focus zoom daemon (default)
    listen      Print focus changes of the tracked app as JSON lines
    fonts       Adjust kitty font size by hand (inc, dec, set, list)
    conf-size   Print font_size from kitty.conf
    systemd     Print a systemd user unit for the daemon
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .auth import get_kitty_password
from .conf_parser import parse_font_size
from .config import Settings, ZoomMode, load_settings
from .control import ControlCommand, KittyControlClient, find_kitty_instances, kitty_socket_path
from .daemon import run as run_daemon
from .daemon import setup_logging
from .errors import ConfigError, ControlConnectionError, IpcConnectionError, ProtocolError
from .event_stream import EventStream
from .models import BlurEvent, FocusEvent
from .service import generate_unit
from .transports import create_transport

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


def print_error(message: str) -> None:
    err_console.print(f"[red]✗[/red] {escape(message)}", highlight=False, soft_wrap=True)


def log_level(verbosity: int) -> Optional[str]:
    """-v count to a log level; None leaves it to $LOG_LEVEL."""
    if verbosity <= 0:
        return None
    if verbosity == 1:
        return "INFO"
    return "DEBUG"


def _settings_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        "app_id": getattr(args, "app_id", None),
        "backend": getattr(args, "backend", None),
        "socket_path": getattr(args, "ipc_socket", None),
        "socket_timeout_secs": getattr(args, "socket_timeout", None),
        "max_retries": getattr(args, "max_retries", None),
        "max_connections": getattr(args, "max_connections", None),
        "idle_timeout_secs": getattr(args, "idle_timeout", None),
        "reap_interval_secs": getattr(args, "reap_interval", None),
        "zoom": {
            "step": getattr(args, "step", None),
            "mode": getattr(args, "mode", None),
            "target": getattr(args, "target", None),
        },
    }
    if args.verbose:
        overrides["verbose"] = True
    return overrides


def _load(args: argparse.Namespace) -> Settings:
    return load_settings(path=args.config, overrides=_settings_overrides(args))


# ============================================================================
# run / listen
# ============================================================================


def cmd_run(args: argparse.Namespace) -> int:
    settings = _load(args)
    return run_daemon(settings)


async def _listen(settings: Settings) -> int:
    socket_path = str(settings.socket_path) if settings.socket_path else None
    stream = EventStream(create_transport(settings.backend, socket_path), subscriber_buffer=settings.subscriber_buffer)
    await stream.connect()
    subscription = stream.subscribe(name="listen")
    reader = asyncio.create_task(stream.run())

    try:
        async for event in subscription:
            if not isinstance(event, (FocusEvent, BlurEvent)) or event.window.app_id != settings.app_id:
                continue
            if isinstance(event, FocusEvent):
                record = {"event": "focus_gained", "window_id": event.window_id, "app_id": event.window.app_id}
            else:
                record = {"event": "focus_lost"}
            print(json.dumps(record), flush=True)
    finally:
        await stream.close()
        termination = await reader

    return 1 if termination.is_error else 0


def cmd_listen(args: argparse.Namespace) -> int:
    settings = _load(args)
    try:
        return asyncio.run(_listen(settings))
    except IpcConnectionError as e:
        print_error(str(e))
        return 1
    except KeyboardInterrupt:
        return 0


# ============================================================================
# fonts
# ============================================================================


def _font_targets(args: argparse.Namespace) -> List[Tuple[Optional[int], Path]]:
    """(pid, socket) pairs a fonts command applies to.

    Raises:
        ControlConnectionError: If no unambiguous kitty instance was found
    """
    if args.socket:
        return [(args.pid, Path(args.socket))]

    if args.pid is not None:
        socket_path = kitty_socket_path(args.pid)
        if socket_path is None:
            raise ControlConnectionError(f"No control socket for kitty PID {args.pid}", pid=args.pid)
        return [(args.pid, socket_path)]

    instances = find_kitty_instances()
    if not instances:
        raise ControlConnectionError("No kitty instances found")
    if getattr(args, "all", False):
        return instances
    if len(instances) > 1:
        raise ControlConnectionError("Multiple kitty instances found. Please specify --pid")
    return instances


async def _send_font_commands(
    targets, commands: List[ControlCommand], timeout: float, password: Optional[str] = None
) -> None:
    for pid, socket_path in targets:
        client = await KittyControlClient(socket_path, timeout=timeout, pid=pid, password=password).connect()
        try:
            for command in commands:
                await client.request(command)
        finally:
            await client.close()


def _print_instances() -> int:
    instances = find_kitty_instances()
    if not instances:
        console.print("No kitty instances found")
        return 0

    table = Table(title="Kitty instances", show_header=True, header_style="bold")
    table.add_column("PID", justify="right", style="cyan")
    table.add_column("Socket")
    for pid, socket_path in instances:
        table.add_row(str(pid), str(socket_path))
    console.print(table)
    return 0


def cmd_fonts(args: argparse.Namespace) -> int:
    if args.fonts_command == "list":
        return _print_instances()

    if args.fonts_command == "inc":
        commands = [ControlCommand.increase(args.step)] * args.count
        done = f"Font size increased {args.count} time(s)"
    elif args.fonts_command == "dec":
        commands = [ControlCommand.decrease(args.step)] * args.count
        done = f"Font size decreased {args.count} time(s)"
    else:
        commands = [ControlCommand.set_font_size(args.size)]
        done = f"Font size set to {args.size:g}"

    try:
        targets = _font_targets(args)
        password = args.password or get_kitty_password()
        asyncio.run(_send_font_commands(targets, commands, args.timeout, password=password))
    except (ControlConnectionError, ProtocolError) as e:
        print_error(str(e))
        return 1

    console.print(done)
    return 0


# ============================================================================
# conf-size / systemd
# ============================================================================


def cmd_conf_size(args: argparse.Namespace) -> int:
    try:
        size = parse_font_size(args.config_path)
    except ConfigError as e:
        print_error(f"Error: {e}")
        return 1
    print(f"{size:g}")
    return 0


def cmd_systemd(args: argparse.Namespace) -> int:
    sys.stdout.write(generate_unit())
    return 0


# ============================================================================
# Parser
# ============================================================================


def _add_target_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--pid", "-p", type=int, help="kitty PID (auto-detected when only one instance runs)")
    parser.add_argument("--socket", "-s", help="Control socket path (default: derived from --pid)")
    parser.add_argument("--timeout", type=float, default=5.0, help="Socket timeout in seconds (default: 5)")
    parser.add_argument("--password", help="Remote control password (default: kitty/rc.password)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zooming-kittens",
        description="Zoom kitty in when it gains focus and back out when it loses it",
    )
    parser.add_argument("--version", action="version", version=f"zooming-kittens {__version__}")
    parser.add_argument(
        "--verbose", "-v",
        action="count",
        default=0,
        help="Increase logging (-v: INFO, -vv: DEBUG)",
    )
    parser.add_argument("--config", type=Path, help="Config file (default: $XDG_CONFIG_HOME/zooming-kittens/config.toml)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # zooming-kittens run
    parser_run = subparsers.add_parser("run", help="Run the focus zoom daemon (default)")
    parser_run.add_argument("--app-id", help="App id to track (default: kitty)")
    parser_run.add_argument("--backend", choices=["auto", "niri", "sway", "jsonl"], help="Compositor backend")
    parser_run.add_argument("--ipc-socket", help="Compositor IPC socket (default: from the environment)")
    parser_run.add_argument("--socket-timeout", type=float, help="Control socket timeout in seconds")
    parser_run.add_argument("--max-retries", type=int, help="Connect attempts per kitty instance")
    parser_run.add_argument("--max-connections", type=int, help="Maximum pooled control connections")
    parser_run.add_argument("--idle-timeout", type=float, help="Seconds before an unused connection is reaped")
    parser_run.add_argument("--reap-interval", type=float, help="Seconds between reaper passes")
    parser_run.add_argument("--step", type=float, help="Font step for additive zoom")
    parser_run.add_argument("--mode", choices=[mode.value for mode in ZoomMode], help="Zoom mode")
    parser_run.add_argument("--target", type=float, help="Font size for absolute zoom")

    # zooming-kittens listen
    parser_listen = subparsers.add_parser("listen", help="Print focus changes as JSON lines")
    parser_listen.add_argument("--app-id", help="App id to track (default: kitty)")
    parser_listen.add_argument("--backend", choices=["auto", "niri", "sway", "jsonl"], help="Compositor backend")
    parser_listen.add_argument("--ipc-socket", help="Compositor IPC socket (default: from the environment)")

    # zooming-kittens fonts ...
    parser_fonts = subparsers.add_parser("fonts", help="Adjust kitty font size")
    fonts_sub = parser_fonts.add_subparsers(dest="fonts_command", required=True)

    parser_inc = fonts_sub.add_parser("inc", help="Increase font size")
    _add_target_options(parser_inc)
    parser_inc.add_argument("--count", "-c", type=int, default=1, help="Number of increments (default: 1)")
    parser_inc.add_argument("--step", type=float, default=1.0, help="Points per increment (default: 1)")

    parser_dec = fonts_sub.add_parser("dec", help="Decrease font size")
    _add_target_options(parser_dec)
    parser_dec.add_argument("--count", "-c", type=int, default=1, help="Number of decrements (default: 1)")
    parser_dec.add_argument("--step", type=float, default=1.0, help="Points per decrement (default: 1)")

    parser_set = fonts_sub.add_parser("set", help="Set absolute font size")
    _add_target_options(parser_set)
    parser_set.add_argument("size", type=float, help="Font size in points (0 resets to kitty.conf)")
    parser_set.add_argument("--all", "-a", action="store_true", help="Apply to all kitty instances")

    fonts_sub.add_parser("list", help="Show running kitty instances")

    # zooming-kittens conf-size
    parser_conf = subparsers.add_parser("conf-size", help="Print font_size from kitty.conf")
    parser_conf.add_argument("--config-path", "-c", type=Path, help="Path to kitty.conf")

    # zooming-kittens systemd
    subparsers.add_parser("systemd", help="Print a systemd user unit")

    return parser


COMMANDS = {
    None: cmd_run,
    "run": cmd_run,
    "listen": cmd_listen,
    "fonts": cmd_fonts,
    "conf-size": cmd_conf_size,
    "systemd": cmd_systemd,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(log_level(args.verbose))

    try:
        return COMMANDS[args.command](args)
    except ConfigError as e:
        print_error(f"Configuration error: {e}")
        return 2
