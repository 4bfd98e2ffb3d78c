"""systemd user unit for the daemon."""

import os
import shutil
import sys
from typing import Mapping, Optional

DEFAULT_SERVICE_NAME = "zooming-kittens"


def service_name(env: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if env is None else env
    return env.get("ZOOMING_APPNAME") or DEFAULT_SERVICE_NAME


def exec_start() -> str:
    """Command line systemd should run: the installed entry point if on PATH."""
    executable = shutil.which(DEFAULT_SERVICE_NAME)
    if executable:
        return f"{executable} run"
    return f"{sys.executable} -m zooming_kittens run"


def generate_unit(name: Optional[str] = None, command: Optional[str] = None) -> str:
    name = name or service_name()
    command = command or exec_start()
    return "\n".join([
        "[Unit]",
        f"Description={name} Focus Tracker",
        "After=graphical-session.target",
        "Wants=graphical-session.target",
        "PartOf=graphical-session.target",
        "",
        "[Service]",
        "Type=simple",
        f"ExecStart={command}",
        "Environment=PYTHONUNBUFFERED=1",
        "Restart=always",
        "RestartSec=2",
        "",
        "[Install]",
        "WantedBy=graphical-session.target",
        "",
    ])
