"""kitty remote-control client.

Wire format (one request in flight per connection):

    ESC P @kitty-cmd {"cmd": ..., "version": [...], "no_response": false, "payload": {...}} ESC \\

The reply uses the same framing with {"ok": bool, "data": ..., "error": ...}.

With a remote control password (kitty/rc.password) the command is wrapped in
the encrypted envelope described in auth.py before framing.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psutil
from pydantic import BaseModel, Field

from .auth import CommandEncryptor, build_encryptor
from .errors import AuthenticationError, ControlConnectionError, ErrorCode, ProtocolError

logger = logging.getLogger(__name__)

DCS_PREFIX = b"\x1bP@kitty-cmd"
DCS_SUFFIX = b"\x1b\\"
PROTOCOL_VERSION = [0, 26, 0]

INCREMENT_OPS = ("", "+", "-", "*", "/")

# Substrings of kitty's refusal when the password is missing or wrong
AUTH_ERROR_MARKERS = ("password", "auth")


class ControlCommand(BaseModel):
    """One kitty remote-control command."""

    cmd: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    no_response: bool = False

    @classmethod
    def set_font_size(cls, size: float, increment_op: str = "") -> "ControlCommand":
        if increment_op not in INCREMENT_OPS:
            raise ValueError(f"Invalid increment op: {increment_op!r}")
        return cls(cmd="set-font-size", payload={"size": size, "increment_op": increment_op})

    @classmethod
    def increase(cls, step: float = 1.0) -> "ControlCommand":
        return cls.set_font_size(step, "+")

    @classmethod
    def decrease(cls, step: float = 1.0) -> "ControlCommand":
        return cls.set_font_size(step, "-")

    @classmethod
    def scale(cls, factor: float) -> "ControlCommand":
        return cls.set_font_size(factor, "*")

    @classmethod
    def unscale(cls, factor: float) -> "ControlCommand":
        return cls.set_font_size(factor, "/")

    @classmethod
    def reset(cls) -> "ControlCommand":
        """Absolute size 0 restores kitty's configured font size."""
        return cls.set_font_size(0, "")

    @classmethod
    def ls(cls) -> "ControlCommand":
        return cls(cmd="ls")

    def describe(self) -> str:
        if self.cmd == "set-font-size":
            return f"set-font-size {self.payload.get('increment_op', '')}{self.payload.get('size'):g}"
        return self.cmd

    def encode(self, encryptor: Optional[CommandEncryptor] = None) -> bytes:
        message = {
            "cmd": self.cmd,
            "version": PROTOCOL_VERSION,
            "no_response": self.no_response,
        }
        if self.payload:
            message["payload"] = self.payload
        if encryptor is not None:
            message = encryptor.encrypt(message)
        return DCS_PREFIX + json.dumps(message).encode() + DCS_SUFFIX


class ControlResponse(BaseModel):
    ok: bool
    data: Any = None
    error: Optional[str] = None


def decode_response(frame: bytes) -> ControlResponse:
    """Parse one framed reply.

    Raises:
        ProtocolError: If the frame is not a kitty reply (fatal)
    """
    start = frame.find(DCS_PREFIX)
    if start < 0 or not frame.endswith(DCS_SUFFIX):
        raise ProtocolError(f"Malformed kitty reply: {frame[:64]!r}", fatal=True)

    body = frame[start + len(DCS_PREFIX):-len(DCS_SUFFIX)]
    try:
        return ControlResponse.model_validate(json.loads(body))
    except ValueError as e:
        raise ProtocolError(f"Unparseable kitty reply: {e}", fatal=True) from e


class KittyControlClient:
    """One connection to a kitty control socket."""

    def __init__(
        self,
        socket_path: Path,
        timeout: float = 5.0,
        pid: Optional[int] = None,
        password: Optional[str] = None,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self.pid = pid
        self.password = password
        self.encryptor: Optional[CommandEncryptor] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> "KittyControlClient":
        """Open the socket.

        Raises:
            ControlConnectionError: If the socket cannot be reached in time
            AuthenticationError: If a password is set and kitty's public key is malformed
        """
        self.encryptor = build_encryptor(self.password, self.pid)
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(self.socket_path)), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise ControlConnectionError(
                f"Timed out connecting to {self.socket_path}", pid=self.pid
            ) from e
        except OSError as e:
            raise ControlConnectionError(
                f"Cannot connect to {self.socket_path}: {e}", pid=self.pid
            ) from e
        return self

    async def request(self, command: ControlCommand) -> ControlResponse:
        """Send one command and wait for its reply.

        Raises:
            ControlConnectionError: On I/O failure, timeout or EOF
            AuthenticationError: If kitty rejects the password
            ProtocolError: If kitty rejects the command
        """
        if not self.is_connected:
            raise ControlConnectionError(
                f"Not connected to {self.socket_path}", pid=self.pid, code=ErrorCode.TRANSPORT_FAILED
            )

        try:
            self._writer.write(command.encode(self.encryptor))
            await asyncio.wait_for(self._writer.drain(), timeout=self.timeout)
            if command.no_response:
                return ControlResponse(ok=True)
            frame = await asyncio.wait_for(self._reader.readuntil(DCS_SUFFIX), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ControlConnectionError(
                f"Timed out waiting for reply to {command.describe()}",
                pid=self.pid,
                code=ErrorCode.TRANSPORT_FAILED,
            ) from e
        except asyncio.IncompleteReadError as e:
            raise ControlConnectionError(
                f"kitty closed the connection during {command.describe()}",
                pid=self.pid,
                code=ErrorCode.TRANSPORT_FAILED,
            ) from e
        except (OSError, asyncio.LimitOverrunError) as e:
            raise ControlConnectionError(
                f"I/O error during {command.describe()}: {e}",
                pid=self.pid,
                code=ErrorCode.TRANSPORT_FAILED,
            ) from e

        response = decode_response(frame)
        if not response.ok:
            error = response.error or "Unknown error"
            if any(marker in error.lower() for marker in AUTH_ERROR_MARKERS):
                raise AuthenticationError(error, pid=self.pid)
            raise ProtocolError(error, pid=self.pid)
        return response

    async def close(self) -> None:
        if self._writer is None:
            return
        writer, self._writer, self._reader = self._writer, None, None
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error closing control socket {self.socket_path}: {e}")


def socket_path_candidates(pid: int) -> List[Path]:
    """Places kitty's ``listen_on unix:.../kitty-{kitty_pid}.sock`` commonly ends up."""
    name = f"kitty-{pid}.sock"
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return [Path(runtime_dir) / name, Path(runtime_dir) / "kitty" / name]
    return [Path(f"/run/user/{os.getuid()}") / name, Path("/tmp") / name]


def kitty_socket_path(pid: int) -> Optional[Path]:
    """First existing control socket for a kitty PID, or None."""
    for path in socket_path_candidates(pid):
        if path.exists():
            return path
    return None


def find_kitty_instances() -> List[Tuple[int, Path]]:
    """List (pid, socket) for every kitty control socket whose process is alive."""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    directories = [Path(runtime_dir), Path(runtime_dir) / "kitty"] if runtime_dir else [Path("/tmp")]

    instances = {}
    for directory in directories:
        if not directory.is_dir():
            continue
        for entry in directory.glob("kitty-*.sock"):
            pid_str = entry.name[len("kitty-"):-len(".sock")]
            if not pid_str.isdigit():
                continue
            pid = int(pid_str)
            if psutil.pid_exists(pid):
                instances.setdefault(pid, entry)

    return sorted(instances.items())
