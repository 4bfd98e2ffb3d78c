"""Compositor IPC transports.

A transport owns the single connection to the window manager and yields
normalized event records (see decoder.py) one at a time. Compositor-specific
bookkeeping (window tables, synthesized blur events) happens here so the
decoder stays stateless.

Backends:
- niri: JSON lines over $NIRI_SOCKET
- sway/i3: i3ipc.aio connection (window::focus/new/close, workspace::focus)
- jsonl: records that are already normalized (replay, tests)
"""

import asyncio
import json
import logging
import os
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from .errors import ErrorCode, IpcConnectionError

logger = logging.getLogger(__name__)

# niri sends the whole window list in one line
READ_LIMIT = 4 * 1024 * 1024


def _record(tag: str, window: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "event": tag,
        "id": window.get("id"),
        "app_id": window.get("app_id"),
        "pid": window.get("pid"),
        "title": window.get("title"),
    }


def get_window_class(container) -> Optional[str]:
    """Get window class in a Sway/i3-compatible way.

    Sway: app_id first (native Wayland), then window_class (XWayland).
    """
    if getattr(container, "app_id", None):
        return container.app_id

    if getattr(container, "window_class", None):
        return container.window_class

    properties = getattr(container, "window_properties", None)
    if isinstance(properties, dict):
        return properties.get("class")

    return None


class EventTransport:
    """Base transport: connect, read one record at a time, close."""

    name = "base"

    async def connect(self) -> None:
        raise NotImplementedError

    async def read_message(self) -> Optional[bytes]:
        """Return the next record, or None once the peer closed the connection.

        Raises:
            IpcConnectionError: On transport I/O failure
        """
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class JsonLinesTransport(EventTransport):
    """Newline-delimited records from a unix socket or an existing reader."""

    name = "jsonl"

    def __init__(
        self,
        socket_path: Optional[Path] = None,
        reader: Optional[asyncio.StreamReader] = None,
        writer: Optional[asyncio.StreamWriter] = None,
    ) -> None:
        self.socket_path = socket_path
        self.reader = reader
        self.writer = writer
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self.reader is not None and not self._closed

    async def connect(self) -> None:
        if self.reader is not None:
            return
        if self.socket_path is None:
            raise IpcConnectionError(f"{self.name}: no socket path configured")

        try:
            self.reader, self.writer = await asyncio.open_unix_connection(
                str(self.socket_path), limit=READ_LIMIT
            )
        except OSError as e:
            raise IpcConnectionError(
                f"{self.name}: cannot connect to {self.socket_path}: {e}",
                code=ErrorCode.IPC_UNREACHABLE,
            ) from e

        logger.info(f"Connected to {self.name} IPC at {self.socket_path}")

    async def _readline(self) -> Optional[bytes]:
        if self.reader is None or self._closed:
            return None
        try:
            line = await self.reader.readline()
        except (OSError, asyncio.LimitOverrunError, ValueError) as e:
            if self._closed:
                return None
            raise IpcConnectionError(
                f"{self.name}: read failed: {e}", code=ErrorCode.IPC_READ_FAILED
            ) from e
        return line or None

    async def read_message(self) -> Optional[bytes]:
        while True:
            line = await self._readline()
            if line is None:
                return None
            if line.strip():
                return line

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.reader is not None:
            # Wake up a pending readline
            self.reader.feed_eof()
        if self.writer is not None:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except OSError as e:
                logger.debug(f"{self.name}: error while closing: {e}")
        logger.info(f"Closed {self.name} IPC connection")


class NiriEventTranslator:
    """Turn niri's event stream into focus/blur/create/destroy records.

    niri reports focus changes by window id only, so a window table is kept
    from WindowsChanged / WindowOpenedOrChanged / WindowClosed. A change of
    focus from A to B yields blur(A) followed by focus(B).
    """

    def __init__(self) -> None:
        self.windows: Dict[int, Dict[str, Any]] = {}
        self.focused_id: Optional[int] = None

    def feed(self, message: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not isinstance(message, dict) or len(message) != 1:
            return [{"event": None, "raw": message}]

        (kind, body), = message.items()
        body = body or {}

        if kind == "WindowsChanged":
            return self._on_windows_changed(body.get("windows") or [])
        if kind == "WindowOpenedOrChanged":
            return self._on_window_opened_or_changed(body.get("window") or {})
        if kind == "WindowClosed":
            return self._on_window_closed(body.get("id"))
        if kind == "WindowFocusChanged":
            return self._on_focus_changed(body.get("id"))

        # Not a window event: forwarded so the decoder can log and skip it
        return [{"event": kind}]

    def _on_windows_changed(self, windows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        self.windows = {w["id"]: w for w in windows if "id" in w}

        if self.focused_id is not None:
            return []

        focused = next((w for w in windows if w.get("is_focused")), None)
        if focused is None:
            return []

        self.focused_id = focused["id"]
        logger.debug(f"Initial focus detected: window_id={focused['id']}")
        return [_record("focus", focused)]

    def _on_window_opened_or_changed(self, window: Dict[str, Any]) -> List[Dict[str, Any]]:
        window_id = window.get("id")
        if window_id is None:
            return [{"event": "create", "raw": window}]

        records: List[Dict[str, Any]] = []
        if window_id not in self.windows:
            records.append(_record("create", window))
        self.windows[window_id] = window

        if window.get("is_focused") and self.focused_id != window_id:
            records.extend(self._move_focus(window_id))
        return records

    def _on_window_closed(self, window_id: Optional[int]) -> List[Dict[str, Any]]:
        if window_id is None:
            return [{"event": "destroy"}]
        self.windows.pop(window_id, None)
        if self.focused_id == window_id:
            self.focused_id = None
        return [{"event": "destroy", "id": window_id}]

    def _on_focus_changed(self, window_id: Optional[int]) -> List[Dict[str, Any]]:
        if window_id == self.focused_id:
            return []
        return self._move_focus(window_id)

    def _move_focus(self, window_id: Optional[int]) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []

        previous = self.windows.get(self.focused_id) if self.focused_id is not None else None
        if previous is not None:
            records.append(_record("blur", previous))

        self.focused_id = window_id
        current = self.windows.get(window_id) if window_id is not None else None
        if current is not None:
            records.append(_record("focus", current))
        elif window_id is not None:
            logger.debug(f"Focus moved to unknown window {window_id}")
        return records


class NiriTransport(JsonLinesTransport):
    """niri IPC: request EventStream on $NIRI_SOCKET and translate its events."""

    name = "niri"

    def __init__(self, socket_path: Optional[Path] = None) -> None:
        if socket_path is None and os.environ.get("NIRI_SOCKET"):
            socket_path = Path(os.environ["NIRI_SOCKET"])
        super().__init__(socket_path=socket_path)
        self.translator = NiriEventTranslator()
        self._pending: Deque[bytes] = deque()

    async def connect(self) -> None:
        if self.socket_path is None:
            raise IpcConnectionError("niri: NIRI_SOCKET is not set")

        await super().connect()

        self.writer.write(b'"EventStream"\n')
        try:
            await self.writer.drain()
        except OSError as e:
            raise IpcConnectionError(f"niri: handshake write failed: {e}") from e

        reply_line = await self._readline()
        try:
            reply = json.loads(reply_line) if reply_line else None
        except json.JSONDecodeError:
            reply = reply_line

        if reply != {"Ok": "Handled"}:
            await self.close()
            raise IpcConnectionError(
                f"niri: event stream request rejected: {reply!r}",
                code=ErrorCode.IPC_HANDSHAKE_REJECTED,
            )
        logger.info("niri event stream established")

    async def read_message(self) -> Optional[bytes]:
        while not self._pending:
            line = await super().read_message()
            if line is None:
                return None

            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                # Hand the garbage to the decoder, which reports it
                return line

            try:
                records = self.translator.feed(message)
            except (AttributeError, TypeError, KeyError) as e:
                logger.debug(f"niri: unexpected event shape ({e!r}): {message!r}")
                records = [{"event": None, "raw": message}]

            for record in records:
                self._pending.append(json.dumps(record).encode())

        return self._pending.popleft()


class SwayTransport(EventTransport):
    """sway/i3 IPC through i3ipc.aio.

    i3ipc dispatches events to callbacks from its own main() loop; the
    callbacks push records into a queue that read_message() drains.
    """

    name = "sway"

    def __init__(self, socket_path: Optional[str] = None) -> None:
        self.socket_path = socket_path
        self.conn = None
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._main_task: Optional[asyncio.Task] = None
        self._focused: Optional[Dict[str, Any]] = None
        self._closed = False

    async def connect(self) -> None:
        from i3ipc import Event
        from i3ipc.aio import Connection

        try:
            self.conn = await Connection(socket_path=self.socket_path, auto_reconnect=False).connect()
            version = await self.conn.get_version()
        except Exception as e:
            raise IpcConnectionError(f"sway: cannot connect: {e}") from e

        logger.info(f"Connected to sway/i3 version {version.human_readable}")

        self.conn.on(Event.WINDOW_FOCUS, self._on_window_focus)
        self.conn.on(Event.WINDOW_NEW, self._on_window_new)
        self.conn.on(Event.WINDOW_CLOSE, self._on_window_close)
        self.conn.on(Event.WORKSPACE_FOCUS, self._on_workspace_focus)
        self._main_task = asyncio.create_task(self._run_main(), name="sway-ipc-main")

    async def _run_main(self) -> None:
        try:
            await self.conn.main()
        except Exception as e:
            logger.error(f"sway IPC loop error: {e}")
            self._queue.put_nowait(e)
        finally:
            self._queue.put_nowait(None)

    @staticmethod
    def _window_from_container(container) -> Dict[str, Any]:
        pid = getattr(container, "pid", None)
        if pid is None and isinstance(getattr(container, "ipc_data", None), dict):
            pid = container.ipc_data.get("pid")
        return {
            "id": container.id,
            "app_id": get_window_class(container),
            "pid": pid,
            "title": container.name,
        }

    async def _on_window_focus(self, conn, event) -> None:
        window = self._window_from_container(event.container)
        if self._focused is not None and self._focused["id"] == window["id"]:
            return
        if self._focused is not None:
            self._queue.put_nowait(_record("blur", self._focused))
        self._focused = window
        self._queue.put_nowait(_record("focus", window))

    async def _on_workspace_focus(self, conn, event) -> None:
        # Focusing an empty workspace sends no window::focus
        workspace = event.current
        if workspace is not None and (workspace.leaves() or workspace.find_focused() is not None):
            return
        if self._focused is not None:
            self._queue.put_nowait(_record("blur", self._focused))
            self._focused = None

    async def _on_window_new(self, conn, event) -> None:
        self._queue.put_nowait(_record("create", self._window_from_container(event.container)))

    async def _on_window_close(self, conn, event) -> None:
        window_id = event.container.id
        if self._focused is not None and self._focused["id"] == window_id:
            self._focused = None
        self._queue.put_nowait({"event": "destroy", "id": window_id})

    async def read_message(self) -> Optional[bytes]:
        item = await self._queue.get()
        if item is None:
            return None
        if isinstance(item, Exception):
            raise IpcConnectionError(f"sway: {item}", code=ErrorCode.IPC_READ_FAILED) from item
        return json.dumps(item).encode()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.conn is not None:
            self.conn.main_quit()
        if self._main_task is None:
            self._queue.put_nowait(None)
        logger.info("Closed sway IPC connection")


def detect_backend() -> Optional[str]:
    """Pick a backend from the session environment."""
    if os.environ.get("NIRI_SOCKET"):
        return "niri"
    if os.environ.get("SWAYSOCK") or os.environ.get("I3SOCK"):
        return "sway"
    return None


def create_transport(backend: str = "auto", socket_path: Optional[str] = None) -> EventTransport:
    """Build a transport by backend name (niri, sway, jsonl, auto)."""
    if backend == "auto":
        detected = detect_backend()
        if detected is None:
            raise IpcConnectionError(
                "Cannot detect compositor: neither NIRI_SOCKET nor SWAYSOCK/I3SOCK is set"
            )
        backend = detected

    if backend == "niri":
        return NiriTransport(Path(socket_path) if socket_path else None)
    if backend == "sway":
        return SwayTransport(socket_path)
    if backend == "jsonl":
        if not socket_path:
            raise IpcConnectionError("jsonl backend requires a socket path")
        return JsonLinesTransport(socket_path=Path(socket_path))

    raise ValueError(f"Unknown backend: {backend}")
