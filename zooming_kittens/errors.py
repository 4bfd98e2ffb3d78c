"""
Error taxonomy for zooming-kittens.

Every component boundary converts low-level failures (OSError, asyncio timeouts,
pydantic validation errors) into one of the exceptions below.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """
    Error codes for zooming-kittens.

    Ranges:
    - 1000-1099: Event decoding errors
    - 1100-1199: Compositor IPC errors
    - 1200-1299: Control socket errors
    - 1300-1399: Process resolution errors
    - 1400-1499: Configuration errors
    """

    # Event decoding errors (1000-1099)
    DECODE_FAILED = 1000
    UNKNOWN_EVENT = 1001
    SUBSCRIBER_OVERRUN = 1002

    # Compositor IPC errors (1100-1199)
    IPC_UNREACHABLE = 1100
    IPC_HANDSHAKE_REJECTED = 1101
    IPC_READ_FAILED = 1102

    # Control socket errors (1200-1299)
    SOCKET_NOT_FOUND = 1200
    CONNECT_FAILED = 1201
    TRANSPORT_FAILED = 1202
    COMMAND_REJECTED = 1203
    AUTH_FAILED = 1204

    # Process resolution errors (1300-1399)
    PROCESS_NOT_FOUND = 1300

    # Configuration errors (1400-1499)
    CONFIG_INVALID = 1400
    CONFIG_LOAD_FAILED = 1401


class ZoomingError(Exception):
    """Base exception for all zooming-kittens errors."""

    default_code = ErrorCode.TRANSPORT_FAILED

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize error.

        Args:
            message: Human-readable error message
            code: Error code from ErrorCode enum (defaults to the class default)
            context: Additional context for debugging
        """
        self.code = code or self.default_code
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for JSON output.

        Returns:
            Error dictionary with code, message, and context
        """
        result: Dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
        }

        if self.context:
            result["context"] = self.context

        return result


class DecodeError(ZoomingError):
    """Malformed event record (bad JSON, missing or mistyped field)."""

    default_code = ErrorCode.DECODE_FAILED


class UnknownEventError(DecodeError):
    """Event record whose variant tag is outside the known set."""

    default_code = ErrorCode.UNKNOWN_EVENT

    def __init__(self, tag: Any):
        super().__init__(f"Unknown event variant: {tag!r}", context={"tag": tag})
        self.tag = tag


class OverrunError(ZoomingError):
    """A subscriber fell too far behind the event stream and was disconnected."""

    default_code = ErrorCode.SUBSCRIBER_OVERRUN


class IpcConnectionError(ZoomingError, ConnectionError):
    """Compositor IPC connect/read failure."""

    default_code = ErrorCode.IPC_UNREACHABLE


class ControlConnectionError(ZoomingError, ConnectionError):
    """Control socket connect/read/write failure."""

    default_code = ErrorCode.CONNECT_FAILED

    def __init__(
        self,
        message: str,
        pid: Optional[int] = None,
        code: Optional[ErrorCode] = None,
    ):
        super().__init__(message, code=code, context={"pid": pid} if pid is not None else None)
        self.pid = pid


class SocketNotFoundError(ControlConnectionError):
    """No control socket exists for the process."""

    default_code = ErrorCode.SOCKET_NOT_FOUND


class ProtocolError(ZoomingError):
    """The remote rejected a command (reply with ok=false).

    ``fatal`` is set when the reply could not be parsed at all, in which case
    the connection can no longer be trusted.
    """

    default_code = ErrorCode.COMMAND_REJECTED

    def __init__(self, message: str, pid: Optional[int] = None, fatal: bool = False):
        super().__init__(message, context={"pid": pid, "fatal": fatal})
        self.pid = pid
        self.fatal = fatal


class AuthenticationError(ProtocolError):
    """kitty refused the command because of its remote control password."""

    default_code = ErrorCode.AUTH_FAILED


class ProcessNotFoundError(ZoomingError, LookupError):
    """No process owning a control socket could be found for a PID."""

    default_code = ErrorCode.PROCESS_NOT_FOUND

    def __init__(self, reported_pid: int, reason: str):
        super().__init__(
            f"No control process for PID {reported_pid}: {reason}",
            context={"reported_pid": reported_pid, "reason": reason},
        )
        self.reported_pid = reported_pid
        self.reason = reason


class ConfigError(ZoomingError):
    """Invalid or unreadable configuration."""

    default_code = ErrorCode.CONFIG_INVALID
