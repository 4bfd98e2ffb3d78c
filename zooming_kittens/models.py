"""Data models for zooming-kittens.

Pydantic models for window events and plain dataclasses for runtime state
that holds live handles (process resolution results, zoom results).
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class WindowInfo(BaseModel):
    """Immutable snapshot of a window as reported with one event."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=0, description="Compositor window id, unique for the window's lifetime")
    app_id: Optional[str] = Field(None, description="Wayland app_id (or X11 class)")
    pid: Optional[int] = Field(None, description="PID reported by the compositor")
    title: Optional[str] = Field(None, description="Window title")


class _BaseWindowEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    window_id: int = Field(..., ge=0)


class FocusEvent(_BaseWindowEvent):
    """Window gained focus."""

    event: Literal["focus"] = "focus"
    window: WindowInfo


class BlurEvent(_BaseWindowEvent):
    """Window lost focus."""

    event: Literal["blur"] = "blur"
    window: WindowInfo


class CreateEvent(_BaseWindowEvent):
    """Window opened."""

    event: Literal["create"] = "create"
    window: WindowInfo


class DestroyEvent(_BaseWindowEvent):
    """Window closed."""

    event: Literal["destroy"] = "destroy"

    @property
    def window(self) -> None:
        return None


WindowEvent = Annotated[
    Union[FocusEvent, BlurEvent, CreateEvent, DestroyEvent],
    Field(discriminator="event"),
]

EVENT_TAGS = frozenset({"focus", "blur", "create", "destroy"})


@dataclass(frozen=True)
class ResolvedProcess:
    """Mapping from a window's reported PID to the PID owning the control socket.

    depth is the number of hops from the reported process: 0 for the process
    itself, negative for ancestors, positive for descendants.
    """

    reported_pid: int
    pid: int
    name: str
    depth: int = 0
    resolved_at: float = field(default_factory=time.time)


class ConnectionStatus(str, Enum):
    """Last known control-connection outcome for a PID."""

    READY = "ready"
    NO_SOCKET = "no_socket"
    NOT_CONFIGURED = "not_configured"
    FAILED = "failed"


class ZoomStatus(str, Enum):
    SUCCESS = "success"
    NOT_CONFIGURED = "not_configured"
    CONNECTION_FAILED = "connection_failed"
    AUTH_FAILED = "auth_failed"
    FAILED = "failed"


class ZoomResult(BaseModel):
    """Outcome of one font adjustment against a kitty process."""

    status: ZoomStatus
    pid: int
    font_adjustment: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == ZoomStatus.SUCCESS
