"""Focus handler: zoom kitty in on focus, back out on blur.

Zoom state is tracked per resolved kitty PID so a lost blur never leaves a
window zoomed twice:

- focus on an already zoomed PID sends nothing
- focus on B while A is still zoomed zooms A out first
- blur only zooms out a PID that is zoomed
- destroy of a zoomed window forgets it without sending anything
"""

import logging
from typing import Dict, Optional

from .config import ZoomMode, ZoomSettings
from .control import ControlCommand
from .errors import ProcessNotFoundError
from .models import BlurEvent, DestroyEvent, FocusEvent, WindowEvent, WindowInfo
from .process import ProcessIdentityResolver
from .registry import ConnectionRegistry
from .router import Predicate, Route, WindowEventRouter, app_id_is

logger = logging.getLogger(__name__)


class FocusHandler:
    """Adjusts kitty font size as tracked windows gain and lose focus."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        resolver: ProcessIdentityResolver,
        zoom: Optional[ZoomSettings] = None,
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.zoom = zoom or ZoomSettings()

        # kitty pid -> window id that zoomed it
        self.zoomed: Dict[int, int] = {}

        self.zoom_ins = 0
        self.zoom_outs = 0
        self.failures = 0

    def zoom_in_command(self) -> ControlCommand:
        if self.zoom.mode == ZoomMode.MULTIPLICATIVE:
            return ControlCommand.scale(self.zoom.factor)
        if self.zoom.mode == ZoomMode.ABSOLUTE:
            return ControlCommand.set_font_size(self.zoom.target)
        return ControlCommand.increase(self.zoom.step)

    def zoom_out_command(self) -> ControlCommand:
        if self.zoom.mode == ZoomMode.MULTIPLICATIVE:
            return ControlCommand.unscale(self.zoom.factor)
        if self.zoom.mode == ZoomMode.ABSOLUTE:
            return ControlCommand.reset()
        return ControlCommand.decrease(self.zoom.step)

    def _resolve(self, window: WindowInfo) -> Optional[int]:
        if window.pid is None:
            logger.debug(f"Window {window.id} ({window.app_id}) has no pid, ignoring")
            return None
        try:
            return self.resolver.resolve(window.pid).pid
        except ProcessNotFoundError as e:
            logger.info(f"Window {window.id}: {e}")
            return None

    async def _apply(self, pid: int, command: ControlCommand) -> bool:
        result = await self.registry.adjust_font_size(pid, command)
        if result.ok:
            logger.debug(f"PID {pid}: {command.describe()}")
            return True

        self.failures += 1
        logger.warning(f"PID {pid}: {command.describe()} failed ({result.status.value}): {result.error}")
        return False

    async def _zoom_out(self, pid: int) -> None:
        self.zoomed.pop(pid, None)
        if await self._apply(pid, self.zoom_out_command()):
            self.zoom_outs += 1

    async def on_focus(self, event: FocusEvent) -> None:
        pid = self._resolve(event.window)
        if pid is None:
            return

        for other in [p for p in self.zoomed if p != pid]:
            logger.info(f"PID {other} still zoomed without a blur, zooming out")
            await self._zoom_out(other)

        if pid in self.zoomed:
            logger.debug(f"PID {pid} already zoomed")
            return

        if await self._apply(pid, self.zoom_in_command()):
            self.zoomed[pid] = event.window_id
            self.zoom_ins += 1

    async def on_blur(self, event: BlurEvent) -> None:
        pid = self._resolve(event.window)
        if pid is None:
            return

        if pid in self.zoomed:
            await self._zoom_out(pid)

    def on_lifecycle(self, event: WindowEvent) -> None:
        if not isinstance(event, DestroyEvent):
            return

        for pid in [p for p, window_id in self.zoomed.items() if window_id == event.window_id]:
            logger.debug(f"Zoomed window {event.window_id} (PID {pid}) closed, forgetting it")
            del self.zoomed[pid]

    async def handle(self, event: WindowEvent) -> None:
        if isinstance(event, FocusEvent):
            await self.on_focus(event)
        elif isinstance(event, BlurEvent):
            await self.on_blur(event)

    def install(self, router: WindowEventRouter, predicate: Optional[Predicate] = None) -> Dict[str, Route]:
        """Register focus/blur and lifecycle routes on router."""
        return {
            "window": router.register(predicate or app_id_is("kitty"), self.handle, name="focus-handler"),
            "lifecycle": router.register_lifecycle(self.on_lifecycle, name="focus-handler-lifecycle"),
        }

    def stats(self) -> dict:
        return {
            "mode": self.zoom.mode.value,
            "zoomed": sorted(self.zoomed),
            "zoom_ins": self.zoom_ins,
            "zoom_outs": self.zoom_outs,
            "failures": self.failures,
        }
