"""Window event router.

Routes are tagged entries in an ordered list:

- WINDOW routes pair a predicate over WindowInfo with a handler. Only focus and
  blur events are matched against them.
- LIFECYCLE routes get every event unfiltered (create and destroy included).

Handlers may be plain functions or coroutines. A failing predicate or handler
is logged and never keeps the other handlers from seeing the event.
"""

import inspect
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union

from .errors import OverrunError
from .models import BlurEvent, FocusEvent, WindowEvent, WindowInfo

logger = logging.getLogger(__name__)

Predicate = Callable[[WindowInfo], bool]
Handler = Callable[[WindowEvent], Union[None, Awaitable[None]]]


class RouteKind(str, Enum):
    WINDOW = "window"
    LIFECYCLE = "lifecycle"


@dataclass(eq=False)
class Route:
    kind: RouteKind
    handler: Handler
    predicate: Optional[Predicate] = None
    name: str = ""
    invocations: int = 0
    failures: int = 0

    def matches(self, event: WindowEvent) -> bool:
        if self.kind is RouteKind.LIFECYCLE:
            return True
        if not isinstance(event, (FocusEvent, BlurEvent)):
            return False
        return bool(self.predicate(event.window))


def app_id_is(app_id: str) -> Predicate:
    """Predicate: window's app id equals app_id."""

    def predicate(window: WindowInfo) -> bool:
        return window.app_id == app_id

    predicate.__name__ = f"app_id_is({app_id!r})"
    return predicate


def app_id_matches(pattern: str) -> Predicate:
    """Predicate: window's app id fully matches a regular expression."""
    compiled = re.compile(pattern)

    def predicate(window: WindowInfo) -> bool:
        return window.app_id is not None and compiled.fullmatch(window.app_id) is not None

    predicate.__name__ = f"app_id_matches({pattern!r})"
    return predicate


class WindowEventRouter:
    """Dispatch window events to predicate-matched handlers."""

    def __init__(self) -> None:
        self.routes: List[Route] = []
        self.events_dispatched = 0

    def register(self, predicate: Predicate, handler: Handler, name: Optional[str] = None) -> Route:
        """Add a focus/blur handler selected by predicate."""
        route = Route(
            kind=RouteKind.WINDOW,
            handler=handler,
            predicate=predicate,
            name=name or getattr(handler, "__qualname__", repr(handler)),
        )
        self.routes.append(route)
        logger.debug(f"Registered window route {route.name} ({getattr(predicate, '__name__', predicate)})")
        return route

    def register_lifecycle(self, handler: Handler, name: Optional[str] = None) -> Route:
        """Add a handler that sees every event, unfiltered."""
        route = Route(
            kind=RouteKind.LIFECYCLE,
            handler=handler,
            name=name or getattr(handler, "__qualname__", repr(handler)),
        )
        self.routes.append(route)
        logger.debug(f"Registered lifecycle route {route.name}")
        return route

    def unregister(self, route: Route) -> None:
        if route in self.routes:
            self.routes.remove(route)

    async def dispatch(self, event: WindowEvent) -> int:
        """Invoke every matching handler for one event.

        Returns:
            Number of handlers invoked
        """
        self.events_dispatched += 1
        invoked = 0

        for route in list(self.routes):
            try:
                if not route.matches(event):
                    continue
            except Exception as e:
                logger.error(f"Predicate for {route.name} failed on {event.event} event: {e}", exc_info=True)
                continue

            invoked += 1
            route.invocations += 1
            try:
                result: Any = route.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                route.failures += 1
                logger.error(
                    f"Handler {route.name} failed on {event.event} event "
                    f"for window {event.window_id}: {e}",
                    exc_info=True,
                )

        return invoked

    async def run(self, subscription) -> Optional[OverrunError]:
        """Consume a subscription until the stream ends.

        Returns:
            The OverrunError if the subscription was dropped, else None
        """
        logger.info(f"Router consuming {subscription.name}")
        try:
            async for event in subscription:
                await self.dispatch(event)
        except OverrunError as e:
            logger.error(f"Router lost its subscription: {e}")
            return e

        if subscription.error is not None:
            logger.warning(f"Router stopped: event stream failed ({subscription.error})")
        else:
            logger.info("Router stopped: event stream ended")
