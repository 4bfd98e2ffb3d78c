"""Daemon entry point with systemd integration.

Wires the compositor event stream, the router, the focus handler and the
control connection registry into one asyncio event loop and runs until the
stream ends or SIGTERM/SIGINT arrives.
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional, Union

try:
    from systemd import journal, daemon as sd_daemon
    SYSTEMD_AVAILABLE = True
except ImportError:
    SYSTEMD_AVAILABLE = False

from .config import Settings
from .errors import IpcConnectionError
from .event_stream import EventStream, StreamTermination
from .focus import FocusHandler
from .process import ProcessIdentityResolver
from .registry import ConnectionRegistry
from .router import WindowEventRouter, app_id_is
from .transports import EventTransport, create_transport

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname)s [%(name)s] %(message)s"


class DaemonHealthMonitor:
    """Sends sd_notify state changes when running under systemd."""

    def notify_ready(self) -> None:
        if SYSTEMD_AVAILABLE:
            sd_daemon.notify("READY=1")
            logger.info("Sent READY=1 to systemd")
        else:
            logger.debug("Systemd not available, skipping READY notification")

    def notify_stopping(self) -> None:
        if SYSTEMD_AVAILABLE:
            sd_daemon.notify("STOPPING=1")
            logger.info("Sent STOPPING=1 to systemd")


class ZoomingDaemon:
    """Focus-driven kitty zoom daemon."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[EventTransport] = None,
        registry: Optional[ConnectionRegistry] = None,
        resolver: Optional[ProcessIdentityResolver] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.transport = transport
        self.registry = registry or ConnectionRegistry(self.settings.to_registry_config())
        self.resolver = resolver or ProcessIdentityResolver(process_names=self.settings.process_names)

        self.stream: Optional[EventStream] = None
        self.router = WindowEventRouter()
        self.focus_handler = FocusHandler(self.registry, self.resolver, self.settings.zoom)
        self.health_monitor = DaemonHealthMonitor()
        self.shutdown_event = asyncio.Event()

        self._stream_task: Optional[asyncio.Task] = None
        self._router_task: Optional[asyncio.Task] = None

    async def initialize(self) -> None:
        """Connect to the compositor and start the registry.

        Raises:
            IpcConnectionError: If the compositor IPC is unreachable
        """
        if self.transport is None:
            socket_path = str(self.settings.socket_path) if self.settings.socket_path else None
            self.transport = create_transport(self.settings.backend, socket_path)

        self.stream = EventStream(self.transport, subscriber_buffer=self.settings.subscriber_buffer)
        await self.stream.connect()
        logger.info(f"Connected to {self.transport.name} IPC")

        self.focus_handler.install(self.router, app_id_is(self.settings.app_id))
        await self.registry.start()

    async def run(self) -> StreamTermination:
        """Run the stream reader and the router until either of them stops.

        A router that stops while the stream is still running has lost its
        subscription; the stream is closed and an error termination returned.
        """
        subscription = self.stream.subscribe(name="router")
        self._router_task = asyncio.create_task(self.router.run(subscription), name="router")
        self._stream_task = asyncio.create_task(self.stream.run(), name="event-stream")

        self.health_monitor.notify_ready()
        logger.info(f"Tracking app_id={self.settings.app_id!r} (zoom mode: {self.settings.zoom.mode.value})")

        await asyncio.wait([self._stream_task, self._router_task], return_when=asyncio.FIRST_COMPLETED)

        if not self._stream_task.done():
            logger.error("Router stopped while the event stream is still running, stopping")
            await self.stream.close()

        termination = await self._stream_task
        router_error = await self._router_task
        if router_error is not None:
            return StreamTermination("error", router_error)
        return termination

    async def shutdown(self) -> None:
        """Close the stream, wait for the consumers and stop the registry."""
        logger.info("Shutting down...")
        self.health_monitor.notify_stopping()

        if self.stream is not None:
            await self.stream.close()

        for task in (self._stream_task, self._router_task):
            if task is None or task.done():
                continue
            try:
                await asyncio.wait_for(task, timeout=2.0)
            except asyncio.TimeoutError:
                logger.warning(f"Task {task.get_name()} did not stop in time, cancelling")
                task.cancel()
            except asyncio.CancelledError:
                pass

        await self.registry.stop()
        if self.stream is not None:
            logger.info(f"Stream stats: {self.stream.stats()}")
        logger.info(f"Zoom stats: {self.focus_handler.stats()}")

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def shutdown_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown...")
            loop.call_soon_threadsafe(self.shutdown_event.set)

        def debug_handler(signum, frame):
            logger.info(f"Registry: {self.registry.stats()}")
            if self.stream is not None:
                logger.info(f"Stream: {self.stream.stats()}")
            logger.info(f"Zoom: {self.focus_handler.stats()}")

        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)
        signal.signal(signal.SIGUSR1, debug_handler)


def setup_logging(level: Optional[Union[int, str]] = None) -> None:
    """Setup logging to systemd journal or stderr.

    Args:
        level: Log level; falls back to $LOG_LEVEL, then INFO
    """
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO").upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if SYSTEMD_AVAILABLE and os.environ.get("JOURNAL_STREAM"):
        handler = journal.JournalHandler(SYSLOG_IDENTIFIER="zooming-kittens")
    else:
        handler = logging.StreamHandler(sys.stderr)

    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.handlers = [handler]

    logger.debug(f"Logging configured: level={logging.getLevelName(root_logger.level)}")


async def main_async(settings: Settings) -> int:
    """Async main function.

    Returns:
        Exit code (0 = success, non-zero = error)
    """
    daemon = ZoomingDaemon(settings)

    try:
        daemon.setup_signal_handlers()
        await daemon.initialize()
    except IpcConnectionError as e:
        logger.error(f"Cannot start: {e}")
        await daemon.registry.stop()
        return 1

    run_task = asyncio.create_task(daemon.run())
    shutdown_task = asyncio.create_task(daemon.shutdown_event.wait())

    try:
        done, pending = await asyncio.wait(
            [run_task, shutdown_task], return_when=asyncio.FIRST_COMPLETED
        )
        shutdown_task.cancel()
        await daemon.shutdown()

        if run_task in done:
            termination = run_task.result()
        else:
            termination = await run_task

        if termination.is_error:
            logger.error(f"Event stream failed: {termination.error}")
            return 1
        return 0

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


def run(settings: Settings) -> int:
    """Run the daemon in a fresh event loop."""
    logger.info(f"zooming-kittens starting (PID {os.getpid()})")
    try:
        return asyncio.run(main_async(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
