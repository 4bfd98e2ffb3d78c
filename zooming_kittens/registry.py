"""Control connection registry.

Pool of kitty control connections keyed by kitty PID:

- at most one live connection per PID; concurrent get_or_create() calls for
  the same PID share a single connect attempt
- bounded connect retry; a failed attempt leaves nothing behind
- execute() retries once on a fresh connection after a transport failure
- least-recently-used eviction at max_connections
- background reaper for idle connections and exited processes

Locking: one asyncio.Lock guards map membership (insert, evict, touch). No
I/O runs under it. Each PooledConnection has its own lock that serializes
commands, since kitty replies are not tagged with a request id.
"""

import asyncio
import itertools
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

import psutil

from .auth import get_kitty_password
from .control import ControlCommand, ControlResponse, KittyControlClient, kitty_socket_path
from .errors import AuthenticationError, ControlConnectionError, ProtocolError, SocketNotFoundError
from .models import ConnectionStatus, ZoomResult, ZoomStatus

logger = logging.getLogger(__name__)

Connector = Callable[[int, Path, float], Awaitable[KittyControlClient]]
SocketResolver = Callable[[int], Optional[Path]]

_connection_ids = itertools.count(1)


async def connect_kitty(pid: int, socket_path: Path, timeout: float) -> KittyControlClient:
    client = KittyControlClient(socket_path, timeout=timeout, pid=pid, password=get_kitty_password())
    return await client.connect()


def _pid_alive(pid: int) -> bool:
    return psutil.pid_exists(pid)


@dataclass
class RegistryConfig:
    """Registry tuning. Durations are seconds."""

    socket_timeout: float = 2.0
    max_retries: int = 3
    retry_delay: float = 0.1
    max_connections: int = 10
    idle_timeout: float = 1800.0
    reap_interval: float = 300.0
    check_liveness: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        if self.reap_interval <= 0:
            raise ValueError("reap_interval must be > 0")


@dataclass(eq=False)
class PooledConnection:
    """A live control connection owned by the registry."""

    pid: int
    client: KittyControlClient
    last_used: float
    failures: int = 0
    commands_sent: int = 0
    connection_id: int = field(default_factory=lambda: next(_connection_ids))
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def idle_for(self, now: float) -> float:
        return now - self.last_used


class ConnectionRegistry:
    """Pooled, self-healing kitty control connections keyed by PID."""

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        connector: Connector = connect_kitty,
        socket_resolver: SocketResolver = kitty_socket_path,
        pid_alive: Callable[[int], bool] = _pid_alive,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize registry.

        Args:
            config: Pool/retry/reaping configuration
            connector: Opens a client for (pid, socket_path, timeout)
            socket_resolver: Finds the control socket path for a PID
            pid_alive: Cheap process existence check
            clock: Monotonic clock used for idle accounting
        """
        self.config = config or RegistryConfig()
        self._connector = connector
        self._socket_resolver = socket_resolver
        self._pid_alive = pid_alive
        self._clock = clock

        self._connections: "OrderedDict[int, PooledConnection]" = OrderedDict()
        self._pending: Dict[int, asyncio.Future] = {}
        self._lock = asyncio.Lock()
        self._statuses: Dict[int, ConnectionStatus] = {}
        self._reaper_task: Optional[asyncio.Task] = None
        self._stopped = False

        self.connect_attempts = 0
        self.evictions = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background idle reaper."""
        self._stopped = False
        if self._reaper_task is not None and not self._reaper_task.done():
            return
        self._reaper_task = asyncio.create_task(self._reap_loop(), name="connection-reaper")
        logger.info(
            f"Connection reaper started (interval={self.config.reap_interval}s, "
            f"idle_timeout={self.config.idle_timeout}s)"
        )

    async def stop(self) -> None:
        """Stop the reaper and close every pooled connection."""
        self._stopped = True
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
            self._statuses.clear()

        for conn in connections:
            await self._close(conn, "shutdown")
        logger.info(f"Connection registry stopped ({len(connections)} connection(s) closed)")

    async def __aenter__(self) -> "ConnectionRegistry":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Pool
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, pid: int) -> bool:
        return pid in self._connections

    def pids(self) -> List[int]:
        """Pooled PIDs, least recently used first."""
        return list(self._connections)

    async def get_or_create(self, pid: int) -> PooledConnection:
        """Return the pooled connection for pid, connecting if needed.

        Raises:
            SocketNotFoundError: If pid has no control socket
            ControlConnectionError: If every connect attempt failed
        """
        stale: Optional[PooledConnection] = None

        async with self._lock:
            if self._stopped:
                raise ControlConnectionError("Connection registry is stopped", pid=pid)

            conn = self._connections.get(pid)
            if conn is not None:
                if self.config.check_liveness and not self._pid_alive(pid):
                    logger.info(f"PID {pid} exited, evicting its connection before reuse")
                    stale = self._evict_locked(pid)
                else:
                    self._touch_locked(conn)
                    return conn

            future = self._pending.get(pid)
            owner = future is None
            if owner:
                future = asyncio.get_running_loop().create_future()
                self._pending[pid] = future

        if stale is not None:
            await self._close(stale, "process exited")

        if not owner:
            return await asyncio.shield(future)

        evicted: Optional[PooledConnection] = None
        try:
            client = await self._connect_with_retry(pid)
        except BaseException as e:
            async with self._lock:
                self._pending.pop(pid, None)
            if isinstance(e, asyncio.CancelledError):
                # Waiters were not cancelled themselves
                self._fail_pending(future, ControlConnectionError(f"Connect to PID {pid} was cancelled", pid=pid))
            else:
                self._fail_pending(future, e)
            raise

        async with self._lock:
            self._pending.pop(pid, None)
            stopped = self._stopped
            if stopped:
                self._fail_pending(future, ControlConnectionError("Connection registry stopped during connect", pid=pid))
            else:
                if len(self._connections) >= self.config.max_connections:
                    lru_pid = next(iter(self._connections))
                    logger.info(
                        f"Connection pool full ({self.config.max_connections}), "
                        f"evicting least recently used PID {lru_pid}"
                    )
                    evicted = self._evict_locked(lru_pid)

                conn = PooledConnection(pid=pid, client=client, last_used=self._clock())
                self._connections[pid] = conn
                self._statuses[pid] = ConnectionStatus.READY
                future.set_result(conn)

        if stopped:
            await client.close()
            raise future.exception()

        if evicted is not None:
            await self._close(evicted, "lru")

        logger.debug(f"Pooled connection #{conn.connection_id} for PID {pid}")
        return conn

    @staticmethod
    def _fail_pending(future: asyncio.Future, error: BaseException) -> None:
        if future.done():
            return
        future.set_exception(error)
        # Nobody may be waiting on it
        future.exception()

    async def _connect_with_retry(self, pid: int) -> KittyControlClient:
        socket_path = self._socket_resolver(pid)
        if socket_path is None:
            self._statuses[pid] = ConnectionStatus.NO_SOCKET
            raise SocketNotFoundError(f"No control socket for PID {pid}", pid=pid)

        last_error: Optional[Exception] = None
        attempts = self.config.max_retries

        for attempt in range(1, attempts + 1):
            self.connect_attempts += 1
            try:
                logger.debug(f"Connecting to PID {pid} at {socket_path} (attempt {attempt}/{attempts})")
                return await asyncio.wait_for(
                    self._connector(pid, socket_path, self.config.socket_timeout),
                    timeout=self.config.socket_timeout,
                )
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"Connect to PID {pid} timed out (attempt {attempt}/{attempts})")
            except (ControlConnectionError, OSError) as e:
                last_error = e
                logger.warning(f"Connect to PID {pid} failed (attempt {attempt}/{attempts}): {e}")

            if attempt < attempts:
                await asyncio.sleep(self.config.retry_delay)

        self._statuses[pid] = ConnectionStatus.FAILED
        raise ControlConnectionError(
            f"Failed to connect to PID {pid} after {attempts} attempt(s): {last_error}", pid=pid
        ) from last_error

    def _touch_locked(self, conn: PooledConnection) -> None:
        conn.last_used = self._clock()
        self._connections.move_to_end(conn.pid)

    def _evict_locked(self, pid: int, conn: Optional[PooledConnection] = None) -> Optional[PooledConnection]:
        current = self._connections.get(pid)
        if current is None or (conn is not None and current is not conn):
            return None
        del self._connections[pid]
        self.evictions += 1
        return current

    async def _close(self, conn: PooledConnection, reason: str) -> None:
        logger.debug(f"Closing connection #{conn.connection_id} for PID {conn.pid} ({reason})")
        try:
            await conn.client.close()
        except (OSError, ControlConnectionError) as e:
            logger.warning(f"Error closing connection for PID {conn.pid}: {e}")

    async def evict(self, pid: int, conn: Optional[PooledConnection] = None) -> bool:
        """Remove pid's connection (only if it is still conn, when given) and close it."""
        async with self._lock:
            evicted = self._evict_locked(pid, conn)
        if evicted is None:
            return False
        await self._close(evicted, "evicted")
        return True

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _send(self, conn: PooledConnection, command: ControlCommand) -> ControlResponse:
        async with conn.lock:
            try:
                response = await conn.client.request(command)
            except ControlConnectionError:
                conn.failures += 1
                raise
            except ProtocolError:
                conn.failures += 1
                raise
            conn.failures = 0
            conn.commands_sent += 1

        async with self._lock:
            if self._connections.get(conn.pid) is conn:
                self._touch_locked(conn)
        return response

    async def execute(self, pid: int, command: ControlCommand) -> ControlResponse:
        """Send one command to pid, reconnecting and retrying once on transport failure.

        Raises:
            ControlConnectionError: If the command failed on a fresh connection too
            ProtocolError: If kitty rejected the command
        """
        conn = await self.get_or_create(pid)
        try:
            return await self._send(conn, command)
        except ProtocolError as e:
            if e.fatal:
                await self.evict(pid, conn)
            raise
        except ControlConnectionError as e:
            logger.info(f"Command {command.describe()} failed on PID {pid} ({e}), reconnecting once")
            await self.evict(pid, conn)

        conn = await self.get_or_create(pid)
        try:
            return await self._send(conn, command)
        except ControlConnectionError:
            await self.evict(pid, conn)
            self._statuses[pid] = ConnectionStatus.FAILED
            raise
        except ProtocolError as e:
            if e.fatal:
                await self.evict(pid, conn)
            raise

    async def adjust_font_size(self, pid: int, command: ControlCommand) -> ZoomResult:
        """Run a font command and report the outcome as a ZoomResult."""
        adjustment = f"{command.payload.get('increment_op', '')}{command.payload.get('size'):g}"
        try:
            await self.execute(pid, command)
        except SocketNotFoundError as e:
            return ZoomResult(status=ZoomStatus.NOT_CONFIGURED, pid=pid, error=str(e))
        except ControlConnectionError as e:
            return ZoomResult(status=ZoomStatus.CONNECTION_FAILED, pid=pid, error=str(e))
        except AuthenticationError as e:
            self._statuses[pid] = ConnectionStatus.FAILED
            return ZoomResult(status=ZoomStatus.AUTH_FAILED, pid=pid, error=str(e))
        except ProtocolError as e:
            self._statuses[pid] = ConnectionStatus.FAILED
            return ZoomResult(status=ZoomStatus.FAILED, pid=pid, error=str(e))
        return ZoomResult(status=ZoomStatus.SUCCESS, pid=pid, font_adjustment=adjustment)

    async def increase_font_size(self, pid: int, step: float = 1.0) -> ZoomResult:
        return await self.adjust_font_size(pid, ControlCommand.increase(step))

    async def decrease_font_size(self, pid: int, step: float = 1.0) -> ZoomResult:
        return await self.adjust_font_size(pid, ControlCommand.decrease(step))

    # ------------------------------------------------------------------
    # Reaping
    # ------------------------------------------------------------------

    async def reap(self) -> List[int]:
        """Evict idle connections and connections of exited processes.

        Returns:
            PIDs that were evicted
        """
        now = self._clock()
        reaped: List[PooledConnection] = []

        async with self._lock:
            for pid, conn in list(self._connections.items()):
                if conn.lock.locked():
                    continue
                dead = not self._pid_alive(pid)
                idle = conn.idle_for(now) > self.config.idle_timeout
                if dead or idle:
                    if dead:
                        logger.info(f"Reaping dead PID {pid}")
                    else:
                        logger.info(f"Reaping idle PID {pid} (unused for >{self.config.idle_timeout:.0f}s)")
                    reaped.append(self._evict_locked(pid))
                    self._statuses.pop(pid, None)

        for conn in reaped:
            await self._close(conn, "reaped")
        return [conn.pid for conn in reaped]

    async def cleanup_dead(self) -> List[int]:
        """Evict connections whose process no longer exists."""
        async with self._lock:
            dead = [self._evict_locked(pid) for pid in list(self._connections) if not self._pid_alive(pid)]
            for conn in dead:
                self._statuses.pop(conn.pid, None)

        for conn in dead:
            logger.info(f"Cleaning up dead PID {conn.pid}")
            await self._close(conn, "dead")
        return [conn.pid for conn in dead]

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.reap_interval)
            try:
                await self.reap()
            except Exception as e:
                logger.error(f"Error in reaper loop: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self, pid: int) -> Optional[ConnectionStatus]:
        return self._statuses.get(pid)

    def stats(self) -> dict:
        now = self._clock()
        return {
            "connections": len(self._connections),
            "max_connections": self.config.max_connections,
            "connect_attempts": self.connect_attempts,
            "evictions": self.evictions,
            "pids": {
                pid: {
                    "connection_id": conn.connection_id,
                    "idle_secs": round(conn.idle_for(now), 1),
                    "failures": conn.failures,
                    "commands_sent": conn.commands_sent,
                }
                for pid, conn in self._connections.items()
            },
        }
