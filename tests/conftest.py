"""Shared fixtures and fakes for zooming-kittens tests."""

import asyncio
import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

from zooming_kittens.control import ControlCommand, ControlResponse
from zooming_kittens.errors import ControlConnectionError
from zooming_kittens.process import ProcessEntry, ProcessTable
from zooming_kittens.registry import ConnectionRegistry, RegistryConfig
from zooming_kittens.transports import EventTransport


def record(event: str, window_id: int, app_id: Optional[str] = "kitty", pid: Optional[int] = 100, title: str = "zsh") -> bytes:
    """One flat event record as the transports emit it."""
    if event == "destroy":
        return json.dumps({"event": event, "id": window_id}).encode()
    return json.dumps({"event": event, "id": window_id, "app_id": app_id, "pid": pid, "title": title}).encode()


class FakeTransport(EventTransport):
    """In-memory transport fed by the test."""

    name = "fake"

    def __init__(self, records: Iterable[bytes] = (), end: bool = True) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        for item in records:
            self._queue.put_nowait(item)
        if end:
            self._queue.put_nowait(None)
        self.connected = False
        self.closed = False

    def push(self, item: bytes) -> None:
        self._queue.put_nowait(item)

    def end(self) -> None:
        self._queue.put_nowait(None)

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)

    async def connect(self) -> None:
        self.connected = True

    async def read_message(self) -> Optional[bytes]:
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)


class FakeProcessTable(ProcessTable):
    """Static process table: {pid: (ppid, name)}."""

    def __init__(self, processes: Dict[int, tuple]) -> None:
        self.processes = dict(processes)
        self.snapshots = 0

    def snapshot(self) -> Dict[int, ProcessEntry]:
        self.snapshots += 1
        return {pid: ProcessEntry(pid=pid, ppid=ppid, name=name) for pid, (ppid, name) in self.processes.items()}

    def exists(self, pid: int) -> bool:
        return pid in self.processes


class FakeClient:
    """Stands in for KittyControlClient."""

    def __init__(self, pid: int, connection_number: int) -> None:
        self.pid = pid
        self.connection_number = connection_number
        self.commands: List[ControlCommand] = []
        self.fail_next: List[Exception] = []
        self.closed = False

    async def request(self, command: ControlCommand) -> ControlResponse:
        if self.fail_next:
            raise self.fail_next.pop(0)
        self.commands.append(command)
        return ControlResponse(ok=True)

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Connector that records attempts and hands out FakeClients.

    failures: number of leading attempts that fail with ControlConnectionError.
    gate: if set, every attempt waits for it before completing.
    """

    def __init__(self, failures: int = 0, gate: Optional[asyncio.Event] = None) -> None:
        self.failures = failures
        self.gate = gate
        self.attempts: List[int] = []
        self.clients: List[FakeClient] = []

    async def __call__(self, pid: int, socket_path: Path, timeout: float) -> FakeClient:
        self.attempts.append(pid)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures > 0:
            self.failures -= 1
            raise ControlConnectionError(f"connection refused ({pid})", pid=pid)
        client = FakeClient(pid, len(self.clients) + 1)
        self.clients.append(client)
        return client

    def clients_for(self, pid: int) -> List[FakeClient]:
        return [c for c in self.clients if c.pid == pid]


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def alive_pids():
    return {100, 200, 300}


@pytest.fixture
def registry_config():
    return RegistryConfig(
        socket_timeout=1.0,
        max_retries=3,
        retry_delay=0,
        max_connections=10,
        idle_timeout=60,
        reap_interval=30,
    )


@pytest.fixture
def registry(registry_config, connector, clock, alive_pids):
    return ConnectionRegistry(
        registry_config,
        connector=connector,
        socket_resolver=lambda pid: Path(f"/tmp/kitty-{pid}.sock"),
        pid_alive=lambda pid: pid in alive_pids,
        clock=clock,
    )
