"""Process identity resolution.

The compositor reports the PID of the process that mapped the window. For
kitty that may be the kitty process itself or, depending on how it was
launched, a wrapper or child process. The control socket is named after the
kitty process, so the reported PID is mapped to the kitty PID first.

Each resolution takes one snapshot of the process table (pid -> entry) and
walks it by PID, never holding live process handles across the walk:

1. the reported process itself
2. its ancestors, closest first
3. its descendants, breadth first, lowest PID first within a level

A process matches if its name is one of the configured names or if the socket
check finds a control socket for it. The first match wins.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import psutil

from .control import kitty_socket_path
from .errors import ProcessNotFoundError
from .models import ResolvedProcess

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_NAMES = ("kitty",)
DEFAULT_MAX_DEPTH = 20


@dataclass(frozen=True)
class ProcessEntry:
    pid: int
    ppid: int
    name: str


class ProcessTable:
    """Query interface over the live process table."""

    def snapshot(self) -> Dict[int, ProcessEntry]:
        raise NotImplementedError

    def exists(self, pid: int) -> bool:
        raise NotImplementedError


class PsutilProcessTable(ProcessTable):
    """Process table backed by psutil."""

    def snapshot(self) -> Dict[int, ProcessEntry]:
        table: Dict[int, ProcessEntry] = {}
        for proc in psutil.process_iter(["pid", "ppid", "name"]):
            info = proc.info
            table[info["pid"]] = ProcessEntry(
                pid=info["pid"],
                ppid=info.get("ppid") or 0,
                name=info.get("name") or "",
            )
        return table

    def exists(self, pid: int) -> bool:
        return pid > 0 and psutil.pid_exists(pid)


def _default_socket_check(pid: int) -> bool:
    return kitty_socket_path(pid) is not None


class ProcessIdentityResolver:
    """Resolve reported PIDs to the PID that owns the control socket."""

    def __init__(
        self,
        process_names: Iterable[str] = DEFAULT_PROCESS_NAMES,
        table: Optional[ProcessTable] = None,
        socket_check: Optional[Callable[[int], bool]] = _default_socket_check,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        """Initialize resolver.

        Args:
            process_names: Executable names that own a control socket
            table: Process table (default: psutil)
            socket_check: Returns True if a control socket exists for a PID (None disables it)
            max_depth: Maximum levels walked up and down the hierarchy
        """
        self.process_names = frozenset(process_names)
        self.table = table or PsutilProcessTable()
        self.socket_check = socket_check
        self.max_depth = max_depth
        self._cache: Dict[int, ResolvedProcess] = {}
        self.cache_hits = 0
        self.cache_misses = 0

    def _matches(self, entry: ProcessEntry) -> bool:
        if entry.name in self.process_names:
            return True
        if self.socket_check is not None:
            try:
                return self.socket_check(entry.pid)
            except OSError as e:
                logger.debug(f"Socket check failed for PID {entry.pid}: {e}")
        return False

    def resolve(self, reported_pid: int) -> ResolvedProcess:
        """Resolve a reported PID.

        Raises:
            ProcessNotFoundError: If the process is gone or nothing eligible is found
        """
        if reported_pid is None or reported_pid <= 0:
            raise ProcessNotFoundError(reported_pid, "invalid pid")

        cached = self._cache.get(reported_pid)
        if cached is not None:
            if self.table.exists(cached.reported_pid) and self.table.exists(cached.pid):
                self.cache_hits += 1
                return cached
            logger.debug(f"Cached resolution {reported_pid} -> {cached.pid} is stale, dropping")
            del self._cache[reported_pid]

        self.cache_misses += 1
        entry, depth = self._walk(reported_pid, self.table.snapshot())
        resolved = ResolvedProcess(reported_pid=reported_pid, pid=entry.pid, name=entry.name, depth=depth)
        self._cache[reported_pid] = resolved

        if entry.pid != reported_pid:
            logger.info(f"Resolved PID {reported_pid} -> {entry.name} PID {entry.pid} (depth {depth})")
        return resolved

    def _walk(self, reported_pid: int, snapshot: Dict[int, ProcessEntry]) -> Tuple[ProcessEntry, int]:
        start = snapshot.get(reported_pid)
        if start is None:
            raise ProcessNotFoundError(reported_pid, "process no longer exists")

        if self._matches(start):
            return start, 0

        # Ancestors, closest first
        seen = {reported_pid}
        current = start
        for depth in range(1, self.max_depth + 1):
            parent = snapshot.get(current.ppid)
            if parent is None or parent.pid in seen:
                break
            seen.add(parent.pid)
            if self._matches(parent):
                return parent, -depth
            current = parent

        # Descendants, breadth first
        children: Dict[int, List[int]] = defaultdict(list)
        for entry in snapshot.values():
            children[entry.ppid].append(entry.pid)

        frontier = [reported_pid]
        visited = {reported_pid}
        for depth in range(1, self.max_depth + 1):
            level = sorted(
                child for pid in frontier for child in children.get(pid, ()) if child not in visited
            )
            if not level:
                break
            for pid in level:
                visited.add(pid)
                if self._matches(snapshot[pid]):
                    return snapshot[pid], depth
            frontier = level

        names = ", ".join(sorted(self.process_names)) or "-"
        raise ProcessNotFoundError(reported_pid, f"no {names} process in its hierarchy")

    def invalidate(self, pid: int) -> int:
        """Drop cached resolutions whose reported or resolved PID is pid."""
        stale = [key for key, value in self._cache.items() if pid in (key, value.pid)]
        for key in stale:
            del self._cache[key]
        return len(stale)

    def clear(self) -> None:
        self._cache.clear()

    @property
    def cached(self) -> Dict[int, ResolvedProcess]:
        return dict(self._cache)
