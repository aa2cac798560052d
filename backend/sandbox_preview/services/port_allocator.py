"""
Port Allocator - bounded pool of host ports for run sessions.

Ports come from [start, start + size). A port leaves the pool on allocate()
and only returns on release(), which eviction calls after the owning session
has been removed from the registry and its container stopped.
"""

import threading
from collections import deque
from typing import Deque, Set

from sandbox_preview.core.exceptions import PortsExhaustedError
from sandbox_preview.core.logging_config import logger


class PortAllocator:
    """Thread-safe free-list allocator. allocate() never suspends."""

    def __init__(self, start: int, size: int):
        if size <= 0:
            raise ValueError("port pool size must be positive")
        self.start = start
        self.end = start + size
        self._lock = threading.Lock()
        self._free: Deque[int] = deque(range(self.start, self.end))
        self._in_use: Set[int] = set()

    def allocate(self) -> int:
        """
        Take the lowest-recently-released free port.

        Raises:
            PortsExhaustedError: every port is held by a live session
        """
        with self._lock:
            if not self._free:
                raise PortsExhaustedError(self.end - self.start)
            port = self._free.popleft()
            self._in_use.add(port)
        logger.debug(f"[Ports] Allocated {port} ({len(self._in_use)} in use)")
        return port

    def release(self, port: int) -> bool:
        """Return a port to the pool. Releasing a free port is a no-op."""
        with self._lock:
            if port not in self._in_use:
                return False
            self._in_use.discard(port)
            # Recycle last so a just-freed port is not handed out straight away
            self._free.append(port)
        logger.debug(f"[Ports] Released {port}")
        return True

    def is_allocated(self, port: int) -> bool:
        with self._lock:
            return port in self._in_use

    @property
    def in_use(self) -> int:
        with self._lock:
            return len(self._in_use)

    @property
    def available(self) -> int:
        with self._lock:
            return len(self._free)
