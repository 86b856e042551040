"""Port allocation for bot workers.

Ports are found by probe-and-release: a transient socket is bound to the
candidate port and closed immediately. Nothing holds the port between the
probe and the worker binding it, so another process may grab it in between
(a known TOCTOU gap, acceptable for a single-host, low-churn supervisor).
Within one allocator, handed-out ports are remembered until released so two
concurrent callers never receive the same port.
"""

from __future__ import annotations

import logging
import socket
from threading import Lock
from typing import Optional

from .errors import PortExhaustionError

logger = logging.getLogger("botharbor.network")

# Minimum safe port - below this are privileged/system ports
MIN_SAFE_PORT = 1024
MAX_PORT = 65535


def check_port(port: int) -> bool:
    """Check if a specific port can be bound right now."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind(("0.0.0.0", port))
            return True
    except OSError:
        return False


class PortAllocator:
    """Allocates free ports for worker processes.

    By default, only allocates ports >= 1024 to avoid conflicts with
    system services.
    """

    def __init__(self, start_port: int = 10000, end_port: int = MAX_PORT):
        if start_port < MIN_SAFE_PORT:
            start_port = MIN_SAFE_PORT
        if end_port > MAX_PORT:
            end_port = MAX_PORT

        self.start_port = start_port
        self.end_port = end_port
        self._allocated: set[int] = set()
        self._lock = Lock()

    def is_port_free(self, port: int) -> bool:
        """Check if a port is available."""
        if port in self._allocated:
            return False
        return check_port(port)

    def allocate(self, start_port: Optional[int] = None) -> int:
        """
        Allocate a free port, scanning upward from start_port.

        Scans through end_port (inclusive). Raises PortExhaustionError when
        the whole range is taken.
        """
        first = self.start_port if start_port is None else max(int(start_port), MIN_SAFE_PORT)
        with self._lock:
            for port in range(first, self.end_port + 1):
                if self.is_port_free(port):
                    self._allocated.add(port)
                    logger.debug(f"Allocated port {port}")
                    return port

        raise PortExhaustionError(f"No free ports available in range {first}-{self.end_port}")

    def release(self, port: Optional[int]) -> None:
        """Release an allocated port."""
        if port is None:
            return
        with self._lock:
            self._allocated.discard(port)

    def release_all(self) -> None:
        """Release all allocated ports."""
        with self._lock:
            self._allocated.clear()

    @property
    def allocated(self) -> set[int]:
        with self._lock:
            return set(self._allocated)


def find_free_port(start: int = 10000, end: int = MAX_PORT) -> int:
    """Find a single free port.

    Note: start will be clamped to MIN_SAFE_PORT (1024) minimum for safety.
    """
    return PortAllocator(start, end).allocate()
